"""
Build-deploy pipeline.

One run forwards a build context to the builder, checks and rewrites the image
reference it answers with, upserts the function on the gateway and reports the
outcome as a commit status and an audit event::

    RECEIVED -> BUILT -> VALIDATED -> DEPLOYED -> REPORTED

Any step up to the deployment may end the run in ``FAILED`` instead, with the
stage (``BUILD`` or ``DEPLOY``) it failed in. Nothing is retried.

The builder answers a request carrying ``Accept: text/plain`` with the bare
image reference as UTF-8 text, no envelope, surrounding whitespace
insignificant. Only a failed build comes back as the JSON ``BuildResult``.
"""

import time
from dataclasses import dataclass
from enum import StrEnum

import aiohttp
import cachetools
import pydantic
from sanic.log import logger

from cd_relay import metrics
from cd_relay.audit import AuditSink
from cd_relay.builder.models import BuildResult
from cd_relay.config import DeployerConfig
from cd_relay.exceptions import EngineError, TransportError, ValidationError
from cd_relay.gateway import Gateway
from cd_relay.gateway.models import DeploymentDescriptor, Limits
from cd_relay.github.models import StatusContext, StatusState
from cd_relay.github.utils import StatusReporter
from cd_relay.models import AuditEvent, TriggerEvent
from cd_relay.utils import rewrite_image, service_name, valid_image

SOURCE = "cd-relay"
FUNCTION_NETWORK = "func_functions"


class PipelineState(StrEnum):
    RECEIVED = "RECEIVED"
    BUILT = "BUILT"
    VALIDATED = "VALIDATED"
    DEPLOYED = "DEPLOYED"
    REPORTED = "REPORTED"
    FAILED = "FAILED"


@dataclass
class PipelineRun:
    event: TriggerEvent
    state: PipelineState = PipelineState.RECEIVED
    stage: StatusContext = StatusContext.build

    def advance(self, state: PipelineState):
        logger.debug(
            "%s/%s@%s: %s -> %s",
            self.event.owner,
            self.event.repository,
            self.event.sha,
            self.state,
            state,
        )
        self.state = state


def build_descriptor(
    event: TriggerEvent,
    image: str,
    config: DeployerConfig,
    now: float | None = None,
) -> DeploymentDescriptor:
    service = service_name(event.owner, event.service)
    deploy_time = int(time.time() if now is None else now)

    return DeploymentDescriptor(
        service=service,
        image=image,
        network=FUNCTION_NETWORK,
        labels={
            "Git-Cloud": "1",
            "Git-Owner": event.owner,
            "Git-Repo": event.repository,
            "Git-DeployTime": str(deploy_time),
            "Git-SHA": event.sha,
            "faas_function": service,
            "app": service,
        },
        limits=Limits(memory=config.DEFAULT_MEMORY_LIMIT),
        env_vars=dict(event.environment),
        secrets=list(event.secrets),
    )


class Pipeline:
    def __init__(
        self,
        session: aiohttp.ClientSession,
        config: DeployerConfig,
        gateway: Gateway,
        reporter: StatusReporter,
        audit: AuditSink,
    ):
        self.session = session
        self.config = config
        self.gateway = gateway
        self.reporter = reporter
        self.audit = audit

    @classmethod
    def create(
        cls,
        session: aiohttp.ClientSession,
        config: DeployerConfig,
        cache: cachetools.LRUCache | None = None,
    ) -> "Pipeline":
        return cls(
            session=session,
            config=config,
            gateway=Gateway(session, config),
            reporter=StatusReporter(session, config, cache=cache),
            audit=AuditSink(session, config.AUDIT_URL),
        )

    async def request_build(self, payload: bytes) -> tuple[str, str]:
        """Send the build context to the builder, return the image and HTTP status."""
        url = f"{self.config.BUILDER_URL}build"
        logger.debug("Requesting build from %s (%d bytes)", url, len(payload))

        try:
            async with self.session.post(
                url,
                data=payload,
                headers={
                    "Content-Type": "application/octet-stream",
                    "Accept": "text/plain",
                },
                timeout=aiohttp.ClientTimeout(total=self.config.BUILD_TIMEOUT),
            ) as resp:
                body = await resp.text(errors="replace")
                status_line = f"{resp.status} {resp.reason}"
                status = resp.status
        except (aiohttp.ClientError, TimeoutError) as e:
            raise TransportError(str(e) or type(e).__name__) from e

        if not 200 <= status < 300:
            try:
                detail = BuildResult.model_validate_json(body).status
            except pydantic.ValidationError:
                detail = f"builder returned http status code {status}"
            raise EngineError(detail)

        return body.strip(), status_line

    async def run(self, event: TriggerEvent, payload: bytes) -> str:
        run = PipelineRun(event)

        try:
            image, build_status = await self.request_build(payload)
            run.advance(PipelineState.BUILT)
            logger.info("Builder produced image '%s'", image)

            run.stage = StatusContext.deploy
            if not valid_image(image):
                raise ValidationError("Unable to build image, check builder logs")
            run.advance(PipelineState.VALIDATED)

            image = rewrite_image(
                self.config.PUSH_REPOSITORY_URL, self.config.REPOSITORY_URL, image
            )
            descriptor = build_descriptor(event, image, self.config)

            result = await self.gateway.deploy(descriptor)
            logger.debug("Gateway answered: %s", result)
            run.advance(PipelineState.DEPLOYED)
        except (TransportError, ValidationError, EngineError) as e:
            return await self.fail(run, str(e))

        await self.audit.post(
            self.audit_event(event, f"{SOURCE} succeeded: deployed {image}")
        )
        await self.reporter.report(
            event,
            StatusState.success,
            f"function successfully deployed as: {descriptor.service}",
            run.stage,
        )
        run.advance(PipelineState.REPORTED)
        metrics.pipeline_runs_total.labels(run.state, run.stage).inc()

        return f"buildStatus {image} {descriptor.service} {build_status}"

    async def fail(self, run: PipelineRun, message: str) -> str:
        """Report a failed stage. Runs even when the failure was a deploy error."""
        failed_stage = run.stage
        run.advance(PipelineState.FAILED)
        logger.error("Pipeline failed during %s: %s", failed_stage, message)

        await self.reporter.report(run.event, StatusState.failure, message, failed_stage)

        summary = f"{SOURCE} failure: {message}"
        await self.audit.post(self.audit_event(run.event, summary))
        metrics.pipeline_runs_total.labels(run.state, failed_stage).inc()
        return summary

    def audit_event(self, event: TriggerEvent, message: str) -> AuditEvent:
        return AuditEvent(
            message=message, owner=event.owner, repo=event.repository, source=SOURCE
        )
