import asyncio
import os
import tempfile
from pathlib import Path

import pydantic
from sanic.log import logger

from cd_relay import metrics
from cd_relay.builder.engine import BuildctlEngine, BuildEngine
from cd_relay.builder.models import (
    DEFAULT_FRONTEND,
    BuildConfig,
    BuildResult,
    SolveOptions,
    SolveStatus,
)
from cd_relay.builder.utils import BuildLog, extract_context, first_error, render
from cd_relay.config import BuilderConfig
from cd_relay.exceptions import ValidationError


class BuildService:
    def __init__(self, config: BuilderConfig, engine: BuildEngine | None = None):
        self.config = config
        self.engine = engine if engine is not None else BuildctlEngine(config)

    def read_config(self, workdir: str) -> BuildConfig:
        path = Path(workdir) / "config"
        if not path.is_file():
            raise ValidationError("build context has no config file")

        try:
            build_config = BuildConfig.model_validate_json(path.read_bytes())
        except pydantic.ValidationError as e:
            raise ValidationError(f"invalid build config: {e}") from e

        if build_config.ref == "":
            raise ValidationError("no target reference to push")

        if build_config.frontend == "":
            build_config = build_config.model_copy(update={"frontend": DEFAULT_FRONTEND})
        return build_config

    def solve_options(self, build_config: BuildConfig, context_dir: str) -> SolveOptions:
        exporter_attrs = {
            "name": build_config.ref.lower(),
            "push": "true",
        }
        if self.config.INSECURE:
            exporter_attrs["registry.insecure"] = "true"

        return SolveOptions(
            exporter="image",
            exporter_attrs=exporter_attrs,
            local_dirs={"context": context_dir, "dockerfile": context_dir},
            frontend="dockerfile.v0",
            frontend_attrs={"source": build_config.frontend},
        )

    async def solve(self, options: SolveOptions, log: BuildLog) -> None:
        """
        Run the engine and drain its events into ``log`` concurrently.

        Both tasks are joined; the first error raised by either cancels the
        other and is re-raised as is. Events the engine emitted before the
        failure are always in ``log`` when this returns or raises.
        """
        events: asyncio.Queue[SolveStatus | None] = asyncio.Queue()

        def collect(status: SolveStatus):
            for line in render(status):
                log.append(line)
                metrics.build_log_lines_total.inc()

        async def run_engine():
            try:
                await self.engine.solve(options, events)
            finally:
                events.put_nowait(None)

        async def drain():
            while (status := await events.get()) is not None:
                collect(status)

        try:
            async with asyncio.TaskGroup() as tg:
                tg.create_task(run_engine())
                tg.create_task(drain())
        except ExceptionGroup as eg:
            raise first_error(eg) from None
        finally:
            # emitted, but not drained before the join was aborted
            while not events.empty():
                status = events.get_nowait()
                if status is not None:
                    collect(status)

    async def build(self, archive: bytes) -> BuildResult:
        """Build and push the image described by a build context. Never raises."""
        log = BuildLog()
        ref = ""

        try:
            with metrics.track_build():
                with tempfile.TemporaryDirectory(prefix="buildctx") as workdir:
                    await asyncio.to_thread(
                        extract_context, archive, workdir, self.config.ENABLE_LCHOWN
                    )
                    build_config = self.read_config(workdir)
                    ref = build_config.ref

                    logger.info(
                        "Building %s with frontend %s", ref, build_config.frontend
                    )
                    options = self.solve_options(
                        build_config, os.path.join(workdir, "context")
                    )
                    async with asyncio.timeout(self.config.BUILD_TIMEOUT):
                        await self.solve(options, log)
        except TimeoutError:
            message = f"build timed out after {self.config.BUILD_TIMEOUT:g}s"
            return self._failure(ref, log, message)
        except Exception as e:
            logger.debug("Build failure", exc_info=e)
            return self._failure(ref, log, str(e) or type(e).__name__)

        logger.info("Built and pushed %s (%d log lines)", ref, len(log))
        metrics.builds_total.labels("success").inc()
        return BuildResult(image_name=ref, log=log.lines(), status="success")

    def _failure(self, ref: str, log: BuildLog, message: str) -> BuildResult:
        logger.error("Build of %s failed: %s", ref or "<unknown>", message)
        metrics.builds_total.labels("failure").inc()
        return BuildResult(image_name=ref, log=log.lines(), status=f"failure: {message}")
