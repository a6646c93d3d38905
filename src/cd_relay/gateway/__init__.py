import aiohttp
import pydantic
from sanic.log import logger

from cd_relay import metrics
from cd_relay.config import DeployerConfig
from cd_relay.exceptions import TransportError
from cd_relay.gateway.models import DeploymentDescriptor, FunctionInfo, GarbageRequest
from cd_relay.signature import Signature
from cd_relay.utils import read_secret

SIGNATURE_HEADER = "X-Cloud-Signature"


class Gateway:
    """Client for the serving platform's function registry."""

    def __init__(self, session: aiohttp.ClientSession, config: DeployerConfig):
        self.session = session
        self.config = config

    @property
    def functions_url(self) -> str:
        return f"{self.config.GATEWAY_URL}system/functions"

    @property
    def garbage_collect_url(self) -> str:
        return f"{self.config.GATEWAY_URL}async-function/garbage-collect"

    def auth_headers(self) -> dict[str, str]:
        if not self.config.BASIC_AUTH:
            return {}
        try:
            user = read_secret(self.config.SECRETS_PATH, "basic-auth-user")
            password = read_secret(self.config.SECRETS_PATH, "basic-auth-password")
        except OSError as e:
            logger.error("Basic auth error %s", e)
            return {}
        return {"Authorization": aiohttp.BasicAuth(user, password).encode()}

    async def list_functions(self) -> list[FunctionInfo]:
        try:
            async with self.session.get(
                self.functions_url, headers=self.auth_headers()
            ) as resp:
                logger.debug("List functions status: %d", resp.status)
                if not 200 <= resp.status < 300:
                    raise TransportError(
                        f"cannot list functions: http status code {resp.status}"
                    )
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, TimeoutError, ValueError) as e:
            raise TransportError(f"cannot list functions: {e}") from e

        if data is None:
            return []
        if not isinstance(data, list):
            raise TransportError(
                f"cannot list functions: expected a list, got {type(data).__name__}"
            )
        try:
            return [FunctionInfo.model_validate(item) for item in data]
        except pydantic.ValidationError as e:
            raise TransportError(f"cannot list functions: {e}") from e

    async def function_exists(self, name: str) -> bool:
        functions = await self.list_functions()
        return any(function.name == name for function in functions)

    async def deploy(self, descriptor: DeploymentDescriptor) -> str:
        """
        Create the function, or update it when one with the same name exists.

        An existing function is always overwritten, whatever image or labels it
        currently has.
        """
        exists = await self.function_exists(descriptor.service)
        method = "PUT" if exists else "POST"

        logger.info(
            "Deploying %s as %s (%s)", descriptor.image, descriptor.service, method
        )

        with metrics.track_deployment():
            try:
                async with self.session.request(
                    method,
                    self.functions_url,
                    json=descriptor.model_dump(by_alias=True),
                    headers=self.auth_headers(),
                ) as resp:
                    logger.debug("Deploy status: %d", resp.status)
                    if not 200 <= resp.status < 300:
                        raise TransportError(f"http status code {resp.status}")
                    body = await resp.text()
            except (aiohttp.ClientError, TimeoutError) as e:
                raise TransportError(f"cannot deploy {descriptor.service}: {e}") from e

        metrics.deployments_total.labels(method).inc()
        return body

    async def garbage_collect(self, requests: list[GarbageRequest]) -> None:
        """Ask the gateway to remove functions belonging to removed repositories."""
        signature = Signature(read_secret(self.config.SECRETS_PATH, "payload-secret"))

        for request in requests:
            body = request.model_dump_json().encode()
            logger.debug("Requesting garbage collection for %s/%s", request.owner, request.repo)
            try:
                async with self.session.post(
                    self.garbage_collect_url,
                    data=body,
                    headers={
                        SIGNATURE_HEADER: signature.header(body),
                        "Content-Type": "application/json",
                    },
                ) as resp:
                    if resp.status != 202:
                        logger.error(
                            "Unexpected status code for function: `%s` - %d",
                            request.repo,
                            resp.status,
                        )
                        logger.error("Error in garbage collection: %s", await resp.text())
            except (aiohttp.ClientError, TimeoutError) as e:
                raise TransportError(f"cannot request garbage collection: {e}") from e
