import json
from collections.abc import Mapping

from pydantic import BaseModel, ConfigDict
from sanic.log import logger

from cd_relay.exceptions import ValidationError


class TriggerEvent(BaseModel):
    """One push to deploy, as forwarded by the webhook dispatcher."""

    model_config = ConfigDict(frozen=True)

    service: str
    owner: str
    repository: str
    sha: str
    url: str = ""
    image: str = ""
    installation_id: int = 0
    environment: dict[str, str] = {}
    # already prefixed with the owner login
    secrets: list[str] = []

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> "TriggerEvent":
        service = headers.get("X-Service", "")
        owner = headers.get("X-Owner", "")
        if not service or not owner:
            raise ValidationError("X-Service and X-Owner headers are required")

        installation_id = 0
        raw_installation_id = headers.get("X-Installation-Id", "")
        if raw_installation_id:
            try:
                installation_id = int(raw_installation_id)
            except ValueError:
                raise ValidationError(
                    f"Invalid installation id {raw_installation_id!r}"
                ) from None

        environment = parse_environment(headers.get("X-Env", ""), service)
        secrets = [
            f"{owner}-{secret}" for secret in parse_secrets(headers.get("X-Secrets", ""))
        ]
        logger.debug("%d env-vars for %s", len(environment), service)

        return cls(
            service=service,
            owner=owner,
            repository=headers.get("X-Repo", ""),
            sha=headers.get("X-Sha", ""),
            url=headers.get("X-Url", ""),
            image=headers.get("X-Image", ""),
            installation_id=installation_id,
            environment=environment,
            secrets=secrets,
        )


def parse_environment(raw: str, service: str) -> dict[str, str]:
    if not raw:
        return {}
    try:
        environment = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("Error un-marshaling env-vars for function %s, %s", service, e)
        return {}
    if not isinstance(environment, dict):
        logger.warning("Env-vars for function %s are not an object", service)
        return {}
    return {str(key): str(value) for key, value in environment.items()}


def parse_secrets(raw: str) -> list[str]:
    if not raw:
        return []
    try:
        secrets = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("Error un-marshaling secrets: %s", e)
        return []
    if not isinstance(secrets, list):
        logger.warning("Secrets are not a list")
        return []
    return [str(secret) for secret in secrets]


class AuditEvent(BaseModel):
    message: str = ""
    owner: str = ""
    repo: str = ""
    source: str = ""
