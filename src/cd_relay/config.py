from typing import ClassVar, Literal, TypeVar

import pydantic
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from sanic.log import logger

from cd_relay.exceptions import ConfigurationError
from cd_relay.utils import parse_duration

LogLevel = Literal[
    "CRITICAL",
    "FATAL",
    "ERROR",
    "WARNING",
    "WARN",
    "INFO",
    "DEBUG",
    "NOTSET",
]


class _BaseConfig(BaseSettings):
    model_config = SettingsConfigDict(frozen=True)

    OVERRIDE_LOGGING: LogLevel = "INFO"

    # values masked by print_config
    SENSITIVE: ClassVar[frozenset[str]] = frozenset()

    def print_config(self):
        """Print configuration values with sensitive attributes masked"""
        logger.info("=== CD Relay Configuration ===")
        for field_name, field_value in self.model_dump().items():
            if field_name in self.SENSITIVE and field_value:
                logger.info(f"{field_name}: ***")
            else:
                logger.info(f"{field_name}: {field_value}")
        logger.info("==============================")


class BuilderConfig(_BaseConfig):
    BUILDKIT_ADDR: str = "tcp://of-buildkit:1234"
    BUILDCTL_PATH: str = "buildctl"

    ENABLE_LCHOWN: bool = True
    INSECURE: bool = False

    DOCKER_CONFIG: str | None = None

    BUILD_TIMEOUT: float = 600.0

    @field_validator("BUILD_TIMEOUT", mode="before")
    @classmethod
    def parse_timeout(cls, value):
        return parse_duration(value)


class DeployerConfig(_BaseConfig):
    BUILDER_URL: str
    REPOSITORY_URL: str
    PUSH_REPOSITORY_URL: str
    GATEWAY_URL: str

    GATEWAY_PUBLIC_URL: str = ""
    GATEWAY_PRETTY_URL: str = ""

    AUDIT_URL: str = ""

    DEFAULT_MEMORY_LIMIT: str = "20m"

    REPORT_STATUS: bool = False
    APP_ID: str = ""
    PRIVATE_KEY_NAME: str = "private-key"

    SECRETS_PATH: str = "/var/openfaas/secrets"
    BASIC_AUTH: bool = True

    HTTP_TIMEOUT: float = 60.0
    BUILD_TIMEOUT: float = 600.0

    STERILE: bool = False

    SENSITIVE: ClassVar[frozenset[str]] = frozenset({"AUDIT_URL"})

    @field_validator("REPOSITORY_URL", "PUSH_REPOSITORY_URL")
    @classmethod
    def non_empty(cls, value: str) -> str:
        # an empty prefix would be glued onto every rewritten image
        if not value.strip():
            raise ValueError("registry URL must not be empty")
        return value

    @field_validator("BUILDER_URL", "GATEWAY_URL")
    @classmethod
    def ensure_trailing_slash(cls, value: str) -> str:
        if not value:
            raise ValueError("URL must not be empty")
        if not value.endswith("/"):
            value += "/"
        return value

    @field_validator("HTTP_TIMEOUT", "BUILD_TIMEOUT", mode="before")
    @classmethod
    def parse_timeout(cls, value):
        return parse_duration(value)


ConfigT = TypeVar("ConfigT", bound=_BaseConfig)


def load_config(cls: type[ConfigT], **overrides) -> ConfigT:
    """Build a configuration from the environment, once, at process start."""
    try:
        return cls(**overrides)
    except pydantic.ValidationError as e:
        raise ConfigurationError(f"Invalid {cls.__name__}: {e}") from e
