import base64
import binascii
import re
from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

DEFAULT_FRONTEND = "tonistiigi/dockerfile:v0"

# buildkit emits RFC3339 timestamps with nanosecond precision
_fraction = re.compile(r"(\.\d{6})\d+")


def _field(name: str, default: Any = None) -> Any:
    # rawjson output has used both lower case and Go-style capitalised keys
    return Field(
        default=default, validation_alias=AliasChoices(name, name.capitalize())
    )


def _parse_time(value):
    if isinstance(value, str):
        if value.startswith("0001-01-01"):
            return None
        value = _fraction.sub(r"\1", value)
    return value


class Vertex(BaseModel):
    digest: str = _field("digest", "")
    name: str = _field("name", "")
    started: datetime | None = _field("started")
    completed: datetime | None = _field("completed")
    cached: bool = _field("cached", False)
    error: str = _field("error", "")

    parse_times = field_validator("started", "completed", mode="before")(_parse_time)


class VertexStatus(BaseModel):
    id: str = _field("id", "")
    vertex: str = _field("vertex", "")
    name: str = _field("name", "")
    total: int = _field("total", 0)
    current: int = _field("current", 0)
    timestamp: datetime | None = _field("timestamp")

    parse_times = field_validator("timestamp", mode="before")(_parse_time)


class VertexLog(BaseModel):
    vertex: str = _field("vertex", "")
    stream: int = _field("stream", 0)
    data: bytes = _field("data", b"")
    timestamp: datetime | None = _field("timestamp")

    parse_times = field_validator("timestamp", mode="before")(_parse_time)

    @field_validator("data", mode="before")
    @classmethod
    def decode_data(cls, value):
        # Go marshals []byte as base64, and a nil slice as null
        if value is None:
            return b""
        if isinstance(value, str):
            try:
                return base64.b64decode(value, validate=True)
            except binascii.Error:
                return value.encode()
        return value


class SolveStatus(BaseModel):
    vertexes: list[Vertex] = _field("vertexes", [])
    statuses: list[VertexStatus] = _field("statuses", [])
    logs: list[VertexLog] = _field("logs", [])

    @field_validator("vertexes", "statuses", "logs", mode="before")
    @classmethod
    def null_is_empty(cls, value):
        return [] if value is None else value


class BuildConfig(BaseModel):
    """The ``config`` file shipped at the root of a build context."""

    model_config = ConfigDict(populate_by_name=True)

    ref: str = Field(default="", alias="Ref")
    frontend: str = Field(default="", alias="Frontend")

    @field_validator("ref", "frontend", mode="before")
    @classmethod
    def null_is_empty(cls, value):
        return "" if value is None else value


class SolveOptions(BaseModel):
    exporter: str = "image"
    exporter_attrs: dict[str, str] = {}
    local_dirs: dict[str, str] = {}
    frontend: str = "dockerfile.v0"
    frontend_attrs: dict[str, str] = {}


class BuildResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    log: list[str] = []
    image_name: str = Field(default="", alias="imageName")
    status: str

    @property
    def succeeded(self) -> bool:
        return self.status == "success"
