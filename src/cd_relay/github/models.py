from enum import StrEnum

from pydantic import BaseModel, field_validator


class StatusState(StrEnum):
    pending = "pending"
    success = "success"
    failure = "failure"
    error = "error"


class StatusContext(StrEnum):
    build = "BUILD"
    deploy = "DEPLOY"


class CommitStatus(BaseModel):
    state: StatusState
    target_url: str
    description: str
    context: str

    @field_validator("description")
    @classmethod
    def truncate_description(cls, value: str) -> str:
        # GitHub rejects descriptions longer than 140 characters
        return value if len(value) <= 140 else value[:137] + "..."
