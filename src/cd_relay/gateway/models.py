from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class Limits(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    memory: str = Field(alias="Memory")


class DeploymentDescriptor(BaseModel):
    """Body of a create or update call to the gateway's function registry."""

    model_config = ConfigDict(populate_by_name=True)

    service: str = Field(alias="Service")
    image: str = Field(alias="Image")
    network: str = Field(alias="Network")
    labels: dict[str, str] = Field(alias="Labels")
    limits: Limits = Field(alias="Limits")
    env_vars: dict[str, str] = Field(default={}, alias="envVars")
    secrets: list[str] = Field(default=[], alias="Secrets")


class FunctionInfo(BaseModel):
    """One entry of the gateway's function list; extra fields are ignored."""

    name: str = Field(validation_alias=AliasChoices("name", "Name"))


class GarbageRequest(BaseModel):
    owner: str
    repo: str  # "*" for every repository of the owner
    functions: list[str] = []
