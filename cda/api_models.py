from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ServiceRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., description="Logical service name (dns-safe)")
    image_reference: str = Field(..., alias="imageReference", description="Image reference (name:tag or name@digest)")
    container_port: int | None = Field(
        None, alias="containerPort", ge=1, le=65535, description="Port the container listens on"
    )
    health_check_path: str = Field("/health", alias="healthCheckPath", description="Readiness endpoint path")
    proxy_route: str | None = Field(None, alias="proxyRoute", description="Route prefix, defaults to /<name>/")


class DeploymentRequest(BaseModel):
    services: list[ServiceRequest] = Field(..., min_length=1)
    prune: bool = Field(False, description="Remove active services that are not listed")


class SubmitResponse(BaseModel):
    id: str
    state: str


class DeploymentStatus(BaseModel):
    id: str
    state: str
    result: str | None = None
    detail: str = ""
    services: list[dict] = Field(default_factory=list)
    created_at: str
    updated_at: str
