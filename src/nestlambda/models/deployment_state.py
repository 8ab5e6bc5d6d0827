"""Deployment state models for persisted deployments."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from nestlambda.models.deployment import Artifact, HealthStatus, TransportKind


class DeploymentRecord(BaseModel):
    """Persisted deployment record for a single target."""

    model_config = ConfigDict(extra="forbid")

    transport: TransportKind = Field(..., description="Transport used")
    function_name: str = Field(..., description="Lambda function name")
    region: str = Field(..., description="AWS region")
    function_arn: str | None = Field(default=None, description="Function ARN")
    url: str | None = Field(default=None, description="Function URL")
    status: str = Field(..., description="Deployment status")
    health: HealthStatus = Field(
        default=HealthStatus.UNKNOWN, description="Last health probe result"
    )
    artifact: Artifact | None = Field(
        default=None, description="Most recent build for this target"
    )
    image_uri: str | None = Field(default=None, description="Deployed image URI")
    code_sha256: str | None = Field(default=None, description="Deployed code digest")
    created_at: datetime | None = Field(
        default=None, description="Initial deployment timestamp"
    )
    updated_at: datetime | None = Field(
        default=None, description="Last update timestamp"
    )
    config_hash: str = Field(..., description="Project configuration hash")


class DeploymentState(BaseModel):
    """Top-level deployment state stored on disk."""

    model_config = ConfigDict(extra="forbid")

    version: str = Field(default="1.0", description="State file version")
    deployments: dict[str, DeploymentRecord] = Field(
        default_factory=dict, description="Deployments keyed by target name"
    )
