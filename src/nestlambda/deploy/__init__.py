"""nestlambda deployment engine.

This package provides the pipeline stages: prerequisite checks, artifact
builds (zip bundle or container image), publishing to Lambda and status
reporting.
"""

from nestlambda.deploy.builder import (
    BundleBuilder,
    ContainerBuilder,
    create_builder,
    generate_tag,
    get_oci_labels,
)
from nestlambda.deploy.dockerfile import generate_dockerfile
from nestlambda.deploy.pipeline import DeploymentPipeline, PipelineOutcome

__all__ = [
    "BundleBuilder",
    "ContainerBuilder",
    "DeploymentPipeline",
    "PipelineOutcome",
    "create_builder",
    "generate_dockerfile",
    "generate_tag",
    "get_oci_labels",
]
