"""Deployment state tracking helpers."""

from __future__ import annotations

import hashlib
import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from nestlambda.lib.errors import DeploymentError
from nestlambda.models.deployment import DeploymentTarget, ProjectConfig
from nestlambda.models.deployment_state import DeploymentRecord, DeploymentState

STATE_VERSION = "1.0"
STATE_DIR = ".nestlambda"


def get_state_path(project_path: Path) -> Path:
    """Return the deployment state file path for a project file."""
    return project_path.parent / STATE_DIR / "deployments.json"


def compute_config_hash(config: ProjectConfig) -> str:
    """Compute a deterministic hash for the project configuration."""
    payload = json.dumps(
        config.model_dump(mode="json", exclude_unset=True),
        sort_keys=True,
    )
    digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
    return f"sha256:{digest}"


def load_state(state_path: Path) -> DeploymentState:
    """Load deployment state data from disk."""
    if not state_path.exists():
        return DeploymentState(version=STATE_VERSION)

    try:
        content = state_path.read_text(encoding="utf-8")
        if not content.strip():
            return DeploymentState(version=STATE_VERSION)
    except OSError as exc:
        raise DeploymentError(
            operation="state",
            message=f"Failed to read deployment state at {state_path}: {exc}",
        ) from exc

    try:
        state = DeploymentState.model_validate_json(content)
    except ValidationError as exc:
        raise DeploymentError(
            operation="state",
            message=f"Invalid deployment state format in {state_path}: {exc}",
        ) from exc

    if not state.version:
        state = state.model_copy(update={"version": STATE_VERSION})
    return state


def save_state(state_path: Path, state: DeploymentState) -> None:
    """Persist deployment state data to disk.

    The file is replaced atomically so an interrupted write keeps the
    previous state.
    """
    try:
        state_path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(state.model_dump(mode="json"), indent=2, sort_keys=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=state_path.parent, prefix=".deployments-", suffix=".json"
        )
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)
        os.replace(tmp_name, state_path)
    except OSError as exc:
        raise DeploymentError(
            operation="state",
            message=f"Failed to write deployment state to {state_path}: {exc}",
        ) from exc


def get_deployment_record(state_path: Path, target: str) -> DeploymentRecord | None:
    """Return the deployment record for a target."""
    state = load_state(state_path)
    return state.deployments.get(target)


def update_deployment_record(
    state_path: Path, target: str, record: DeploymentRecord
) -> DeploymentRecord:
    """Update the deployment record for a target and persist it."""
    state = load_state(state_path)
    existing = state.deployments.get(target)
    now = datetime.now(timezone.utc)

    created_at = record.created_at or (existing.created_at if existing else None) or now
    updated_record = record.model_copy(
        update={"created_at": created_at, "updated_at": now}
    )

    state.deployments[target] = updated_record
    if not state.version:
        state = state.model_copy(update={"version": STATE_VERSION})
    save_state(state_path, state)
    return updated_record


def record_target_status(
    state_path: Path,
    project: ProjectConfig,
    target: DeploymentTarget,
    status: str,
    **updates: Any,
) -> DeploymentRecord:
    """Merge a pipeline status into the target's record and persist it.

    Fields of the previous record are kept unless ``updates`` gives a new,
    non-None value. A record left by the other transport is discarded, as
    its artifact and image reference no longer apply.

    Args:
        state_path: Deployment state file
        project: Project configuration, hashed into the record
        target: Target the record belongs to
        status: New status (built, partial, published, deployed)
        **updates: Record fields set by the stage that just finished

    Returns:
        The persisted record
    """
    existing = get_deployment_record(state_path, target.name)
    if existing is not None and existing.transport == project.transport:
        values = existing.model_dump()
    else:
        values = {}
    values.update(
        {
            "transport": project.transport,
            "function_name": target.function_name,
            "region": target.region,
            "status": status,
            "config_hash": compute_config_hash(project),
        }
    )
    values.update({k: v for k, v in updates.items() if v is not None})
    record = DeploymentRecord.model_validate(values)
    return update_deployment_record(state_path, target.name, record)


def patch_deployment_record(
    state_path: Path, target: str, **changes: Any
) -> DeploymentRecord | None:
    """Apply ``changes`` to an existing record; None values clear fields.

    Returns:
        The persisted record, or None if the target was never deployed
    """
    record = get_deployment_record(state_path, target)
    if record is None:
        return None
    return update_deployment_record(
        state_path, target, record.model_copy(update=changes)
    )
