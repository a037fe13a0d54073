"""Manifest of monitored database targets."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import List

from pydantic import BaseModel, Field

from app.core.errors import UnknownTargetError
from app.core.settings import get_settings

TARGETS_ENV_VAR = "QUERY_TELEMETRY_TARGETS_PATH"


class TargetConfig(BaseModel):
    """Connection metadata of a database whose statement statistics are collected."""

    id: int = Field(..., ge=1, description="Stable identifier shared with the dashboard")
    name: str = Field(..., min_length=1, description="Human friendly display name")
    dsn: str = Field(..., min_length=1, description="SQLAlchemy URL used to read statistics")
    description: str = Field("", description="Short summary of the target")


class TargetManifest(BaseModel):
    """Serialized representation of the targets manifest file."""

    targets: List[TargetConfig] = Field(default_factory=list)

    def get(self, target_id: int) -> TargetConfig:
        for target in self.targets:
            if target.id == target_id:
                return target
        raise UnknownTargetError(
            f"Target {target_id} is not declared in the targets manifest",
            details={"target_id": target_id},
        )


def _resolve_manifest_path(manifest_path: Path | None = None) -> Path:
    env_override = os.getenv(TARGETS_ENV_VAR)
    if manifest_path is not None:
        resolved = manifest_path
    elif env_override:
        resolved = Path(env_override)
    else:
        resolved = get_settings().targets_path
    resolved = resolved.expanduser()
    if not resolved.is_absolute():
        resolved = Path(__file__).resolve().parents[3] / resolved
    return resolved


@lru_cache
def load_targets(manifest_path: Path | None = None) -> TargetManifest:
    """Return the cached targets manifest; a missing file means no targets."""

    resolved = _resolve_manifest_path(manifest_path)
    if not resolved.exists():
        return TargetManifest()
    return TargetManifest.model_validate_json(resolved.read_text(encoding="utf-8"))


def reload_targets(manifest_path: Path | None = None) -> TargetManifest:
    """Forcefully reload the manifest, useful for tests."""

    load_targets.cache_clear()
    return load_targets(manifest_path)


__all__ = [
    "TARGETS_ENV_VAR",
    "TargetConfig",
    "TargetManifest",
    "load_targets",
    "reload_targets",
]
