"""Remote path mapping.

Download clients usually run in another container and report paths from their
own filesystem view. A mapping rewrites the client's path prefix into the
prefix this process sees.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

import config

CONFIG_KEYS = (
    "download_client_remote_path_mapping_enabled",
    "download_client_remote_path",
    "download_client_local_path",
)


@dataclass(frozen=True)
class PathMappingConfig:
    enabled: bool = False
    remote_path: str = ""
    local_path: str = ""


def _normalize_prefix(path: str) -> str:
    normalized = str(path or "").strip().replace("\\", "/")
    if normalized and normalized != "/":
        normalized = normalized.rstrip("/")
    return normalized


def from_config(values: Mapping[str, str]) -> PathMappingConfig:
    """Build a mapping from the download_client_* configuration keys."""
    return PathMappingConfig(
        enabled=config.truthy(values.get("download_client_remote_path_mapping_enabled")),
        remote_path=values.get("download_client_remote_path") or "",
        local_path=values.get("download_client_local_path") or "",
    )


def transform(path: str, mapping: PathMappingConfig) -> str:
    """Rewrite `path` if it starts with the remote prefix on a segment boundary.

    Paths outside the remote prefix, and every path when the mapping is
    disabled or incomplete, come back unchanged.
    """
    if not path or not mapping.enabled:
        return path
    remote_prefix = _normalize_prefix(mapping.remote_path)
    local_prefix = _normalize_prefix(mapping.local_path)
    if not remote_prefix or not local_prefix:
        return path

    normalized = _normalize_prefix(path)
    if remote_prefix == "/":
        remainder = normalized.lstrip("/")
    elif normalized == remote_prefix:
        remainder = ""
    elif normalized.startswith(remote_prefix + "/"):
        remainder = normalized[len(remote_prefix) + 1:]
    else:
        return path

    if not remainder:
        return local_prefix
    if local_prefix == "/":
        return "/" + remainder
    return f"{local_prefix}/{remainder}"


def validate(mapping: PathMappingConfig) -> None:
    if not mapping.enabled:
        return
    if not _normalize_prefix(mapping.remote_path) or not _normalize_prefix(mapping.local_path):
        raise ValueError("Remote path and local path are required when path mapping is enabled")
