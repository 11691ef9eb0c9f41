"""Dependency manifest loading and normalization.

A manifest is a JSON object with optional ``forge``, ``npm`` and ``yarn``
keys. Each section is either a list of names (latest version implied) or an
object mapping names to versions::

    {
      "forge": ["foundry-rs/forge-std"],
      "npm": {"@openzeppelin/contracts": "^5.0.2"},
      "yarn": ["@chainlink/contracts"]
    }

Sections are collapsed into ``name[@version]`` tokens as soon as they are
parsed; nothing downstream sees the list/object distinction.
"""

import json
from pathlib import Path
from typing import Any

from mcp_forge_sandbox.errors import ConfigurationError
from mcp_forge_sandbox.logging import get_logger
from mcp_forge_sandbox.types import DependencyManifest, Ecosystem

logger = get_logger(__name__)

LATEST_VERSIONS = {"", "latest", "*"}

MANIFEST_EXAMPLE = (
    '{ "forge": ["foundry-rs/forge-std"], "npm": {"@openzeppelin/contracts": "^5.0.2"} }'
)


def make_token(name: str, version: str | None = None) -> str:
    """Build an install token; an empty or "latest" version means no pin."""
    name = name.strip()
    if version is None or version.strip().lower() in LATEST_VERSIONS:
        return name
    return f"{name}@{version.strip()}"


def normalize_section(section: Any, field_name: str) -> tuple[str, ...]:
    """Turn a list-form or mapping-form section into install tokens."""
    match section:
        case None:
            return ()
        case list():
            if not all(isinstance(dep, str) for dep in section):
                raise ConfigurationError(f"'{field_name}' field must be an array of strings")
            return tuple(make_token(dep) for dep in section if dep.strip())
        case dict():
            tokens = []
            for name, version in section.items():
                if not isinstance(version, str):
                    raise ConfigurationError(
                        f"'{field_name}' field must be an object with string keys and string values"
                    )
                if name.strip():
                    tokens.append(make_token(name, version))
            return tuple(tokens)
        case _:
            raise ConfigurationError(
                f"'{field_name}' field must be an array of strings or an object with string values"
            )


def parse_manifest(data: Any) -> DependencyManifest:
    """Validate a decoded manifest document and normalize every section."""
    if not isinstance(data, dict):
        raise ConfigurationError(
            "Dependencies manifest must be a JSON object with 'forge', 'npm', and/or 'yarn' "
            f"fields. Example: {MANIFEST_EXAMPLE}"
        )

    manifest = DependencyManifest(
        **{eco.value: normalize_section(data.get(eco.value), eco.value) for eco in Ecosystem}
    )

    if manifest.is_empty():
        raise ConfigurationError(
            "Dependencies manifest must contain at least one 'forge', 'npm', or 'yarn' "
            "field with dependencies"
        )
    return manifest


def load_manifest(project_root: Path, manifest_path: str | Path) -> DependencyManifest:
    """Read and normalize a manifest given relative to the project root."""
    if not str(manifest_path).strip():
        raise ConfigurationError("dependenciesManifestPath is required")

    path = (project_root / manifest_path).resolve()
    if not path.is_file():
        raise ConfigurationError(
            f"Dependencies manifest file not found: {path}", details={"manifest": str(path)}
        )

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigurationError(
            f"Invalid JSON in dependencies manifest: {e}", details={"manifest": str(path)}
        ) from e

    manifest = parse_manifest(data)
    logger.info(
        {
            "event": "manifest_loaded",
            "path": str(path),
            "forge": len(manifest.forge),
            "npm": len(manifest.npm),
            "yarn": len(manifest.yarn),
        }
    )
    return manifest
