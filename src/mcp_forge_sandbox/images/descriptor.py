"""Locating the build descriptor pair (Dockerfile + compose file)."""

import os
from pathlib import Path
from typing import List, Optional

from mcp_forge_sandbox.errors import BuildDescriptorNotFoundError
from mcp_forge_sandbox.logging import get_logger
from mcp_forge_sandbox.types import BuildDescriptor

logger = get_logger(__name__)

BUILD_CONTEXT_ENV = "FOUNDRY_MCP_BUILD_CONTEXT"

# src/mcp_forge_sandbox/images/descriptor.py -> repository root
PROGRAM_ROOT = Path(__file__).resolve().parents[3]

FALLBACK_DIRS = ("docker", "sandbox", "..", "../docker")


def candidate_dirs(explicit: Optional[Path] = None, cwd: Optional[Path] = None) -> List[Path]:
    """Ordered, de-duplicated directories to search."""
    cwd = cwd or Path.cwd()
    candidates: List[Path] = []
    if explicit is not None:
        candidates.append(Path(explicit))
    env_path = os.environ.get(BUILD_CONTEXT_ENV)
    if env_path:
        candidates.append(Path(env_path))
    candidates.append(PROGRAM_ROOT / "docker")
    candidates.append(PROGRAM_ROOT)
    candidates.append(cwd)
    candidates.extend(cwd / rel for rel in FALLBACK_DIRS)

    seen = set()
    ordered = []
    for path in candidates:
        resolved = path.expanduser().resolve()
        if resolved not in seen:
            seen.add(resolved)
            ordered.append(resolved)
    return ordered


def locate_build_descriptor(
    dockerfile_name: str,
    compose_file_name: str,
    explicit: Optional[Path] = None,
    cwd: Optional[Path] = None,
) -> BuildDescriptor:
    """First directory holding both files wins."""
    searched = []
    for directory in candidate_dirs(explicit, cwd):
        dockerfile = directory / dockerfile_name
        compose_file = directory / compose_file_name
        searched.append(str(directory))
        if dockerfile.is_file() and compose_file.is_file():
            logger.debug({"event": "build_descriptor_found", "context": str(directory)})
            return BuildDescriptor(context=directory, dockerfile=dockerfile, compose_file=compose_file)

    raise BuildDescriptorNotFoundError(searched, [dockerfile_name, compose_file_name])
