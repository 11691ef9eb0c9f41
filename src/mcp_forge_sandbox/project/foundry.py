"""Foundry project inspection: foundry.toml parsing and caller path checks."""

from pathlib import Path
from typing import Any, Dict

import tomli

from mcp_forge_sandbox.errors import ConfigurationError
from mcp_forge_sandbox.logging import get_logger
from mcp_forge_sandbox.types import FoundryConfig

logger = get_logger(__name__)

FOUNDRY_TOML = "foundry.toml"
TEST_FILE_GLOB = "**/*.t.sol"


def resolve_project_root(project_root: str | Path) -> Path:
    """Resolve the caller's project root and require it to be a directory."""
    if not str(project_root).strip():
        raise ConfigurationError("projectRoot is required")

    root = Path(project_root).expanduser().resolve()
    if not root.is_dir():
        raise ConfigurationError(
            f"Project root directory not found: {root}", details={"project_root": str(root)}
        )
    return root


def _default_profile(parsed: Dict[str, Any]) -> Dict[str, Any]:
    profile = parsed.get("profile", {})
    if isinstance(profile, dict) and isinstance(profile.get("default"), dict):
        return profile["default"]
    return {}


def parse_foundry_toml(project_root: Path) -> FoundryConfig:
    """Read [profile.default] from the project's foundry.toml."""
    path = project_root / FOUNDRY_TOML
    if not path.is_file():
        raise ConfigurationError(
            f"foundry.toml not found at {path}", details={"foundry_toml": str(path)}
        )

    try:
        with open(path, "rb") as f:
            parsed = tomli.load(f)
    except tomli.TOMLDecodeError as e:
        raise ConfigurationError(
            f"Failed to parse foundry.toml: {e}", details={"foundry_toml": str(path)}
        ) from e

    profile = _default_profile(parsed)

    libs = profile.get("libs", ["lib"])
    if isinstance(libs, str):
        libs = [libs]
    libs = tuple(lib for lib in libs if isinstance(lib, str) and lib.strip()) or ("lib",)

    config = FoundryConfig(
        project_root=project_root,
        src=str(profile.get("src") or "src"),
        out=str(profile.get("out") or "out"),
        cache_path=str(profile.get("cache_path") or "cache"),
        libs=libs,
    )
    logger.debug({"event": "foundry_toml_parsed", "path": str(path), "libs": list(libs)})
    return config


def resolve_test_selector(project_root: Path, test_selector: str) -> str:
    """Check the selector exists under the project and turn it into a --match-path pattern."""
    if not test_selector or not test_selector.strip():
        raise ConfigurationError("testFolderPath is required")

    project_root = project_root.resolve()
    selector = test_selector.strip().rstrip("/")
    target = (project_root / selector).resolve()
    if not target.is_relative_to(project_root):
        raise ConfigurationError(
            f"Test path {selector} is outside of project root {project_root}",
            details={"test_path": selector},
        )
    if not target.exists():
        raise ConfigurationError(
            f"Test folder not found: {target}", details={"test_path": str(target)}
        )

    # forge runs in the mount, so the pattern is always root-relative
    relative = target.relative_to(project_root).as_posix()
    if relative.endswith(".sol"):
        return relative
    if relative == ".":
        return TEST_FILE_GLOB
    return f"{relative}/{TEST_FILE_GLOB}"


def build_test_args(match_pattern: str, extra_args: list[str] | None = None) -> list[str]:
    """Arguments for `forge` that run the selected tests."""
    return ["test", "--match-path", match_pattern, *(extra_args or [])]
