"""Settings read from the process environment."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional

TRUE_VALUES = {"1", "true", "yes", "y", "on"}
FALSE_VALUES = {"0", "false", "no", "n", "off"}

DEFAULT_IMAGE = "foundry-sandbox:latest"
DEFAULT_WORKDIR = "/workspace"


def env_string(env: Mapping[str, str], name: str, fallback: str) -> str:
    value = env.get(name)
    return value if value and value.strip() else fallback


def env_bool(env: Mapping[str, str], name: str, fallback: bool) -> bool:
    value = env.get(name)
    if not value:
        return fallback
    normalized = value.strip().lower()
    if normalized in TRUE_VALUES:
        return True
    if normalized in FALSE_VALUES:
        return False
    return fallback


def env_millis(env: Mapping[str, str], name: str, fallback_ms: int) -> float:
    """Read a millisecond value and return seconds."""
    value = env.get(name)
    try:
        ms = int(value) if value else fallback_ms
    except ValueError:
        ms = fallback_ms
    return max(ms, 1) / 1000


@dataclass(frozen=True)
class SandboxSettings:
    """Engine configuration; every field has a working default."""

    image: str = DEFAULT_IMAGE
    build_context: Optional[Path] = None
    dockerfile_name: str = "Dockerfile"
    compose_file_name: str = "docker-compose.yml"
    workdir: str = DEFAULT_WORKDIR
    profile: str = "default"
    test_timeout: float = 300.0
    install_timeout: float = 300.0
    auto_build: bool = True
    cleanup_image: bool = False
    enable_prune: bool = False
    run_as_host_user: bool = True
    start_wait: float = 0.5
    stop_grace: float = 5.0
    flush_grace: float = 2.0
    extra_env: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "SandboxSettings":
        env = os.environ if env is None else env
        build_context = env.get("FOUNDRY_MCP_BUILD_CONTEXT")
        return cls(
            image=env_string(env, "FOUNDRY_MCP_IMAGE", DEFAULT_IMAGE),
            build_context=Path(build_context) if build_context else None,
            dockerfile_name=env_string(env, "FOUNDRY_MCP_DOCKERFILE", "Dockerfile"),
            compose_file_name=env_string(env, "FOUNDRY_MCP_COMPOSE_FILE", "docker-compose.yml"),
            workdir=env_string(env, "FOUNDRY_MCP_WORKDIR", DEFAULT_WORKDIR),
            profile=env_string(env, "FOUNDRY_MCP_PROFILE", "default"),
            test_timeout=env_millis(env, "FOUNDRY_MCP_TEST_TIMEOUT_MS", 300_000),
            install_timeout=env_millis(env, "FOUNDRY_MCP_INSTALL_TIMEOUT_MS", 300_000),
            auto_build=env_bool(env, "FOUNDRY_MCP_AUTO_BUILD", True),
            cleanup_image=env_bool(env, "FOUNDRY_MCP_CLEANUP_IMAGE", False),
            enable_prune=env_bool(env, "FOUNDRY_MCP_ENABLE_PRUNE", False),
            run_as_host_user=env_bool(env, "FOUNDRY_MCP_RUN_AS_HOST_USER", True),
        )

    def container_env(self) -> Dict[str, str]:
        """Environment passed into every sandbox container."""
        return {
            "FOUNDRY_PROFILE": self.profile,
            "NODE_NO_WARNINGS": "1",
            "FOUNDRY_DISABLE_NIGHTLY_WARNING": "1",
            "NPM_CONFIG_UPDATE_NOTIFIER": "false",
            **self.extra_env,
        }
