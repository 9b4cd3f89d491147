"""Configuration for the batch orchestrator, its backend and its registry."""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Optional

from dotenv import load_dotenv

from testrunmcp.backends.azure_devops import API_VERSION

ENV_PREFIX = "TESTRUNMCP_"
BACKENDS = ("azure_devops", "simulated")

_DEFAULT_POLL_INTERVAL = 10.0
_DEFAULT_RUN_TIMEOUT = 3600.0
_DEFAULT_HTTP_TIMEOUT = 30.0
_DEFAULT_REGISTRY_TTL = 3600.0
_DEFAULT_REGISTRY_MAX = 50
_DEFAULT_MAX_CONCURRENT_RUNS = 3
_ENV_LOADED = False


class ConfigError(ValueError):
    """A configuration value is missing or malformed."""


@dataclass(frozen=True)
class OrchestratorConfig:
    """Holds runtime settings for the batch orchestrator."""

    backend: str = "simulated"
    organization_url: Optional[str] = None
    project: Optional[str] = None
    token: Optional[str] = None
    api_version: str = API_VERSION
    http_timeout: float = _DEFAULT_HTTP_TIMEOUT
    poll_interval: float = _DEFAULT_POLL_INTERVAL
    run_timeout: float = _DEFAULT_RUN_TIMEOUT
    wait_for_completion: bool = True
    registry_ttl_seconds: float = _DEFAULT_REGISTRY_TTL
    registry_max_batches: int = _DEFAULT_REGISTRY_MAX
    default_max_concurrent_runs: int = _DEFAULT_MAX_CONCURRENT_RUNS

    def with_overrides(self, **overrides: Any) -> "OrchestratorConfig":
        """Return a copy with every non-None override applied."""

        changes = {k: v for k, v in overrides.items() if v is not None}
        if not changes:
            return self
        cfg = replace(self, **changes)
        _check(cfg)
        return cfg

    def describe(self) -> dict:
        """Settings safe to show to a client (the token is masked)."""

        return {
            "backend": self.backend,
            "organization_url": self.organization_url,
            "project": self.project,
            "token": "***" if self.token else None,
            "api_version": self.api_version,
            "poll_interval": self.poll_interval,
            "run_timeout": self.run_timeout,
            "wait_for_completion": self.wait_for_completion,
            "registry_ttl_seconds": self.registry_ttl_seconds,
            "registry_max_batches": self.registry_max_batches,
            "default_max_concurrent_runs": self.default_max_concurrent_runs,
        }


def _env(name: str) -> Optional[str]:
    value = os.getenv(ENV_PREFIX + name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _env_number(name: str, cast: Callable[[str], Any], minimum: float) -> Optional[Any]:
    raw = _env(name)
    if raw is None:
        return None
    try:
        value = cast(raw)
    except ValueError as e:
        raise ConfigError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from e
    if value < minimum:
        raise ConfigError(f"{ENV_PREFIX}{name} must be >= {minimum}, got {raw!r}")
    return value


def _env_bool(name: str) -> Optional[bool]:
    raw = _env(name)
    if raw is None:
        return None
    lowered = raw.lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"{ENV_PREFIX}{name} must be a boolean, got {raw!r}")


def _check(cfg: OrchestratorConfig) -> None:
    if cfg.backend not in BACKENDS:
        raise ConfigError(f"backend must be one of {BACKENDS}, got {cfg.backend!r}")
    if cfg.backend == "azure_devops" and not cfg.organization_url:
        raise ConfigError(
            f"{ENV_PREFIX}ORGANIZATION_URL (or {ENV_PREFIX}ORGANIZATION) is required "
            "for the azure_devops backend"
        )


def load_orchestrator_config(
    *,
    backend: Optional[str] = None,
    organization_url: Optional[str] = None,
    project: Optional[str] = None,
    token: Optional[str] = None,
) -> OrchestratorConfig:
    """Load configuration from environment variables and overrides.

    Raises:
        ConfigError: If a variable is malformed or the backend is unusable
    """

    _ensure_env_loaded()

    resolved_org = organization_url or _env("ORGANIZATION_URL")
    if not resolved_org and _env("ORGANIZATION"):
        resolved_org = f"https://dev.azure.com/{_env('ORGANIZATION')}"

    resolved_backend = (backend or _env("BACKEND") or "").strip().lower()
    if not resolved_backend:
        resolved_backend = "azure_devops" if resolved_org else "simulated"

    values: dict = {
        "backend": resolved_backend,
        "organization_url": resolved_org,
        "project": project or _env("PROJECT"),
        "token": token or _env("TOKEN") or os.getenv("AZURE_DEVOPS_EXT_PAT") or None,
        "api_version": _env("API_VERSION"),
        "http_timeout": _env_number("HTTP_TIMEOUT", float, 0),
        "poll_interval": _env_number("POLL_INTERVAL", float, 0),
        "run_timeout": _env_number("RUN_TIMEOUT", float, 0),
        "wait_for_completion": _env_bool("WAIT_FOR_COMPLETION"),
        "registry_ttl_seconds": _env_number("REGISTRY_TTL", float, 0),
        "registry_max_batches": _env_number("REGISTRY_MAX_BATCHES", int, 1),
        "default_max_concurrent_runs": _env_number("MAX_CONCURRENT_RUNS", int, 1),
    }
    cfg = OrchestratorConfig(**{k: v for k, v in values.items() if v is not None})
    _check(cfg)
    return cfg


def _ensure_env_loaded() -> None:
    global _ENV_LOADED
    if _ENV_LOADED:
        return
    _ENV_LOADED = True
    dotenv_path = Path.cwd() / ".env"
    if dotenv_path.exists():
        load_dotenv(dotenv_path=dotenv_path)
