"""Runtime configuration."""

from testrunmcp.config.orchestrator import (
    ConfigError,
    OrchestratorConfig,
    load_orchestrator_config,
)

__all__ = ["ConfigError", "OrchestratorConfig", "load_orchestrator_config"]
