"""Dependency Injection Container for test-run-mcp.

Wires together the orchestrator configuration, the execution backend, the
batch registry and the per-batch event log used by the MCP tools and the CLI.

Usage:
    from testrunmcp.container import get_container

    container = get_container()
    coordinator = container.new_coordinator()
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Deque, Dict, List, Optional

if TYPE_CHECKING:
    from testrunmcp.backends import AzureDevOpsClient
    from testrunmcp.config import OrchestratorConfig
    from testrunmcp.domains.batch_execution import (
        BatchCoordinator,
        BatchRegistry,
        ExecutionBackend,
    )

logger = logging.getLogger(__name__)

# Events kept per batch for status queries
MAX_EVENTS_PER_BATCH = 200

# Singleton container instance
_container: Optional["ServiceContainer"] = None


@dataclass
class ServiceContainer:
    """Simple dependency injection container for the orchestrator services.

    Everything is created lazily on first access so importing the server
    never touches the environment or the network.
    """

    _config: Optional["OrchestratorConfig"] = field(default=None, repr=False)
    _backend: Optional["ExecutionBackend"] = field(default=None, repr=False)
    _registry: Optional["BatchRegistry"] = field(default=None, repr=False)

    # Batch-scoped event logs
    _events: Dict[str, Deque[Dict[str, Any]]] = field(default_factory=dict, repr=False)

    @property
    def config(self) -> "OrchestratorConfig":
        """Get the orchestrator configuration (loaded from the environment)."""
        if self._config is None:
            from testrunmcp.config import load_orchestrator_config
            self._config = load_orchestrator_config()
        return self._config

    def configure(self, config: "OrchestratorConfig") -> None:
        """Replace the configuration and drop services built from the old one."""
        self._config = config
        self._backend = None
        self._registry = None
        self._events.clear()

    @property
    def backend(self) -> "ExecutionBackend":
        """Get the execution backend selected by the configuration."""
        if self._backend is None:
            self._backend = self._build_backend()
        return self._backend

    def set_backend(self, backend: "ExecutionBackend") -> None:
        """Use *backend* for every batch submitted from now on."""
        self._backend = backend

    def azure_client(self) -> "AzureDevOpsClient":
        """Build an Azure DevOps REST client from the configuration.

        Raises:
            ConfigError: If no organization is configured
        """
        from testrunmcp.backends import AzureDevOpsClient
        from testrunmcp.config import ConfigError

        cfg = self.config
        if not cfg.organization_url:
            raise ConfigError(
                "TESTRUNMCP_ORGANIZATION_URL (or TESTRUNMCP_ORGANIZATION) is required "
                "for Azure DevOps access"
            )
        return AzureDevOpsClient(
            cfg.organization_url,
            token=cfg.token,
            api_version=cfg.api_version,
            timeout=cfg.http_timeout,
        )

    def _build_backend(self) -> "ExecutionBackend":
        cfg = self.config
        if cfg.backend == "azure_devops":
            from testrunmcp.backends import AzureDevOpsBackend
            client = self.azure_client()
            logger.info("Using Azure DevOps backend at %s", cfg.organization_url)
            return AzureDevOpsBackend(
                client,
                project=cfg.project,
                poll_interval=cfg.poll_interval,
                run_timeout=cfg.run_timeout,
                wait_for_completion=cfg.wait_for_completion,
            )
        from testrunmcp.backends import SimulatedBackend
        logger.info("Using simulated backend")
        return SimulatedBackend()

    @property
    def registry(self) -> "BatchRegistry":
        """Get the batch registry."""
        if self._registry is None:
            from testrunmcp.domains.batch_execution import BatchRegistry
            cfg = self.config
            self._registry = BatchRegistry(
                ttl_seconds=cfg.registry_ttl_seconds,
                max_batches=cfg.registry_max_batches,
                on_evict=self._drop_events,
            )
        return self._registry

    def new_coordinator(self) -> "BatchCoordinator":
        """Create a coordinator bound to the current backend and event log."""
        from testrunmcp.domains.batch_execution import BatchCoordinator
        return BatchCoordinator(self.backend, publisher=self.record_event)

    # ── Event log ──

    def record_event(self, event: Any) -> None:
        """Append a domain event to the log of its batch."""
        payload = event.to_dict()
        batch_id = payload.get("batch_id")
        if not batch_id:
            return
        log = self._events.get(batch_id)
        if log is None:
            log = self._events[batch_id] = deque(maxlen=MAX_EVENTS_PER_BATCH)
        log.append(payload)

    def get_events(self, batch_id: str) -> List[Dict[str, Any]]:
        return list(self._events.get(batch_id, ()))

    def _drop_events(self, batch_id: str) -> None:
        self._events.pop(batch_id, None)


def get_container() -> ServiceContainer:
    """Get the singleton service container.

    Returns:
        The shared ServiceContainer instance
    """
    global _container
    if _container is None:
        _container = ServiceContainer()
    return _container


def reset_container() -> None:
    """Reset the container (for testing).

    Clears the singleton instance so a fresh container is created
    on next get_container() call.
    """
    global _container
    _container = None
