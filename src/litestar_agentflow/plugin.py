"""Litestar plugin for agent workflow integration.

This module provides the AgentFlowPlugin, which builds the step execution
engine once per application and exposes it to route handlers through
dependency injection.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from litestar.di import Provide
from litestar.plugins import InitPluginProtocol

from litestar_agentflow.communicator import AgentCommunicator
from litestar_agentflow.config import EngineConfig
from litestar_agentflow.engine.executor import StepExecutionEngine
from litestar_agentflow.engine.waits import ElicitationWaitRegistry
from litestar_agentflow.exceptions import ConfigurationError
from litestar_agentflow.store import InMemoryWorkflowStore

if TYPE_CHECKING:
    from litestar.config.app import AppConfig

    from litestar_agentflow.config import ConfigurationManager
    from litestar_agentflow.core.protocols import AgentCatalog, CompletionService, EventBroadcaster, WorkflowStore

__all__ = ["AgentFlowPlugin", "AgentFlowPluginConfig"]


@dataclass
class AgentFlowPluginConfig:
    """Configuration for the AgentFlowPlugin.

    Attributes:
        engine: Optional pre-configured engine. If provided, the collaborator
            fields below are ignored.
        catalog: Agent catalog. Required unless ``engine`` is given.
        completion: Completion service. Required unless ``engine`` is given.
        store: Workflow store. Defaults to an in-memory store.
        broadcaster: Optional event broadcaster for real-time push.
        config: Optional configuration manager; loaded on app startup if it
            has not been loaded yet.
        engine_config: Engine runtime options.
        dependency_key_engine: The key used for dependency injection of the
            engine. Defaults to "agentflow_engine".
        dependency_key_communicator: The key used for dependency injection of
            the message bus. Defaults to "agentflow_communicator".
        dependency_key_waits: The key used for dependency injection of the
            wait registry. Defaults to "agentflow_waits".
    """

    engine: StepExecutionEngine | None = None
    catalog: AgentCatalog | None = None
    completion: CompletionService | None = None
    store: WorkflowStore | None = None
    broadcaster: EventBroadcaster | None = None
    config: ConfigurationManager | None = None
    engine_config: EngineConfig | None = None
    dependency_key_engine: str = "agentflow_engine"
    dependency_key_communicator: str = "agentflow_communicator"
    dependency_key_waits: str = "agentflow_waits"


class AgentFlowPlugin(InitPluginProtocol):
    """Litestar plugin for agent workflow orchestration.

    Example:
        Basic usage::

            from litestar import Litestar, post
            from litestar_agentflow import AgentFlowPlugin, AgentFlowPluginConfig, StepExecutionEngine


            @post("/workflows/{workflow_id:str}/respond")
            async def respond(workflow_id: str, data: dict, agentflow_engine: StepExecutionEngine) -> dict:
                workflow = await agentflow_engine.resume_with_response(workflow_id, data["response"])
                return await agentflow_engine.get_status(workflow.id)


            app = Litestar(
                route_handlers=[respond],
                plugins=[AgentFlowPlugin(AgentFlowPluginConfig(catalog=catalog, completion=completion))],
            )
    """

    __slots__ = ("_config", "_engine")

    def __init__(self, config: AgentFlowPluginConfig | None = None) -> None:
        """Initialize the plugin.

        Args:
            config: Optional configuration for the plugin.
        """
        self._config = config or AgentFlowPluginConfig()
        self._engine: StepExecutionEngine | None = None

    @property
    def engine(self) -> StepExecutionEngine:
        """Get the step execution engine.

        Raises:
            RuntimeError: If accessed before plugin initialization.
        """
        if self._engine is None:
            msg = "AgentFlowPlugin has not been initialized. Access engine after app startup."
            raise RuntimeError(msg)
        return self._engine

    def _build_engine(self) -> StepExecutionEngine:
        config = self._config
        if config.engine is not None:
            return config.engine
        if config.catalog is None or config.completion is None:
            msg = "AgentFlowPlugin requires an agent catalog and a completion service"
            raise ConfigurationError(msg)
        return StepExecutionEngine(
            config.store or InMemoryWorkflowStore(),
            config.catalog,
            config.completion,
            broadcaster=config.broadcaster,
            config=config.config,
            engine_config=config.engine_config,
        )

    def on_app_init(self, app_config: AppConfig) -> AppConfig:
        """Build the engine and register its dependency providers.

        Args:
            app_config: The Litestar application configuration.

        Returns:
            The modified application configuration.

        Raises:
            ConfigurationError: If neither an engine nor its collaborators are configured.
        """
        self._engine = self._build_engine()

        def provide_engine() -> StepExecutionEngine:
            return self._engine  # type: ignore[return-value]

        def provide_communicator() -> AgentCommunicator:
            return self.engine.communicator

        def provide_waits() -> ElicitationWaitRegistry:
            return self.engine.waits

        app_config.dependencies[self._config.dependency_key_engine] = Provide(provide_engine, sync_to_thread=False)
        app_config.dependencies[self._config.dependency_key_communicator] = Provide(
            provide_communicator,
            sync_to_thread=False,
        )
        app_config.dependencies[self._config.dependency_key_waits] = Provide(provide_waits, sync_to_thread=False)

        manager = self._config.config
        if manager is not None and not manager.is_loaded:
            # Fail at startup rather than on the first template lookup.
            app_config.on_startup.append(manager.load)

        return app_config
