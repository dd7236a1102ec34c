"""A complete in-process engine: registry, executions and dispatch."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..config.models import EngineConfig, PromptSeed, ResourceSeed
from ..dispatch import Dispatcher
from ..execution import ExecutionEngine
from ..registry import EntryKind, PromptArgument, PromptConfig, Registry, ResourceConfig
from .tools import TOOL_CATALOG, builtin_tools

logger = logging.getLogger(__name__)


class ContextEngine:
    """Assembles the engine components from configuration.

    The dispatcher is the endpoint transports talk to; ``handle`` and
    ``attach`` are forwarded to it so the engine itself can be connected.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        name: Optional[str] = None,
        resources: Optional[List[ResourceSeed]] = None,
        prompts: Optional[List[PromptSeed]] = None,
    ):
        self.config = config or EngineConfig()
        self.name = name or self.config.engine.name
        runtime = self.config.runtime

        self.registry = Registry()
        self.executions = ExecutionEngine(
            self.registry,
            operation_timeout=runtime.operation_timeout,
            result_retention=runtime.result_retention,
            cancel_poll_interval=runtime.cancel_poll_interval,
            max_buffered_chunks=runtime.max_buffered_chunks,
        )
        self.dispatcher = Dispatcher(
            self.registry,
            self.executions,
            server_info={"name": self.name, "version": self.config.engine.version},
            tool_catalog=TOOL_CATALOG,
            max_concurrent_requests=runtime.max_concurrent_requests,
            default_chunk_size=runtime.default_chunk_size,
        )
        self._resources = self.config.resources if resources is None else resources
        self._prompts = self.config.prompts if prompts is None else prompts
        self.start_time: Optional[datetime] = None

    @property
    def running(self) -> bool:
        return self.start_time is not None

    async def start(self) -> None:
        """Install built-in tools, seed configured entries and start notifications."""
        if self.running:
            return

        for tool in builtin_tools():
            await self.registry.register(EntryKind.TOOL, tool)
        for seed in self._resources:
            await self.registry.register(EntryKind.RESOURCE, self._resource_config(seed))
        for seed in self._prompts:
            await self.registry.register(EntryKind.PROMPT, self._prompt_config(seed))

        await self.dispatcher.start()
        self.start_time = datetime.now()
        logger.info(f"Engine '{self.name}' started: {self.registry.stats()}")

    async def stop(self) -> None:
        """Stop notifications, cancel running executions and close the registry."""
        if not self.running:
            return
        await self.dispatcher.stop()
        await self.executions.shutdown(timeout=self.config.runtime.cancel_poll_interval * 10)
        self.registry.close()
        self.start_time = None
        logger.info(f"Engine '{self.name}' stopped")

    async def handle(self, data) -> Optional[bytes]:
        """Answer one encoded message or batch."""
        return await self.dispatcher.handle(data)

    def attach(self, sink) -> None:
        """Route server notifications to ``sink``; None detaches."""
        self.dispatcher.attach(sink)

    async def __aenter__(self) -> "ContextEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    @staticmethod
    def _resource_config(seed: ResourceSeed) -> ResourceConfig:
        return ResourceConfig(
            uri=seed.uri,
            name=seed.name,
            description=seed.description,
            mime_type=seed.mime_type,
            content=seed.text.encode("utf-8"),
            metadata=seed.metadata,
        )

    @staticmethod
    def _prompt_config(seed: PromptSeed) -> PromptConfig:
        return PromptConfig(
            name=seed.name,
            template=seed.template,
            description=seed.description,
            arguments=[PromptArgument(**arg.model_dump()) for arg in seed.arguments],
        )

    def get_status(self) -> Dict[str, Any]:
        """Uptime plus registry, execution and dispatcher counters."""
        uptime = (datetime.now() - self.start_time).total_seconds() if self.start_time else 0
        return {
            "name": self.name,
            "running": self.running,
            "uptime_seconds": uptime,
            "registry": self.registry.stats(),
            "executions": self.executions.get_stats(),
            "dispatcher": self.dispatcher.get_stats(),
        }
