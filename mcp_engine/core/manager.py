"""Engine manager: owns the configuration, the local engine and the proxy."""

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from ..access import AccessControlMiddleware, ClientIdentifier, ConnectionContext
from ..client import ClientSession, LoopbackTransport
from ..config.manager import ConfigManager
from ..config.models import BackendConfig, EngineConfig
from ..proxy import ProxyRouter, create_limiter, create_selector
from .config_watcher import ConfigWatcher
from .engine import ContextEngine

logger = logging.getLogger(__name__)


class EngineManager:
    """Runs a local engine and, when enabled, a proxy over backend engines.

    Each configured backend is served by its own in-process engine. A
    configuration reload adds, removes and replaces backends and swaps the
    limiter, selector and auth hook without restarting the proxy.
    """

    def __init__(self, config_path: Optional[str] = None, config: Optional[EngineConfig] = None):
        self.config_path = Path(config_path) if config_path else None
        self.config_manager = ConfigManager(str(self.config_path)) if self.config_path else None
        if config is None:
            config = self.config_manager.load_config() if self.config_manager else EngineConfig()
        self.config = config

        self.engine = ContextEngine(self.config)
        self.router: Optional[ProxyRouter] = None
        self.backend_engines: Dict[str, ContextEngine] = {}
        self.config_watcher: Optional[ConfigWatcher] = None
        self._watch_task: Optional[asyncio.Task] = None
        self.start_time: Optional[datetime] = None

        self._setup_logging()

    def _setup_logging(self):
        """Setup logging configuration."""
        level = getattr(logging, self.config.engine.log_level.upper())
        logging.basicConfig(
            level=level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    async def start(self, watch: bool = False) -> None:
        """Start the local engine, the proxy (if enabled) and optionally the config watcher."""
        self.start_time = datetime.now()
        logger.info(f"Starting engine manager '{self.config.engine.name}'")

        try:
            await self.engine.start()
            if self.config.proxy.enabled:
                await self._start_proxy(self.config)

            if watch and self.config_path:
                self.config_watcher = ConfigWatcher(str(self.config_path), self)
                self._watch_task = asyncio.create_task(
                    self.config_watcher.start_watching(), name="config_watcher"
                )
        except Exception as e:
            logger.error(f"Error starting engine manager: {e}", exc_info=True)
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the watcher, the proxy with its backends, and the local engine."""
        logger.info("Stopping engine manager")
        if self.config_watcher:
            await self.config_watcher.stop()
            self.config_watcher = None
        if self._watch_task:
            self._watch_task.cancel()
            try:
                await self._watch_task
            except asyncio.CancelledError:
                pass
            self._watch_task = None

        await self._stop_proxy()
        await self.engine.stop()
        self.start_time = None

    # Proxy

    async def _start_proxy(self, config: EngineConfig) -> None:
        """Build the router from ``config`` and start one engine per enabled backend."""
        proxy = config.proxy
        self.router = ProxyRouter(
            selector=create_selector(proxy.selection),
            rate_limiter=create_limiter(proxy.rate_limit),
            request_timeout=proxy.request_timeout,
            rate_limit_key=proxy.rate_limit.key,
            health_check=proxy.health_check,
        )
        self._apply_auth(config)
        for backend_id, backend_config in proxy.backends.items():
            if backend_config.enabled:
                await self._add_backend(backend_id, backend_config)
        await self.router.start()

    async def _stop_proxy(self) -> None:
        """Stop the router and every backend engine."""
        if self.router is None:
            return
        await self.router.stop()
        for backend_id in list(self.backend_engines):
            await self._remove_backend(backend_id)
        self.router = None

    async def _add_backend(self, backend_id: str, backend_config: BackendConfig) -> None:
        """Start an engine for the backend and register it with the router."""
        engine = ContextEngine(
            self.config,
            name=f"{self.config.engine.name}-{backend_id}",
            resources=backend_config.resources,
            prompts=backend_config.prompts,
        )
        await engine.start()
        self.backend_engines[backend_id] = engine
        await self.router.add_backend(backend_id, engine)

    async def _remove_backend(self, backend_id: str) -> None:
        """Unregister the backend and stop its engine."""
        await self.router.remove_backend(backend_id)
        engine = self.backend_engines.pop(backend_id, None)
        if engine is not None:
            await engine.stop()

    def _apply_auth(self, config: EngineConfig) -> None:
        if config.auth is None:
            self.router.auth_hook = None
            self.router.identifier = None
            return
        self.router.auth_hook = AccessControlMiddleware.from_config(config.auth)
        self.router.identifier = ClientIdentifier(config.auth)

    # Configuration

    async def reload_config(self) -> None:
        """Reload configuration and apply changes."""
        if self.config_manager is None:
            raise RuntimeError("No configuration file to reload")
        logger.info("Reloading configuration")

        old_config = self.config
        new_config = self.config_manager.reload_config()
        await self._apply_config_changes(old_config, new_config)
        self.config = new_config
        logger.info("Configuration reloaded successfully")

    async def _apply_config_changes(self, old_config: EngineConfig, new_config: EngineConfig) -> None:
        """Apply configuration changes without full restart."""
        old_proxy, new_proxy = old_config.proxy, new_config.proxy

        if old_proxy.enabled != new_proxy.enabled or self.router is None:
            self.config = new_config
            await self._stop_proxy()
            if new_proxy.enabled:
                await self._start_proxy(new_config)
            return

        self.config = new_config
        if old_proxy.rate_limit != new_proxy.rate_limit:
            logger.info("Rate limit settings changed, replacing limiter")
            self.router.rate_limiter = create_limiter(new_proxy.rate_limit)
            self.router.rate_limit_key = new_proxy.rate_limit.key
        if old_proxy.selection != new_proxy.selection:
            self.router.selector = create_selector(new_proxy.selection)
        self.router.request_timeout = new_proxy.request_timeout
        if old_config.auth != new_config.auth:
            self._apply_auth(new_config)

        old_backends = {k for k, v in old_proxy.backends.items() if v.enabled}
        new_backends = {k for k, v in new_proxy.backends.items() if v.enabled}

        for backend_id in old_backends - new_backends:
            logger.info(f"Removing backend: {backend_id}")
            await self._remove_backend(backend_id)

        for backend_id in new_backends - old_backends:
            logger.info(f"Adding backend: {backend_id}")
            await self._add_backend(backend_id, new_proxy.backends[backend_id])

        for backend_id in old_backends & new_backends:
            if old_proxy.backends[backend_id] != new_proxy.backends[backend_id]:
                logger.info(f"Replacing modified backend: {backend_id}")
                await self._remove_backend(backend_id)
                await self._add_backend(backend_id, new_proxy.backends[backend_id])

    # Access

    def session(self, context: Optional[ConnectionContext] = None, via_proxy: Optional[bool] = None) -> ClientSession:
        """A client session to the proxy when it runs, otherwise to the local engine."""
        if via_proxy is None:
            via_proxy = self.router is not None
        if via_proxy:
            if self.router is None:
                raise RuntimeError("Proxy is not enabled")
            transport = LoopbackTransport(self.router.endpoint(context), name="proxy")
        else:
            transport = LoopbackTransport(self.engine, name="engine")
        return ClientSession(transport, self.config.session)

    def get_status(self) -> Dict:
        """Get overall manager status."""
        uptime = (datetime.now() - self.start_time).total_seconds() if self.start_time else 0

        return {
            "manager": {
                "name": self.config.engine.name,
                "version": self.config.engine.version,
                "uptime_seconds": uptime,
                "start_time": self.start_time.isoformat() if self.start_time else None,
            },
            "engine": self.engine.get_status(),
            "proxy": self.router.get_stats() if self.router else None,
        }

    def get_config_summary(self) -> Dict:
        """Get configuration summary."""
        backends = self.config.proxy.backends
        clients = self.config.auth.clients if self.config.auth else {}
        return {
            "proxy": {
                "enabled": self.config.proxy.enabled,
                "backends": len(backends),
                "enabled_backends": sum(1 for b in backends.values() if b.enabled),
                "selection": self.config.proxy.selection,
                "rate_limit": self.config.proxy.rate_limit.strategy
                if self.config.proxy.rate_limit.enabled
                else None,
            },
            "clients": {
                "total": len(clients),
                "rules": sum(len(c.allow) + len(c.deny) for c in clients.values()),
            },
            "runtime": self.config.runtime.model_dump(),
            "seeds": {
                "resources": len(self.config.resources),
                "prompts": len(self.config.prompts),
            },
        }
