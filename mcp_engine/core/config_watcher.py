"""Configuration file watcher for hot reloading."""

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .manager import EngineManager

logger = logging.getLogger(__name__)


class ConfigWatcher:
    """Polls the configuration file and reloads the manager when it changes."""

    def __init__(self, config_path: str, manager: "EngineManager", poll_interval: float = 1.0):
        self.config_path = Path(config_path)
        self.manager = manager
        self.poll_interval = poll_interval
        self.last_modified = 0.0
        self.reloads = 0
        self.running = False

    async def start_watching(self) -> None:
        """Watch until stopped or cancelled."""
        if self.running:
            return

        self.running = True
        logger.info(f"Starting config file watcher for: {self.config_path}")

        if self.config_path.exists():
            self.last_modified = self.config_path.stat().st_mtime

        while self.running:
            try:
                await self.check_for_changes()
                await asyncio.sleep(self.poll_interval)
            except asyncio.CancelledError:
                break
            except OSError as e:
                logger.error(f"Error in config watcher: {e}")
                await asyncio.sleep(self.poll_interval * 5)

    async def stop(self) -> None:
        """Stop watching after the current poll."""
        self.running = False

    async def check_for_changes(self) -> bool:
        """Reload when the file's mtime moved forward; True if a reload was applied."""
        if not self.config_path.exists():
            return False

        current_modified = self.config_path.stat().st_mtime
        if current_modified <= self.last_modified:
            return False

        logger.info("Configuration file changed, reloading...")
        self.last_modified = current_modified
        return await self._reload_config()

    async def _reload_config(self) -> bool:
        """Validate, then apply the new configuration; False if rejected."""
        issues = self.manager.config_manager.validate_config()
        if issues:
            logger.error("New configuration has validation issues:")
            for issue in issues:
                logger.error(f"  - {issue}")
            logger.error("Configuration reload skipped due to validation errors")
            return False

        try:
            await self.manager.reload_config()
        except (ValueError, RuntimeError) as e:
            # Keep the watcher alive; the previous configuration stays in effect.
            logger.error(f"Failed to reload configuration: {e}")
            return False

        self.reloads += 1
        logger.info("Configuration reloaded successfully")
        return True
