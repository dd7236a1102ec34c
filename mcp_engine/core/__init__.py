"""Engine assembly, management and hot reloading."""

from .config_watcher import ConfigWatcher
from .engine import ContextEngine
from .manager import EngineManager
from .tools import TOOL_CATALOG, builtin_tools

__all__ = ["ContextEngine", "EngineManager", "ConfigWatcher", "TOOL_CATALOG", "builtin_tools"]
