"""Configuration manager."""

import os
from pathlib import Path
from typing import Any, List, Optional

import yaml
from pydantic import ValidationError

from .models import ClientRule, EngineConfig, RateLimitConfig


class ConfigManager:
    def __init__(self, config_path: str):
        self.config_path = Path(config_path)
        self.config: Optional[EngineConfig] = None

    def load_config(self) -> EngineConfig:
        """Load and validate configuration."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        try:
            with open(self.config_path, "r") as f:
                config_data = yaml.safe_load(f) or {}

            # Expand environment variables
            config_data = self._expand_env_vars(config_data)

            self.config = EngineConfig(**config_data)
            return self.config

        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML syntax: {e}")
        except ValidationError as e:
            raise ValueError(f"Configuration validation failed: {e}")

    def validate_config(self) -> List[str]:
        """Validate configuration and return any issues."""
        issues = []

        try:
            config = self.load_config()

            issues.extend(self._check_rate_limit(config.proxy.rate_limit))

            if config.proxy.enabled and not any(
                backend.enabled for backend in config.proxy.backends.values()
            ):
                issues.append("Proxy is enabled but no backend is enabled")

            if config.auth:
                for client_id, client_rule in config.auth.clients.items():
                    conflicts = self._check_rule_conflicts(client_rule)
                    issues.extend(f"Client {client_id}: {conflict}" for conflict in conflicts)

            seen = set()
            for resource in config.resources:
                if resource.uri in seen:
                    issues.append(f"Duplicate resource uri: {resource.uri}")
                seen.add(resource.uri)

        except Exception as e:
            issues.append(f"Configuration error: {e}")

        return issues

    def _expand_env_vars(self, data: Any) -> Any:
        """Recursively expand environment variables in configuration."""
        if isinstance(data, dict):
            return {k: self._expand_env_vars(v) for k, v in data.items()}
        elif isinstance(data, list):
            return [self._expand_env_vars(item) for item in data]
        elif isinstance(data, str) and data.startswith("${") and data.endswith("}"):
            env_var = data[2:-1]
            return os.getenv(env_var, data)
        else:
            return data

    def _check_rate_limit(self, rate_limit: RateLimitConfig) -> List[str]:
        issues = []
        if rate_limit.max_requests <= 0:
            issues.append("rate_limit.max_requests must be positive")
        if rate_limit.burst_size is not None and rate_limit.burst_size <= 0:
            issues.append("rate_limit.burst_size must be positive")
        if rate_limit.window_size <= 0:
            issues.append("rate_limit.window_size must be positive")
        return issues

    def _check_rule_conflicts(self, client_rule: ClientRule) -> List[str]:
        """Check for conflicts in client access rules."""
        conflicts = []

        allow_methods = {m for rule in client_rule.allow for m in (rule.methods or [])}
        deny_methods = {m for rule in client_rule.deny for m in (rule.methods or [])}

        overlapping = allow_methods & deny_methods
        if overlapping:
            conflicts.append(f"Overlapping allow/deny rules for methods: {sorted(overlapping)}")

        if not client_rule.identify_by:
            conflicts.append("No identification conditions")

        return conflicts

    def get_config(self) -> EngineConfig:
        """Get current configuration, loading if needed."""
        if self.config is None:
            self.load_config()
        return self.config

    def reload_config(self) -> EngineConfig:
        """Force reload configuration from file."""
        self.config = None
        return self.load_config()

    def watch_config(self) -> bool:
        """Check if configuration file has been modified."""
        if not hasattr(self, "_last_modified"):
            self._last_modified = self.config_path.stat().st_mtime
            return False

        current_modified = self.config_path.stat().st_mtime
        if current_modified > self._last_modified:
            self._last_modified = current_modified
            return True

        return False
