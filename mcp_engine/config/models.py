"""Configuration data models."""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator


class EngineSettings(BaseModel):
    name: str = "mcp-engine"
    version: str = "1.0.0"
    log_level: Literal["debug", "info", "warning", "error"] = "info"


class RuntimeConfig(BaseModel):
    operation_timeout: float = 30.0  # seconds
    result_retention: float = 300.0  # seconds
    max_concurrent_requests: int = 100
    cancel_poll_interval: float = 0.05
    default_chunk_size: int = 4096
    max_buffered_chunks: int = 0  # 0 = unbounded


class SessionConfig(BaseModel):
    timeout: float = 30.0
    max_retries: int = 3
    retry_delay: float = 1.0
    backoff: Literal["fixed", "exponential"] = "exponential"
    max_retry_delay: float = 30.0
    heartbeat_interval: Optional[float] = None  # None disables heartbeats
    auto_reconnect: bool = False
    rtt_window: int = 20


class RateLimitConfig(BaseModel):
    enabled: bool = True
    strategy: Literal["token_bucket", "fixed_window"] = "token_bucket"
    max_requests: int = 100
    burst_size: Optional[int] = None  # defaults to max_requests
    window_size: float = 60.0  # seconds
    key: Literal["client_id", "remote_address"] = "client_id"

    @model_validator(mode="after")
    def _default_burst(self) -> "RateLimitConfig":
        if self.burst_size is None:
            self.burst_size = self.max_requests
        return self


class HealthCheckConfig(BaseModel):
    enabled: bool = True
    interval: float = 60.0  # seconds
    timeout: float = 10.0


class ResourceSeed(BaseModel):
    uri: str
    name: Optional[str] = None
    description: Optional[str] = None
    mime_type: str = "text/plain"
    text: str = ""
    metadata: Optional[Dict[str, Any]] = None


class PromptArgumentSeed(BaseModel):
    name: str
    description: Optional[str] = None
    required: bool = False


class PromptSeed(BaseModel):
    name: str
    template: str
    description: Optional[str] = None
    arguments: List[PromptArgumentSeed] = Field(default_factory=list)


class BackendConfig(BaseModel):
    enabled: bool = True
    # Entries seeded into the in-process engine serving this backend
    resources: List[ResourceSeed] = Field(default_factory=list)
    prompts: List[PromptSeed] = Field(default_factory=list)


class ProxyConfig(BaseModel):
    enabled: bool = False
    selection: Literal["round_robin", "least_loaded"] = "round_robin"
    request_timeout: float = 30.0
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    health_check: HealthCheckConfig = Field(default_factory=HealthCheckConfig)
    backends: Dict[str, BackendConfig] = Field(default_factory=dict)


class AccessRule(BaseModel):
    methods: Optional[List[str]] = None  # None means all methods
    tools: Optional[List[str]] = None  # None means all tools
    resources: Optional[List[str]] = None  # None means all resources


class ClientRule(BaseModel):
    identify_by: List[Dict[str, str]]
    allow: List[AccessRule] = Field(default_factory=list)
    deny: List[AccessRule] = Field(default_factory=list)
    deny_all_except_allowed: bool = False


class AuthConfig(BaseModel):
    allow_anonymous: bool = False
    clients: Dict[str, ClientRule] = Field(default_factory=dict)


class EngineConfig(BaseModel):
    engine: EngineSettings = Field(default_factory=EngineSettings)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    proxy: ProxyConfig = Field(default_factory=ProxyConfig)
    auth: Optional[AuthConfig] = None
    resources: List[ResourceSeed] = Field(default_factory=list)
    prompts: List[PromptSeed] = Field(default_factory=list)
