"""Registry of resources, tools and prompts."""

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from ..errors import (
    InvalidParamsError,
    NotFoundError,
    PromptNotFoundError,
    ResourceNotFoundError,
    ToolNotFoundError,
)
from ..events import ReadinessHandle, Subscription
from .capabilities import ChunkReader, PromptCapability, ResourceCapability, ToolCapability
from .models import (
    CONFIG_TYPES,
    Entry,
    EntryConfig,
    EntryKind,
    PromptConfig,
    PromptEntry,
    ResourceConfig,
    ResourceEntry,
    ToolConfig,
    ToolEntry,
)

logger = logging.getLogger(__name__)

Capability = Union[ResourceCapability, ToolCapability, PromptCapability]

NOT_FOUND_ERRORS = {
    EntryKind.RESOURCE: ResourceNotFoundError,
    EntryKind.TOOL: ToolNotFoundError,
    EntryKind.PROMPT: PromptNotFoundError,
}


@dataclass
class _Record:
    entry: Entry
    capability: Capability
    subscription: Subscription
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class Registry:
    """Source of truth for registered entries.

    Mutations serialize per namespace; updates to one entry additionally
    hold that entry's lock. Reads never suspend, so ``get`` and ``list``
    always return a point-in-time copy.
    """

    def __init__(self, max_events: Optional[int] = None):
        self._max_events = max_events
        self._records: Dict[EntryKind, Dict[str, _Record]] = {kind: {} for kind in EntryKind}
        # uri (resources) or name (tools, prompts) -> id
        self._keys: Dict[EntryKind, Dict[str, str]] = {kind: {} for kind in EntryKind}
        self._counters = {kind: itertools.count(1) for kind in EntryKind}
        self._locks = {kind: asyncio.Lock() for kind in EntryKind}
        self._changes = {
            kind: Subscription(f"{kind.namespace}", max_events) for kind in EntryKind
        }
        self._closed = False

    # Queries

    def get(self, kind: EntryKind, key: str) -> Entry:
        """Snapshot of one entry, looked up by id or by uri/name."""
        return self._lookup(kind, key).entry.model_copy(deep=True)

    def list(self, kind: EntryKind) -> List[Entry]:
        """Snapshots of every entry in one namespace."""
        return [record.entry.model_copy(deep=True) for record in self._records[kind].values()]

    def count(self, kind: EntryKind) -> int:
        """Number of entries in one namespace."""
        return len(self._records[kind])

    def contains(self, kind: EntryKind, key: str) -> bool:
        """True if the id or uri/name is registered."""
        try:
            self._lookup(kind, key)
        except NotFoundError:
            return False
        return True

    def read_resource(self, key: str) -> Tuple[ResourceEntry, bytes]:
        """Resource snapshot together with its full content."""
        record = self._lookup(EntryKind.RESOURCE, key)
        return record.entry.model_copy(), record.capability.read()

    def open_reader(self, key: str, chunk_size: int, offset: int = 0) -> ChunkReader:
        """Chunked reader over a resource's content."""
        record = self._lookup(EntryKind.RESOURCE, key)
        return record.capability.open_reader(chunk_size, offset)

    def get_tool(self, key: str) -> Tuple[ToolEntry, ToolCapability]:
        """Tool snapshot and the capability that runs it."""
        record = self._lookup(EntryKind.TOOL, key)
        return record.entry.model_copy(), record.capability

    def validate_tool_input(self, key: str, data: bytes) -> List[str]:
        """Problems found checking input against the tool's schema."""
        return self._lookup(EntryKind.TOOL, key).capability.validate(data)

    def render_prompt(self, key: str, arguments: Optional[Dict[str, Any]] = None) -> str:
        """Render a prompt template with the given arguments."""
        return self._lookup(EntryKind.PROMPT, key).capability.render(arguments)

    def prompt_template(self, key: str) -> str:
        return self._lookup(EntryKind.PROMPT, key).capability.template

    # Mutations

    async def register(self, kind: EntryKind, config: EntryConfig) -> str:
        """Register an entry and return its newly allocated id."""
        self._check_open()
        self._check_config(kind, config)

        async with self._locks[kind]:
            key = self._key_of(kind, config)
            if key in self._keys[kind]:
                raise InvalidParamsError(f"{kind.value} '{key}' is already registered")

            entry_id = f"{kind.prefix}{next(self._counters[kind])}"
            entry, capability = self._build(kind, entry_id, config)
            record = _Record(
                entry=entry,
                capability=capability,
                subscription=Subscription(entry_id, self._max_events),
            )

            self._changes[kind].publish("registered", {"id": entry_id, "key": key})
            self._records[kind][entry_id] = record
            self._keys[kind][key] = entry_id

        logger.info(f"Registered {kind.value} {entry_id} ({key})")
        return entry_id

    async def update(self, kind: EntryKind, key: str, config: EntryConfig) -> Entry:
        """Replace an entry's metadata and capability in place."""
        self._check_open()
        self._check_config(kind, config)
        record = self._lookup(kind, key)

        async with record.lock:
            async with self._locks[kind]:
                entry_id = record.entry.id
                if self._records[kind].get(entry_id) is not record:
                    raise NOT_FOUND_ERRORS[kind](f"{kind.value} not found: {key}")

                old_key = self._key_of_entry(record.entry)
                new_key = self._key_of(kind, config)
                if new_key != old_key and new_key in self._keys[kind]:
                    raise InvalidParamsError(f"{kind.value} '{new_key}' is already registered")

                entry, capability = self._build(kind, entry_id, config)

                record.subscription.publish("content-changed", {"id": entry_id})
                self._changes[kind].publish("updated", {"id": entry_id, "key": new_key})
                record.entry = entry
                record.capability = capability
                if new_key != old_key:
                    del self._keys[kind][old_key]
                    self._keys[kind][new_key] = entry_id

        logger.info(f"Updated {kind.value} {entry_id}")
        return entry.model_copy(deep=True)

    async def unregister(self, kind: EntryKind, key: str) -> bool:
        """Remove an entry; its subscribers get a final "removed" event."""
        self._check_open()
        record = self._lookup(kind, key)

        async with record.lock:
            async with self._locks[kind]:
                entry_id = record.entry.id
                if self._records[kind].get(entry_id) is not record:
                    raise NOT_FOUND_ERRORS[kind](f"{kind.value} not found: {key}")

                record.subscription.publish("removed", {"id": entry_id})
                self._changes[kind].publish("unregistered", {"id": entry_id})
                del self._records[kind][entry_id]
                del self._keys[kind][self._key_of_entry(record.entry)]
                record.subscription.close()

        logger.info(f"Unregistered {kind.value} {entry_id}")
        return True

    # Subscriptions

    def subscribe(self, kind: EntryKind, key: str) -> ReadinessHandle:
        """Readiness handle for one entry's content-changed/removed events."""
        return self._lookup(kind, key).subscription.handle()

    def subscribe_changes(self, kind: EntryKind) -> ReadinessHandle:
        """Readiness handle for list changes in one namespace."""
        return self._changes[kind].handle()

    def close(self) -> None:
        """Tear down the registry, closing every subscription."""
        if self._closed:
            return
        self._closed = True
        for kind in EntryKind:
            for record in self._records[kind].values():
                record.subscription.close()
            self._records[kind].clear()
            self._keys[kind].clear()
            self._changes[kind].close()
        logger.info("Registry closed")

    @property
    def closed(self) -> bool:
        return self._closed

    def stats(self) -> Dict[str, int]:
        """Entry counts per namespace."""
        return {kind.namespace: len(self._records[kind]) for kind in EntryKind}

    def __iter__(self) -> Iterator[Entry]:
        for kind in EntryKind:
            yield from self.list(kind)

    # Internals

    def _lookup(self, kind: EntryKind, key: str) -> _Record:
        """Resolve an id or uri/name to its record."""
        records = self._records[kind]
        record = records.get(key)
        if record is None:
            entry_id = self._keys[kind].get(key)
            record = records.get(entry_id) if entry_id else None
        if record is None:
            raise NOT_FOUND_ERRORS[kind](f"{kind.value} not found: {key}")
        return record

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("Registry is closed")

    @staticmethod
    def _check_config(kind: EntryKind, config: EntryConfig) -> None:
        if not isinstance(config, CONFIG_TYPES[kind]):
            raise InvalidParamsError(
                f"Expected {CONFIG_TYPES[kind].__name__} for {kind.value}, "
                f"got {type(config).__name__}"
            )

    @staticmethod
    def _key_of(kind: EntryKind, config: EntryConfig) -> str:
        return config.uri if kind == EntryKind.RESOURCE else config.name

    @staticmethod
    def _key_of_entry(entry: Entry) -> str:
        return entry.uri if isinstance(entry, ResourceEntry) else entry.name

    @staticmethod
    def _build(kind: EntryKind, entry_id: str, config: EntryConfig) -> Tuple[Entry, Capability]:
        """Entry snapshot and capability for a validated config."""
        if kind == EntryKind.RESOURCE:
            assert isinstance(config, ResourceConfig)
            entry = ResourceEntry(
                id=entry_id,
                uri=config.uri,
                name=config.name or config.uri,
                description=config.description,
                mime_type=config.mime_type,
                size=len(config.content),
                metadata=config.metadata,
                last_modified=datetime.now(timezone.utc),
            )
            return entry, ResourceCapability(config.content)

        if kind == EntryKind.TOOL:
            assert isinstance(config, ToolConfig)
            entry = ToolEntry(
                id=entry_id,
                name=config.name,
                description=config.description,
                input_schema=config.input_schema,
                metadata=config.metadata,
                streaming=config.streaming,
                accepts_input=config.accepts_input,
                supports_progress=config.supports_progress,
            )
            return entry, ToolCapability(config.handler, config.input_schema)

        assert isinstance(config, PromptConfig)
        entry = PromptEntry(
            id=entry_id,
            name=config.name,
            description=config.description,
            content_type=config.content_type,
            arguments=list(config.arguments),
            metadata=config.metadata,
        )
        return entry, PromptCapability(config.template, list(config.arguments))
