"""Node Registry - maps node type ids to capabilities.

A capability bundles the config schema, the coroutine that runs a node and,
for polling triggers, the coroutine that checks an external source for new
data. The executor and the polling sweeper only ever talk to capabilities.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, List, Optional, Callable, Awaitable, Type

from pydantic import BaseModel, ValidationError

from core.logging import get_logger
from constants import NODE_KINDS, KIND_ACTION, KIND_POLLING_TRIGGER, KIND_SCHEDULED_TRIGGER, KIND_TRIGGER
from services.execution.errors import NodeTypeNotFound

logger = get_logger(__name__)


@dataclass
class PollState:
    """Stored polling cursor handed to ``Capability.poll``.

    ``data`` is the capability's own scratch space: whatever the previous poll
    returned in ``PollResult.state`` (ETags, page tokens, seen ids). The sweeper
    stores it verbatim and never interprets it.
    """
    cursor: Optional[str] = None
    last_seen_at: Optional[datetime] = None
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PollResult:
    """Outcome of one poll: new items, the cursor and the opaque ``state`` to store."""
    items: List[Any] = field(default_factory=list)
    cursor: Optional[str] = None
    state: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_new_data(self) -> bool:
        return bool(self.items)


RunFn = Callable[[Any, BaseModel], Awaitable[Any]]
PollFn = Callable[[BaseModel, PollState], Awaitable[PollResult]]


@dataclass
class Capability:
    type_id: str
    schema: Type[BaseModel]
    run: RunFn
    kind: str = KIND_ACTION
    poll: Optional[PollFn] = None
    description: str = ""

    @property
    def is_trigger(self) -> bool:
        return self.kind in (KIND_TRIGGER, KIND_SCHEDULED_TRIGGER, KIND_POLLING_TRIGGER)

    def parse_config(self, config: Dict[str, Any]) -> BaseModel:
        """Validate raw config against the schema (raises pydantic ValidationError)."""
        return self.schema.model_validate(config or {})

    def config_errors(self, config: Dict[str, Any]) -> List[str]:
        try:
            self.parse_config(config)
        except ValidationError as e:
            return [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        return []


class NodeRegistry:
    """Registry of node capabilities keyed by type id."""

    def __init__(self):
        self._capabilities: Dict[str, Capability] = {}

    def register(self, type_id: str, schema: Type[BaseModel], run: RunFn,
                 kind: str = KIND_ACTION, poll: Optional[PollFn] = None,
                 description: str = "") -> Capability:
        if kind not in NODE_KINDS:
            raise ValueError(f"Unknown capability kind: {kind}")
        if kind == KIND_POLLING_TRIGGER and poll is None:
            raise ValueError(f"Polling trigger {type_id} must provide poll()")
        if type_id in self._capabilities:
            logger.warning("Replacing registered capability", type_id=type_id)

        capability = Capability(type_id=type_id, schema=schema, run=run,
                                kind=kind, poll=poll, description=description)
        self._capabilities[type_id] = capability
        logger.debug("Registered capability", type_id=type_id, kind=kind)
        return capability

    def resolve(self, type_id: str) -> Capability:
        capability = self._capabilities.get(type_id)
        if capability is None:
            raise NodeTypeNotFound(type_id)
        return capability

    def has(self, type_id: str) -> bool:
        return type_id in self._capabilities

    def type_ids(self, kind: Optional[str] = None) -> List[str]:
        return sorted(
            type_id for type_id, cap in self._capabilities.items()
            if kind is None or cap.kind == kind
        )

    def describe(self) -> List[Dict[str, Any]]:
        """Capability catalog for the HTTP API."""
        return [
            {
                "type_id": cap.type_id,
                "kind": cap.kind,
                "description": cap.description,
                "schema": cap.schema.model_json_schema(),
            }
            for cap in sorted(self._capabilities.values(), key=lambda c: c.type_id)
        ]
