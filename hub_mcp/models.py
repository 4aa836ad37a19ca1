"""
Data models for the MCP hub.

Contains the dataclass definitions for the four stored entity kinds
(memory items, artifacts, links, runs), registered connections, the
inputs accepted by the store, and the standard tool result container.
"""

from dataclasses import dataclass, field, asdict
from typing import Optional, List, Dict, Any
from datetime import datetime, timedelta, timezone
import uuid


RUN_STATUSES = ("running", "completed", "failed")
TERMINAL_RUN_STATUSES = ("completed", "failed")
RUN_STEP_KINDS = ("note", "tool_call", "artifact", "link")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def next_step_timestamp(previous: Optional[datetime]) -> datetime:
    """Return a timestamp strictly later than ``previous``."""
    now = utc_now()
    if previous is not None and now <= previous:
        return previous + timedelta(microseconds=1)
    return now


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _drop_none(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


@dataclass
class MemoryItem:
    """
    Shared memory note, addressed by key.

    Attributes:
        id (str): Generated once, never changes on upsert.
        key (str): Unique lookup key.
        value (str)
        tags (List[str])
        created_at (datetime)
        updated_at (datetime): Bumped on every upsert.
        event_id (str, optional): Dedup key of the last upsert.
    """

    id: str
    key: str
    value: str
    tags: List[str]
    created_at: datetime
    updated_at: datetime
    event_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["created_at"] = _iso(self.created_at)
        out["updated_at"] = _iso(self.updated_at)
        return _drop_none(out)


@dataclass
class Artifact:
    """
    Immutable record of a produced or imported document.

    Attributes:
        id (str)
        type (str): Free-form classification, e.g. "figma_file".
        name, source, content_type (str, optional)
        content_text (str, optional): Body; may be omitted in list results.
        metadata (Dict[str, Any])
        created_at (datetime)
        event_id (str, optional)
    """

    id: str
    type: str
    created_at: datetime
    name: Optional[str] = None
    source: Optional[str] = None
    content_type: Optional[str] = None
    content_text: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    event_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["created_at"] = _iso(self.created_at)
        return _drop_none(out)


@dataclass
class ArtifactCreateInput:
    type: str
    name: Optional[str] = None
    source: Optional[str] = None
    content_type: Optional[str] = None
    content_text: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    event_id: Optional[str] = None


@dataclass(frozen=True)
class EntityRef:
    """Address of any linkable entity, e.g. ("figma_file", "<key>")."""

    type: str
    id: str


@dataclass
class Link:
    """Directed, typed edge between two entities."""

    id: str
    from_ref: EntityRef
    to_ref: EntityRef
    created_at: datetime
    label: Optional[str] = None
    url: Optional[str] = None
    event_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none(
            {
                "id": self.id,
                "from": {"type": self.from_ref.type, "id": self.from_ref.id},
                "to": {"type": self.to_ref.type, "id": self.to_ref.id},
                "label": self.label,
                "url": self.url,
                "created_at": _iso(self.created_at),
                "event_id": self.event_id,
            }
        )


@dataclass
class LinkAddInput:
    from_ref: EntityRef
    to_ref: EntityRef
    label: Optional[str] = None
    url: Optional[str] = None
    event_id: Optional[str] = None


@dataclass
class LinkListFilter:
    """Any subset of the four fields; set fields are AND-combined."""

    from_type: Optional[str] = None
    from_id: Optional[str] = None
    to_type: Optional[str] = None
    to_id: Optional[str] = None

    def matches(self, link: Link) -> bool:
        if self.from_type and link.from_ref.type != self.from_type:
            return False
        if self.from_id and link.from_ref.id != self.from_id:
            return False
        if self.to_type and link.to_ref.type != self.to_type:
            return False
        if self.to_id and link.to_ref.id != self.to_id:
            return False
        return True


@dataclass
class RunStep:
    id: str
    ts: datetime
    kind: str  # note, tool_call, artifact, link
    message: str
    data: Optional[Dict[str, Any]] = None
    event_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["ts"] = _iso(self.ts)
        return _drop_none(out)


@dataclass
class Run:
    """
    Named execution trace.

    Status only moves running -> completed or running -> failed.
    Steps are append-only and ordered by call order.
    """

    id: str
    name: str
    status: str
    created_at: datetime
    updated_at: datetime
    steps: List[RunStep] = field(default_factory=list)
    event_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none(
            {
                "id": self.id,
                "name": self.name,
                "status": self.status,
                "created_at": _iso(self.created_at),
                "updated_at": _iso(self.updated_at),
                "steps": [step.to_dict() for step in self.steps],
                "event_id": self.event_id,
            }
        )


@dataclass
class Connection:
    """External MCP connection registered with the hub."""

    id: str
    name: str
    type: str
    endpoint: str
    enabled: bool
    created_at: datetime
    updated_at: datetime
    api_key: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self, include_secret: bool = False) -> Dict[str, Any]:
        out = asdict(self)
        out["created_at"] = _iso(self.created_at)
        out["updated_at"] = _iso(self.updated_at)
        if not include_secret:
            out.pop("api_key")
        return _drop_none(out)


@dataclass
class Result:
    """
    Standard result container for tool handlers.

    Attributes:
        success (bool): Whether the operation succeeded.
        reason (str, optional): Explanation when the operation fails.
        data (list of dict, optional): Operation-specific data, such as
            stored records or upstream responses.
    """

    success: bool
    reason: Optional[str] = None
    data: Optional[List[Dict]] = None
