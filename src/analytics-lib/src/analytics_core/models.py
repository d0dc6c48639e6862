"""
analytics_core.models — Shared data model for the admin core.

Covers the two stateful subsystems:
    rds-control        — instance power state, auto-shutdown timer, snapshots
    import pipeline    — chat-log records staged between generate and execute

Source table (DynamoDB, owned by the chat service):
    PK: logType (e.g. CVCHAT)  SK: sk = "{ISO-8601 timestamp}#{suffix}"

Target table (PostgreSQL + pgvector):
    chat_logs — PK id (= source sk), embedding vector(EMBEDDING_DIMENSIONS)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any

from analytics_core.exceptions import InvalidRecord

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
SNAPSHOTS_TO_KEEP: int = 4
DEFAULT_SHUTDOWN_AFTER_MINUTES: int = 60

EMBEDDING_DIMENSIONS: int = 1024  # Titan Embed Text v2 default output size
MAX_EMBED_INPUT_CHARS: int = 8000  # Titan v2 accepts ~8192 tokens; truncate well inside

STAGING_PREFIX: str = "import-staging/"

# Separator between the timestamp and the uniqueness suffix in record ids.
RECORD_ID_SEPARATOR: str = "#"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class PowerState(StrEnum):
    """Database instance status values the controller reasons about.

    RDS reports many more (modifying, backing-up, ...); those pass through
    status() untouched and are never compared against.
    """

    STOPPED = "stopped"
    STARTING = "starting"
    AVAILABLE = "available"
    STOPPING = "stopping"
    ERROR = "error"


class RdsAction(StrEnum):
    STATUS = "status"
    START = "start"
    STOP = "stop"
    SNAPSHOT = "snapshot"
    SNAPSHOTS = "snapshots"
    RESTORE = "restore"
    TIMER = "timer"
    EXTEND_TIMER = "extend-timer"


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def iso_utc(dt: datetime) -> str:
    """Render a datetime as ISO-8601 UTC with a trailing Z, second precision."""
    return dt.astimezone(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def parse_iso_utc(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def epoch_millis(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


# ---------------------------------------------------------------------------
# rds-control
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TimerState:
    """Auto-shutdown timer sub-state.

    NO_TIMER when shutdown_at is None, ARMED(shutdown_at) otherwise.  The
    scheduler entry is the real trigger; shutdown_at is its projection.
    """

    shutdown_at: datetime | None = None

    @property
    def armed(self) -> bool:
        return self.shutdown_at is not None

    def to_dict(self) -> dict[str, Any]:
        return {"shutdownAt": iso_utc(self.shutdown_at) if self.shutdown_at else None}


@dataclass(frozen=True)
class SnapshotSummary:
    """A manual DB snapshot as listed to callers."""

    snapshot_id: str
    created_at: datetime | None
    status: str
    size_gb: int | None = None

    @classmethod
    def from_rds(cls, raw: dict[str, Any]) -> SnapshotSummary:
        return cls(
            snapshot_id=str(raw["DBSnapshotIdentifier"]),
            created_at=raw.get("SnapshotCreateTime"),
            status=str(raw.get("Status", "")),
            size_gb=raw.get("AllocatedStorage"),
        )

    @property
    def available(self) -> bool:
        return self.status == "available"

    def sort_key(self) -> tuple[float, str]:
        # Ids are "<prefix>-<epochMillis>", so the id breaks creation-time ties.
        created = self.created_at.timestamp() if self.created_at else 0.0
        return (created, self.snapshot_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.snapshot_id,
            "createdAt": iso_utc(self.created_at) if self.created_at else None,
            "sizeGb": self.size_gb,
        }


def newest_first(snapshots: list[SnapshotSummary]) -> list[SnapshotSummary]:
    """Available snapshots only, most recently created first."""
    return sorted(
        (s for s in snapshots if s.available),
        key=SnapshotSummary.sort_key,
        reverse=True,
    )


# ---------------------------------------------------------------------------
# Import pipeline
# ---------------------------------------------------------------------------


def _as_int(value: Any) -> int:
    # DynamoDB resource numbers arrive as Decimal
    if value is None:
        return 0
    return int(Decimal(str(value)))


def _str_or_none(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


@dataclass(frozen=True)
class ChatLogRecord:
    """One chat exchange, normalised and carrying its embedding.

    Staged as camelCase JSON between generate and execute; loaded into
    chat_logs with ON CONFLICT (id) DO NOTHING.
    """

    id: str
    log_type: str
    user_message: str
    embedding: list[float]
    conversation_id: str | None = None
    ip: str | None = None
    user_agent: str | None = None
    country: str | None = None
    message_count: int = 0
    tools_called: list[str] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    duration_ms: int = 0
    rate_limited: bool = False

    @classmethod
    def from_source_item(cls, item: dict[str, Any], embedding: list[float]) -> ChatLogRecord:
        """Build a record from a DynamoDB resource item, applying defaults."""
        tools = item.get("toolsCalled") or []
        return cls(
            id=str(item["sk"]),
            log_type=str(item["logType"]),
            user_message=str(item.get("userMessage") or ""),
            embedding=list(embedding),
            conversation_id=_str_or_none(item.get("conversationId")),
            ip=_str_or_none(item.get("ip")),
            user_agent=_str_or_none(item.get("userAgent")),
            country=_str_or_none(item.get("country")),
            message_count=_as_int(item.get("messageCount")),
            tools_called=sorted(str(t) for t in tools),
            input_tokens=_as_int(item.get("inputTokens")),
            output_tokens=_as_int(item.get("outputTokens")),
            duration_ms=_as_int(item.get("durationMs")),
            rate_limited=bool(item.get("rateLimited", False)),
        )

    @classmethod
    def from_staged(cls, raw: Any) -> ChatLogRecord:
        """Inverse of to_staged().  Missing or malformed fields raise InvalidRecord."""
        if not isinstance(raw, dict):
            raise InvalidRecord("<malformed>", f"expected an object, got {type(raw).__name__}")
        record_id = str(raw.get("id") or "")
        if not record_id:
            raise InvalidRecord("<missing>", "id is required")
        for required in ("logType", "embedding"):
            if raw.get(required) is None:
                raise InvalidRecord(record_id, f"{required} is required")
        try:
            return cls._from_staged_fields(record_id, raw)
        except (ArithmeticError, TypeError, ValueError) as exc:
            raise InvalidRecord(record_id, f"malformed field: {exc}") from exc

    @classmethod
    def _from_staged_fields(cls, record_id: str, raw: dict[str, Any]) -> ChatLogRecord:
        return cls(
            id=record_id,
            log_type=str(raw["logType"]),
            user_message=str(raw.get("userMessage") or ""),
            embedding=list(raw["embedding"]),
            conversation_id=raw.get("conversationId"),
            ip=raw.get("ip"),
            user_agent=raw.get("userAgent"),
            country=raw.get("country"),
            message_count=_as_int(raw.get("messageCount")),
            tools_called=list(raw.get("toolsCalled") or []),
            input_tokens=_as_int(raw.get("inputTokens")),
            output_tokens=_as_int(raw.get("outputTokens")),
            duration_ms=_as_int(raw.get("durationMs")),
            rate_limited=bool(raw.get("rateLimited", False)),
        )

    def to_staged(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "logType": self.log_type,
            "conversationId": self.conversation_id,
            "ip": self.ip,
            "userAgent": self.user_agent,
            "country": self.country,
            "userMessage": self.user_message,
            "messageCount": self.message_count,
            "toolsCalled": self.tools_called,
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "durationMs": self.duration_ms,
            "rateLimited": self.rate_limited,
            "embedding": self.embedding,
        }

    @property
    def recorded_at(self) -> datetime:
        """Timestamp segment of the id, e.g. "2026-02-26T10:15:00.000Z#uuid"."""
        stamp = self.id.split(RECORD_ID_SEPARATOR, 1)[0]
        try:
            return parse_iso_utc(stamp)
        except ValueError as exc:
            raise InvalidRecord(self.id, f"id does not start with a timestamp: {stamp!r}") from exc

    def embedding_literal(self, dimensions: int = EMBEDDING_DIMENSIONS) -> str:
        """pgvector text literal, e.g. "[0.1,0.2,...]"."""
        if len(self.embedding) != dimensions:
            raise InvalidRecord(
                self.id,
                f"embedding has {len(self.embedding)} dimensions, expected {dimensions}",
            )
        try:
            values = [float(v) for v in self.embedding]
        except (TypeError, ValueError) as exc:
            raise InvalidRecord(self.id, "embedding must be numeric") from exc
        return "[" + ",".join(repr(v) for v in values) + "]"
