from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import ValidationError

from signal_relay.core.urls import is_safe_attachment_url
from signal_relay.schemas.ingest import MessageEvent

MAX_ATTACHMENT_NAME_LENGTH = 180

MergeAction = Literal["inserted", "patched", "ignored"]


class SignalValidationError(ValueError):
    """Raised when a message event cannot be turned into signal fields."""


@dataclass(slots=True)
class SignalFields:
    tenant_key: str
    connector_id: str
    source_message_id: str
    source_channel_id: str
    source_guild_id: str
    content: str
    attachments: list[dict[str, Any]]
    created_at: datetime
    edited_at: datetime | None
    deleted_at: datetime | None
    explicit_edited_at: datetime | None
    explicit_deleted_at: datetime | None

    def to_row(self) -> dict[str, Any]:
        return {
            "tenant_key": self.tenant_key,
            "connector_id": self.connector_id,
            "source_message_id": self.source_message_id,
            "source_channel_id": self.source_channel_id,
            "source_guild_id": self.source_guild_id,
            "content": self.content,
            "attachments": list(self.attachments),
            "created_at": self.created_at,
            "edited_at": self.edited_at,
            "deleted_at": self.deleted_at,
        }


@dataclass(slots=True)
class SignalSnapshot:
    content: str
    attachments: list[dict[str, Any]]
    created_at: datetime
    edited_at: datetime | None
    deleted_at: datetime | None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> SignalSnapshot:
        return cls(
            content=row.get("content") or "",
            attachments=list(row.get("attachments") or []),
            created_at=row["created_at"],
            edited_at=row.get("edited_at"),
            deleted_at=row.get("deleted_at"),
        )


@dataclass(slots=True)
class MergeOutcome:
    action: MergeAction
    snapshot: SignalSnapshot
    changes: dict[str, Any] = field(default_factory=dict)
    preserved_attachments: bool = False


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as exc:
            raise SignalValidationError(f"invalid_iso_timestamp: {value!r}") from exc
    else:
        raise SignalValidationError(f"invalid_iso_timestamp: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_optional_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    try:
        return parse_timestamp(value)
    except SignalValidationError:
        return None


def sanitize_attachments(raw_attachments: list[Any] | None) -> list[dict[str, Any]]:
    """Keep well-formed http(s) attachment refs, normalized to the stored shape."""
    sanitized: list[dict[str, Any]] = []
    for raw in raw_attachments or []:
        if not isinstance(raw, dict):
            continue
        url = raw.get("url")
        if not is_safe_attachment_url(url):
            continue

        ref: dict[str, Any] = {}
        attachment_id = _coerce_text(raw.get("attachment_id"))
        if attachment_id:
            ref["attachment_id"] = attachment_id
        ref["url"] = url.strip()
        name = _coerce_text(raw.get("name"))
        if name:
            ref["name"] = name[:MAX_ATTACHMENT_NAME_LENGTH]
        content_type = _coerce_text(raw.get("content_type"))
        if content_type:
            ref["content_type"] = content_type.lower()
        size = _coerce_size(raw.get("size"))
        if size is not None:
            ref["size"] = size
        sanitized.append(ref)
    return sanitized


def message_event_to_signal_fields(
    raw_event: dict[str, Any] | MessageEvent,
    *,
    tenant_key: str,
    connector_id: str,
    received_at: datetime,
) -> tuple[MessageEvent, SignalFields]:
    try:
        event = raw_event if isinstance(raw_event, MessageEvent) else MessageEvent.model_validate(raw_event)
    except ValidationError as exc:
        raise SignalValidationError(f"invalid_event: {exc.errors()[0].get('msg', 'validation failed')}") from exc

    created_at = parse_timestamp(event.created_at)
    explicit_edited_at = parse_optional_timestamp(event.edited_at)
    explicit_deleted_at = parse_optional_timestamp(event.deleted_at)

    edited_at = explicit_edited_at
    if edited_at is None and event.event_type == "update":
        edited_at = received_at

    deleted_at = explicit_deleted_at
    # Insert-path fallback only; a tombstone patch on an existing row ignores edited_at.
    if deleted_at is None and event.event_type == "delete":
        deleted_at = explicit_edited_at or received_at

    fields = SignalFields(
        tenant_key=tenant_key,
        connector_id=connector_id,
        source_message_id=event.source_message_id,
        source_channel_id=event.source_channel_id,
        source_guild_id=event.source_guild_id,
        content=event.content or "",
        attachments=sanitize_attachments(event.attachments),
        created_at=created_at,
        edited_at=edited_at,
        deleted_at=deleted_at,
        explicit_edited_at=explicit_edited_at,
        explicit_deleted_at=explicit_deleted_at,
    )
    return event, fields


def merge_signal(
    existing: dict[str, Any] | None,
    fields: SignalFields,
    *,
    event_type: str,
    received_at: datetime,
) -> MergeOutcome:
    """Resolve how one event lands on the canonical row for its source message.

    A missing row is inserted verbatim. A tombstoned row discards non-delete events
    that are not newer than the tombstone. Anything else is a patch in which content
    follows the event, attachments are only replaced by a non-empty list, and
    ``edited_at`` / ``deleted_at`` never move backward.
    """
    if existing is None:
        row = fields.to_row()
        return MergeOutcome(action="inserted", snapshot=SignalSnapshot.from_row(row), changes=row)

    existing_deleted_at: datetime | None = existing.get("deleted_at")
    if existing_deleted_at is not None and event_type != "delete":
        effective_at = fields.explicit_edited_at or fields.created_at
        if effective_at <= existing_deleted_at:
            return MergeOutcome(action="ignored", snapshot=SignalSnapshot.from_row(existing))

    changes: dict[str, Any] = {
        "source_channel_id": fields.source_channel_id,
        "source_guild_id": fields.source_guild_id,
        "created_at": fields.created_at,
    }
    existing_attachments = list(existing.get("attachments") or [])
    preserved_attachments = False

    if event_type == "delete":
        # Patch path: explicit deleted_at or processing time, never edited_at.
        changes["deleted_at"] = _latest(existing_deleted_at, fields.explicit_deleted_at or received_at)
        if fields.content:
            changes["content"] = fields.content
        if fields.attachments:
            changes["attachments"] = list(fields.attachments)
    else:
        changes["content"] = fields.content
        if fields.attachments:
            changes["attachments"] = list(fields.attachments)
        elif existing_attachments:
            preserved_attachments = True
        else:
            changes["attachments"] = []

        if fields.edited_at is not None:
            changes["edited_at"] = _latest(existing.get("edited_at"), fields.edited_at)
        if fields.explicit_deleted_at is not None:
            changes["deleted_at"] = _latest(existing_deleted_at, fields.explicit_deleted_at)

    merged = {**existing, **changes}
    return MergeOutcome(
        action="patched",
        snapshot=SignalSnapshot.from_row(merged),
        changes=changes,
        preserved_attachments=preserved_attachments,
    )


def _latest(current: datetime | None, candidate: datetime) -> datetime:
    if current is None:
        return candidate
    return max(current, candidate)


def _coerce_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def _coerce_size(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return None
    if not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if value < 0:
        return None
    return int(math.floor(value))
