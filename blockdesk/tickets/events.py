"""Ledger events as a tagged union, decoded once at the gateway boundary."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Iterable, Mapping, Union

from .state import TicketStatus

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class EventKind(str, Enum):
    CREATED = "Created"
    STATUS_CHANGED = "StatusChanged"
    ASSIGNED = "Assigned"
    COMMENT_ADDED = "CommentAdded"


class EventDecodeError(ValueError):
    """Raised when a raw ledger event cannot be decoded."""


@dataclass(frozen=True, slots=True)
class TicketCreated:
    event_id: str
    ticket_id: str
    actor: str
    timestamp: datetime
    sequence: int
    title: str
    description_ref: str
    attachment_ref: str | None = None

    kind: ClassVar[EventKind] = EventKind.CREATED


@dataclass(frozen=True, slots=True)
class StatusChanged:
    event_id: str
    ticket_id: str
    actor: str
    timestamp: datetime
    sequence: int
    status: TicketStatus

    kind: ClassVar[EventKind] = EventKind.STATUS_CHANGED


@dataclass(frozen=True, slots=True)
class TicketAssigned:
    event_id: str
    ticket_id: str
    actor: str
    timestamp: datetime
    sequence: int
    assignee: str
    status: TicketStatus = TicketStatus.IN_PROGRESS

    kind: ClassVar[EventKind] = EventKind.ASSIGNED


@dataclass(frozen=True, slots=True)
class CommentAdded:
    event_id: str
    ticket_id: str
    actor: str
    timestamp: datetime
    sequence: int
    comment_id: str
    content_ref: str

    kind: ClassVar[EventKind] = EventKind.COMMENT_ADDED


TicketEvent = Union[TicketCreated, StatusChanged, TicketAssigned, CommentAdded]


def make_event_id(transaction_ref: str, log_index: int) -> str:
    return f"{transaction_ref}:{int(log_index)}"


def normalise_address(value: Any) -> str | None:
    """Lower-case an address and map empty or all-zero addresses to ``None``."""

    if value is None:
        return None
    address = str(value).strip().lower()
    if not address or address == ZERO_ADDRESS:
        return None
    return address


def event_order_key(event: TicketEvent) -> tuple[datetime, int]:
    return (event.timestamp, event.sequence)


def _ensure_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _decode_status(value: Any) -> TicketStatus:
    if isinstance(value, TicketStatus):
        return value
    if isinstance(value, int):
        return TicketStatus.from_index(value)
    text = str(value)
    if text.isdigit():
        return TicketStatus.from_index(int(text))
    return TicketStatus(text)


def decode_event(raw: Mapping[str, Any]) -> TicketEvent:
    """Turn a raw ledger log entry into one of the typed event records."""

    try:
        kind = EventKind(str(raw["kind"]))
        event_id = str(raw.get("event_id") or make_event_id(str(raw["transaction_ref"]), raw.get("log_index", 0)))
        common: dict[str, Any] = {
            "event_id": event_id,
            "ticket_id": str(raw["ticket_id"]),
            "actor": normalise_address(raw["actor"]) or "",
            "timestamp": _ensure_datetime(raw["timestamp"]),
            "sequence": int(raw["sequence"]),
        }
        payload: Mapping[str, Any] = raw.get("payload") or {}

        if kind is EventKind.CREATED:
            attachment = payload.get("attachment_ref") or None
            return TicketCreated(
                **common,
                title=str(payload.get("title", "")),
                description_ref=str(payload.get("description_ref", "")),
                attachment_ref=str(attachment) if attachment else None,
            )
        if kind is EventKind.STATUS_CHANGED:
            return StatusChanged(**common, status=_decode_status(payload["status"]))
        if kind is EventKind.ASSIGNED:
            assignee = normalise_address(payload.get("assignee"))
            if assignee is None:
                raise EventDecodeError(f"Assigned event {event_id} has no assignee")
            status = payload.get("status")
            return TicketAssigned(
                **common,
                assignee=assignee,
                status=_decode_status(status) if status is not None else TicketStatus.IN_PROGRESS,
            )
        return CommentAdded(
            **common,
            comment_id=str(payload.get("comment_id") or event_id),
            content_ref=str(payload["content_ref"]),
        )
    except EventDecodeError:
        raise
    except (KeyError, TypeError, ValueError) as exc:
        raise EventDecodeError(f"Malformed ledger event: {exc}") from exc


def decode_events(raws: Iterable[Mapping[str, Any]]) -> list[TicketEvent]:
    """Decode a batch of raw events, skipping entries that cannot be decoded."""

    events: list[TicketEvent] = []
    for raw in raws:
        try:
            events.append(decode_event(raw))
        except EventDecodeError:
            logger.warning("Skipping undecodable ledger event: %s", dict(raw), exc_info=True)
    return events
