"""
Webhook Normalizer - turns provider webhook envelopes into canonical events.

Both functions are pure. ``normalize`` is exhaustive: every item becomes
either an InboundEvent or an Ignored carrying the reason it was skipped.
"""

from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from dmtobuy.models.api import Channel
from dmtobuy.models.domain import Ignored, InboundEvent, WebhookItem

SUPPORTED_OBJECTS = frozenset({"instagram", "page"})
COMMENT_FIELDS = frozenset({"comments", "live_comments"})
MESSAGE_FIELD = "messages"

# Values below this are epoch seconds, above it epoch milliseconds.
_MILLISECONDS_THRESHOLD = 10_000_000_000


def split_envelope(body: Mapping[str, Any]) -> list[WebhookItem]:
    """Split a webhook body into one item per messaging event or change."""
    if body.get("object") not in SUPPORTED_OBJECTS:
        return []

    items: list[WebhookItem] = []
    for entry in body.get("entry") or ():
        if not isinstance(entry, Mapping) or not entry.get("id"):
            continue
        account_id = str(entry["id"])
        entry_time = entry.get("time")
        entry_time = int(entry_time) if isinstance(entry_time, int | float) else None

        # standby carries messages delivered while another app owns the thread
        for key in ("messaging", "standby"):
            for event in entry.get(key) or ():
                if isinstance(event, Mapping):
                    items.append(WebhookItem("messaging", account_id, event, None, entry_time))

        for change in entry.get("changes") or ():
            if isinstance(change, Mapping) and isinstance(change.get("value"), Mapping):
                items.append(
                    WebhookItem(
                        "change", account_id, change["value"], str(change.get("field")), entry_time
                    )
                )
    return items


def _to_datetime(value: Any) -> datetime | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        seconds = value if value < _MILLISECONDS_THRESHOLD else value / 1000
        return datetime.fromtimestamp(seconds, tz=UTC)
    if isinstance(value, str) and value:
        if value.isdigit():
            return _to_datetime(int(value))
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return None


def _child(mapping: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = mapping.get(key)
    return value if isinstance(value, Mapping) else {}


def _normalize_message(item: WebhookItem) -> InboundEvent | Ignored:
    payload = item.payload
    message = _child(payload, "message")
    edit = _child(payload, "message_edit")

    if message.get("is_echo") or payload.get("is_echo"):
        return Ignored("echo")

    sender_id = _child(payload, "sender").get("id")
    if not sender_id:
        return Ignored("missing_field", "sender.id")
    if str(sender_id) == item.business_account_id:
        return Ignored("self_sent")

    message_id = edit.get("mid") or message.get("mid")
    if not message_id:
        return Ignored("missing_field", "message.mid")

    text = edit.get("text") or message.get("text")
    if not isinstance(text, str) or not text.strip():
        return Ignored("no_text")

    timestamp = _to_datetime(payload.get("timestamp")) or _to_datetime(item.entry_time)
    if timestamp is None:
        return Ignored("missing_field", "timestamp")

    return InboundEvent(
        channel=Channel.DM,
        external_id=str(message_id),
        sender_id=str(sender_id),
        business_account_id=item.business_account_id,
        text=text.strip(),
        timestamp=timestamp,
    )


def _normalize_comment(item: WebhookItem) -> InboundEvent | Ignored:
    value = item.payload
    sender = _child(value, "from")

    comment_id = value.get("id")
    if not comment_id:
        return Ignored("missing_field", "value.id")
    sender_id = sender.get("id")
    if not sender_id:
        return Ignored("missing_field", "value.from.id")
    if str(sender_id) == item.business_account_id:
        return Ignored("self_sent")
    media_id = _child(value, "media").get("id")
    if not media_id:
        return Ignored("missing_field", "value.media.id")

    text = value.get("text")
    if not isinstance(text, str) or not text.strip():
        return Ignored("no_text")

    timestamp = _to_datetime(value.get("timestamp")) or _to_datetime(item.entry_time)
    if timestamp is None:
        return Ignored("missing_field", "timestamp")

    username = sender.get("username")
    return InboundEvent(
        channel=Channel.COMMENT,
        external_id=str(comment_id),
        sender_id=str(sender_id),
        business_account_id=item.business_account_id,
        text=text.strip(),
        timestamp=timestamp,
        media_id=str(media_id),
        sender_username=str(username) if username else None,
    )


def normalize(item: WebhookItem) -> InboundEvent | Ignored:
    """Normalize one webhook item."""
    if item.kind == "messaging":
        return _normalize_message(item)
    if item.kind == "change":
        if item.field == MESSAGE_FIELD:
            return _normalize_message(item)
        if item.field in COMMENT_FIELDS:
            return _normalize_comment(item)
        return Ignored("unsupported_field", item.field)
    return Ignored("unsupported_kind", item.kind)
