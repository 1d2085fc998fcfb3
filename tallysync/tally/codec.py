"""
Interchange codec between paired devices.

Two payload shapes are understood on the receive side:
  - a SyncMessage envelope (JSON object with a ``type`` field)
  - a bare JSON array of categories, which is what the deployed apps put
    on the wire; it is read as a ``sync`` message from an unknown sender

Share payloads split one category into two smaller documents so each fits
into a QR code: basic info first, counting data second.
"""

import json
from typing import Annotated, List

from pydantic import AfterValidator, TypeAdapter, ValidationError

from ..models import (
    Category,
    MessageType,
    RequestType,
    ShareBasicInfo,
    ShareCountingData,
    SyncMessage,
    unique_category_ids,
)

# a collection is keyed by category id
_collection_adapter = TypeAdapter(Annotated[List[Category], AfterValidator(unique_category_ids)])


class DeserializationError(ValueError):
    """Raised when a stored or received payload cannot be decoded."""


def encode_collection(categories) -> bytes:
    return json.dumps([c.to_wire() for c in categories]).encode()


def decode_collection(payload) -> List[Category]:
    try:
        return _collection_adapter.validate_json(payload)
    except (ValidationError, ValueError, TypeError) as error:
        raise DeserializationError(f"invalid collection payload: {error}") from error


def encode_message(message: SyncMessage) -> bytes:
    return message.model_dump_json(by_alias=True, exclude_none=True).encode()


def decode_message(payload) -> SyncMessage:
    try:
        raw = json.loads(payload)
    except (ValueError, TypeError) as error:
        raise DeserializationError(f"payload is not JSON: {error}") from error

    if isinstance(raw, list):
        raw = {"type": MessageType.SYNC.value, "categories": raw}
    elif not isinstance(raw, dict):
        raise DeserializationError("payload must be a JSON object or array")

    try:
        message = SyncMessage.model_validate(raw)
    except ValidationError as error:
        raise DeserializationError(f"invalid sync message: {error}") from error

    if message.type is MessageType.SYNC and message.categories is None:
        raise DeserializationError("sync message without categories")
    return message


def sync_message(sender, categories, reason=None) -> SyncMessage:
    return SyncMessage(
        type=MessageType.SYNC,
        sender=sender,
        reason=reason,
        categories=[c.model_copy(deep=True) for c in categories],
    )


def request_message(sender, request_type=RequestType.FULL_SYNC) -> SyncMessage:
    return SyncMessage(type=MessageType.REQUEST, sender=sender, request_type=request_type)


def heartbeat_message(sender) -> SyncMessage:
    return SyncMessage(type=MessageType.HEARTBEAT, sender=sender)


# ── share payloads ──────────────────────────────────────────────────


def encode_share_basic(category: Category) -> bytes:
    info = ShareBasicInfo(
        id=category.id,
        name=category.name,
        icon=category.icon_tag,
        color_name=category.color_tag,
    )
    return info.model_dump_json(by_alias=True).encode()


def encode_share_counts(category: Category) -> bytes:
    data = ShareCountingData(
        category_id=category.id,
        counters=[c.model_copy() for c in category.counters],
    )
    return data.model_dump_json(by_alias=True).encode()


def assemble_shared_category(basic_payload, counts_payload) -> Category:
    """Rebuild a category from its two share payloads.

    Flags are not part of the share format, so the result uses the
    defaults (no negatives, whole units).
    """
    try:
        info = ShareBasicInfo.model_validate_json(basic_payload)
        data = ShareCountingData.model_validate_json(counts_payload)
    except ValidationError as error:
        raise DeserializationError(f"invalid share payload: {error}") from error

    if info.id != data.category_id:
        raise DeserializationError(
            f"share payloads belong to different categories: {info.id} != {data.category_id}"
        )

    try:
        return Category(
            id=info.id,
            name=info.name,
            color_tag=info.color_name,
            icon_tag=info.icon,
            counters=data.counters,
        )
    except ValidationError as error:
        raise DeserializationError(f"invalid shared category: {error}") from error
