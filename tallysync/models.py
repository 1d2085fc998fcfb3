import math
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Set

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
    model_validator,
)

WIRE_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def new_id():
    """Fresh identifier in the upper-case UUID form the deployed apps emit."""
    return str(uuid.uuid4()).upper()


def utc_now():
    # whole seconds, so a timestamp survives a trip through the wire format
    return datetime.now(timezone.utc).replace(microsecond=0)


class MutationOrigin(str, Enum):
    """Where a store mutation came from. Remote changes are never propagated back."""

    LOCAL = "local"
    REMOTE = "remote"


class SyncMode(str, Enum):
    COUNTS_ONLY = "counts_only"  # update values of shared counters only
    FULL_REPLACE = "full_replace"  # mirror the incoming collection verbatim


class ImportMode(str, Enum):
    OVERWRITE = "overwrite"  # upsert the whole category by id
    MERGE_SUM = "merge_sum"  # add incoming counts onto matching counters


class DeviceRole(str, Enum):
    PHONE = "phone"
    WATCH = "watch"


class MessageType(str, Enum):
    SYNC = "sync"
    REQUEST = "request"
    RESPONSE = "response"
    HEARTBEAT = "heartbeat"
    ERROR = "error"


class RequestType(str, Enum):
    FULL_SYNC = "fullSync"
    CATEGORY_UPDATE = "categoryUpdate"
    COUNTER_UPDATE = "counterUpdate"


# ── count arithmetic ────────────────────────────────────────────────


def _round_tenths(value):
    # half away from zero, matching the apps' rounding of count * 10
    rounded = math.floor(abs(value) * 10 + 0.5) / 10
    return math.copysign(rounded, value) + 0.0


def clamp_delta(current, delta, allow_negative, allow_decimals, max_abs=None):
    """Apply a delta to a count and enforce the category's value policy.

    Every path that writes a count (increment, decrement, explicit set,
    import) goes through here so the invariants hold everywhere:
      - negative results become 0 unless negatives are allowed
      - decimal categories keep one decimal place, others whole units
      - a result beyond ``max_abs`` is refused and ``current`` is returned
    """
    count = current + delta
    if not allow_negative and count < 0:
        count = 0.0

    if allow_decimals:
        count = _round_tenths(count)
    else:
        count = float(math.trunc(count)) + 0.0

    if max_abs is not None and abs(count) > max_abs:
        return current
    return count


def normalize_count(value, allow_negative, allow_decimals):
    return clamp_delta(value, 0, allow_negative, allow_decimals)


def display_value(counter, allow_decimals):
    if allow_decimals:
        return f"{counter.count:.1f}"
    return f"{counter.count:.0f}"


# ── entities ────────────────────────────────────────────────────────


class Counter(BaseModel):
    """A single named tally inside a category."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=new_id, min_length=1)
    name: str
    count: float = 0.0

    @field_validator("count")
    @classmethod
    def _count_is_finite(cls, value):
        if not math.isfinite(value):
            raise ValueError("count must be a finite number")
        return value


class Category(BaseModel):
    """A named group of counters sharing sign and decimal policy.

    Python attributes are snake_case; the wire names used by the deployed
    apps (colorName, iconName, allowNegative, ...) are the aliases, so
    ``to_wire()`` / ``model_validate()`` speak the interchange format.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=new_id, min_length=1)
    name: str
    color_tag: str = Field(alias="colorName")
    icon_tag: str = Field(alias="iconName")
    counters: List[Counter] = Field(default_factory=list)
    allow_negative: bool = Field(False, alias="allowNegative")
    allow_decimals: bool = Field(False, alias="allowDecimals")
    created_at: datetime = Field(default_factory=utc_now, alias="createdAt")
    updated_at: datetime = Field(default_factory=utc_now, alias="updatedAt")

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _blank_timestamp_is_now(cls, value):
        # older payloads carry "" when the timestamp was never set
        if value is None or value == "":
            return utc_now()
        return value

    @field_validator("created_at", "updated_at")
    @classmethod
    def _utc_seconds(cls, value):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).replace(microsecond=0)

    @model_validator(mode="after")
    def _unique_counter_ids(self):
        repeated = duplicate_ids(self.counters)
        if repeated:
            raise ValueError(f"duplicate counter ids in category {self.id}: {repeated}")
        return self

    @field_serializer("created_at", "updated_at", when_used="json")
    def _wire_timestamp(self, value):
        return value.strftime(WIRE_TIMESTAMP_FORMAT)

    def find_counter(self, counter_id) -> Optional[Counter]:
        for counter in self.counters:
            if counter.id == counter_id:
                return counter
        return None

    def touch(self):
        self.updated_at = utc_now()

    def to_wire(self):
        return self.model_dump(by_alias=True, mode="json")


def find_category(categories, category_id) -> Optional[Category]:
    for category in categories:
        if category.id == category_id:
            return category
    return None


def duplicate_ids(items):
    """Ids that occur more than once, in first-repeat order."""
    seen, repeated = set(), []
    for item in items:
        if item.id in seen and item.id not in repeated:
            repeated.append(item.id)
        seen.add(item.id)
    return repeated


def unique_category_ids(categories):
    repeated = duplicate_ids(categories)
    if repeated:
        raise ValueError(f"duplicate category ids in collection: {repeated}")
    return categories


# ── wire envelope ───────────────────────────────────────────────────


class SyncMessage(BaseModel):
    """Envelope exchanged between paired devices.

    The ``type`` decides which optional fields are meaningful:
      - SYNC:      ``categories`` carries the sender's full collection
      - REQUEST:   ``request_type`` asks the peer for data
      - RESPONSE:  ``success`` / ``message`` acknowledge a request
      - HEARTBEAT: keep-alive, no payload
      - ERROR:     ``error_code`` / ``error_description``
    """

    model_config = ConfigDict(populate_by_name=True)

    type: MessageType
    sender: str = "unknown"
    timestamp: datetime = Field(default_factory=utc_now)
    reason: Optional[str] = None
    categories: Optional[List[Category]] = None
    request_type: Optional[RequestType] = Field(None, alias="requestType")
    success: Optional[bool] = None
    message: Optional[str] = None
    error_code: Optional[int] = Field(None, alias="errorCode")
    error_description: Optional[str] = Field(None, alias="errorDescription")

    @field_validator("categories")
    @classmethod
    def _unique_categories(cls, value):
        if value is not None:
            unique_category_ids(value)
        return value


class ShareBasicInfo(BaseModel):
    """First share payload: who the category is and how it looks."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    icon: str
    color_name: str = Field(alias="colorName")


class ShareCountingData(BaseModel):
    """Second share payload: the counters and their values."""

    model_config = ConfigDict(populate_by_name=True)

    category_id: str = Field(alias="categoryId")
    counters: List[Counter] = Field(default_factory=list)


# ── HTTP request / response bodies ──────────────────────────────────


class CategoryCreate(BaseModel):
    name: str
    color_tag: str = "bg-blue-600"
    icon_tag: str = "star.fill"
    allow_negative: bool = False
    allow_decimals: bool = False


class CategoryUpdate(BaseModel):
    name: Optional[str] = None
    color_tag: Optional[str] = None
    icon_tag: Optional[str] = None
    allow_negative: Optional[bool] = None
    allow_decimals: Optional[bool] = None


class CategoryIds(BaseModel):
    ids: Set[str]


class CounterCreate(BaseModel):
    name: str
    initial_count: float = 0.0


class CounterUpdate(BaseModel):
    name: Optional[str] = None
    count: Optional[float] = None


class CountDelta(BaseModel):
    delta: float = 1.0


class ImportRequest(BaseModel):
    category: Category
    mode: ImportMode = ImportMode.OVERWRITE


class DeviceStatus(BaseModel):
    """Status info returned by /status endpoint."""

    device_id: str
    role: str
    sync_mode: str
    version: int
    fingerprint: str
    category_count: int
    counter_count: int
    peer_reachable: bool
    uptime_seconds: float
