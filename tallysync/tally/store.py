"""
Authoritative tally collection for one device.

The store owns the ordered list of categories, persists it through a
key/value slot after every successful mutation and tells its subscribers
about the change. Each mutation carries a MutationOrigin; the propagator
only forwards LOCAL changes, which is what keeps a merge received from the
paired device from being echoed straight back to it.

Mutations are copy-on-write under a single lock: the change is applied to
a deep copy and the copy only becomes visible once it fully succeeded.
"""

import hashlib
import json
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

import structlog

from ..models import (
    Category,
    Counter,
    ImportMode,
    MutationOrigin,
    clamp_delta,
    duplicate_ids,
    find_category,
    normalize_count,
    utc_now,
)
from .codec import DeserializationError, decode_collection, encode_collection

log = structlog.get_logger()

_METADATA_FIELDS = ("name", "color_tag", "icon_tag", "allow_negative", "allow_decimals")


@dataclass
class StoreChange:
    """Notification handed to subscribers after a successful mutation."""

    action: str
    origin: MutationOrigin
    categories: List[Category]
    version: int
    at: datetime = field(default_factory=utc_now)


class LocalStore:
    def __init__(self, persistence, device_id="device", max_count=None):
        self.persistence = persistence
        self.device_id = device_id
        self.max_count = max_count
        self.version = 0
        self.updated_at = utc_now()
        self._categories = []
        self._listeners = []
        self._lock = threading.RLock()

    # ── subscriptions ───────────────────────────────────────────────

    def subscribe(self, listener):
        """Register ``listener(change)``; returns a callable that unsubscribes."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, change):
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as e:
                log.error("store_listener_failed", action=change.action, error=str(e))

    # ── persistence ─────────────────────────────────────────────────

    def load(self):
        """Restore the collection from the slot. Never raises."""
        try:
            payload = self.persistence.load()
        except Exception as e:
            log.warning("store_load_failed", device=self.device_id, error=str(e))
            payload = None

        categories = []
        if payload:
            try:
                categories = decode_collection(payload)
            except DeserializationError as e:
                log.warning("store_data_corrupted", device=self.device_id, error=str(e))

        with self._lock:
            self._categories = categories
        log.info("store_loaded", device=self.device_id, categories=len(categories))
        return self.categories

    def save(self, categories=None):
        """Persist the collection. Failures are logged, memory is kept as is."""
        with self._lock:
            if categories is None:
                categories = self._categories
            try:
                ok = self.persistence.save(encode_collection(categories))
            except Exception as e:
                log.warning("store_save_failed", device=self.device_id, error=str(e))
                return False
        if not ok:
            log.warning("store_save_failed", device=self.device_id, error="slot refused write")
        return bool(ok)

    # ── reads ───────────────────────────────────────────────────────

    @property
    def categories(self):
        with self._lock:
            return [c.model_copy(deep=True) for c in self._categories]

    def get_category(self, category_id) -> Optional[Category]:
        with self._lock:
            category = find_category(self._categories, category_id)
            return category.model_copy(deep=True) if category else None

    def fingerprint(self):
        """Hash of the canonical collection, for quick comparison between devices."""
        with self._lock:
            canonical = json.dumps(
                [c.to_wire() for c in self._categories], sort_keys=True
            )
        return hashlib.sha256(canonical.encode()).hexdigest()

    # ── mutation plumbing ───────────────────────────────────────────

    def _mutate(self, action, origin, apply):
        """Run ``apply(working_copy)`` and commit when it returns non-None."""
        with self._lock:
            working = [c.model_copy(deep=True) for c in self._categories]
            result = apply(working)
            if result is None:
                log.debug("store_target_missing", action=action, device=self.device_id)
                return None

            self._categories = working
            self.version += 1
            self.updated_at = utc_now()
            self.save()

            change = StoreChange(
                action=action,
                origin=origin,
                categories=[c.model_copy(deep=True) for c in working],
                version=self.version,
            )
            # still under the lock so listeners see changes in commit order
            self._notify(change)
            return result

    def measured(self, operation):
        """Run ``operation()`` between two fingerprints, all under the lock.

        Returns ``(result, fingerprint_before, fingerprint_after)``; a local
        mutation from another thread cannot land between the three.
        """
        with self._lock:
            before = self.fingerprint()
            result = operation()
            return result, before, self.fingerprint()

    def _beyond_limit(self, count):
        return self.max_count is not None and abs(count) > self.max_count

    def _bounded(self, value, category):
        if self.max_count is not None:
            value = max(min(value, self.max_count), -self.max_count)
        return normalize_count(value, category.allow_negative, category.allow_decimals)

    def _bounded_category(self, category):
        """Copy of ``category`` with each count within its own flags and the limit."""
        category = category.model_copy(deep=True)
        for counter in category.counters:
            counter.count = self._bounded(counter.count, category)
        return category

    def _counter_target(self, working, category_id, counter_id):
        category = find_category(working, category_id)
        if category is None:
            return None, None
        return category, category.find_counter(counter_id)

    # ── category operations ─────────────────────────────────────────

    def add_category(
        self,
        name,
        color_tag,
        icon_tag,
        allow_negative=False,
        allow_decimals=False,
        origin=MutationOrigin.LOCAL,
    ) -> Category:
        now = utc_now()
        category = Category(
            name=name,
            color_tag=color_tag,
            icon_tag=icon_tag,
            counters=[],
            allow_negative=allow_negative,
            allow_decimals=allow_decimals,
            created_at=now,
            updated_at=now,
        )

        def apply(working):
            working.append(category)
            return category.model_copy(deep=True)

        return self._mutate("add_category", origin, apply)

    def update_category_metadata(self, category_id, origin=MutationOrigin.LOCAL, **fields):
        """Change name/color/icon/flags. Unknown field names raise TypeError."""
        unknown = set(fields) - set(_METADATA_FIELDS)
        if unknown:
            raise TypeError(f"not category metadata: {sorted(unknown)}")

        def apply(working):
            category = find_category(working, category_id)
            if category is None:
                return None
            for key, value in fields.items():
                if value is not None:
                    setattr(category, key, value)
            # tighter flags may invalidate existing values
            for counter in category.counters:
                counter.count = normalize_count(
                    counter.count, category.allow_negative, category.allow_decimals
                )
            category.touch()
            return category.model_copy(deep=True)

        return self._mutate("update_category", origin, apply)

    def delete_category(self, category_id, origin=MutationOrigin.LOCAL):
        return self.delete_categories({category_id}, origin=origin)

    def delete_categories(self, ids, origin=MutationOrigin.LOCAL):
        ids = set(ids)

        def apply(working):
            before = len(working)
            working[:] = [c for c in working if c.id not in ids]
            return (before - len(working)) or None

        return self._mutate("delete_categories", origin, apply) is not None

    # ── counter operations ──────────────────────────────────────────

    def add_counter(self, category_id, name, initial_count=0.0, origin=MutationOrigin.LOCAL):
        def apply(working):
            category = find_category(working, category_id)
            if category is None:
                return None
            counter = Counter(name=name, count=self._bounded(initial_count, category))
            category.counters.append(counter)
            category.touch()
            return counter.model_copy()

        return self._mutate("add_counter", origin, apply)

    def delete_counter(self, category_id, counter_id, origin=MutationOrigin.LOCAL):
        def apply(working):
            category, counter = self._counter_target(working, category_id, counter_id)
            if counter is None:
                return None
            category.counters.remove(counter)
            category.touch()
            return True

        return self._mutate("delete_counter", origin, apply) is not None

    def rename_counter(self, category_id, counter_id, new_name, origin=MutationOrigin.LOCAL):
        return self._edit_counter("rename_counter", category_id, counter_id, new_name, None, origin)

    def edit_counter(
        self, category_id, counter_id, name=None, count=None, origin=MutationOrigin.LOCAL
    ):
        """Rename and set a counter in one mutation: both apply or neither does."""
        return self._edit_counter("edit_counter", category_id, counter_id, name, count, origin)

    def _edit_counter(self, action, category_id, counter_id, name, count, origin):
        def apply(working):
            category, counter = self._counter_target(working, category_id, counter_id)
            if counter is None:
                return None
            if count is not None:
                value = normalize_count(count, category.allow_negative, category.allow_decimals)
                if self._beyond_limit(value):
                    log.info("count_limit_reached", category=category_id, counter=counter_id)
                    return None
                counter.count = value
            if name is not None:
                counter.name = name
            category.touch()
            return counter.model_copy()

        return self._mutate(action, origin, apply)

    def update_count(self, category_id, counter_id, delta, origin=MutationOrigin.LOCAL):
        """Add ``delta`` to a counter; returns the new count or None."""

        def apply(working):
            category, counter = self._counter_target(working, category_id, counter_id)
            if counter is None:
                return None
            count = clamp_delta(
                counter.count, delta, category.allow_negative, category.allow_decimals
            )
            if self._beyond_limit(count):
                log.info("count_limit_reached", category=category_id, counter=counter_id)
                return None
            counter.count = count
            category.touch()
            return count

        return self._mutate("update_count", origin, apply)

    def set_count(self, category_id, counter_id, value, origin=MutationOrigin.LOCAL):
        """Set a counter to an explicit value; returns the stored count or None."""
        counter = self._edit_counter("set_count", category_id, counter_id, None, value, origin)
        return counter.count if counter is not None else None

    def reset_count(self, category_id, counter_id, origin=MutationOrigin.LOCAL):
        def apply(working):
            category, counter = self._counter_target(working, category_id, counter_id)
            if counter is None:
                return None
            counter.count = 0.0
            category.touch()
            return True

        return self._mutate("reset_count", origin, apply) is not None

    def reset_category_counters(self, category_id, origin=MutationOrigin.LOCAL):
        def apply(working):
            category = find_category(working, category_id)
            if category is None:
                return None
            for counter in category.counters:
                counter.count = 0.0
            category.touch()
            return True

        return self._mutate("reset_category", origin, apply) is not None

    def reset_all(self, origin=MutationOrigin.LOCAL):
        def apply(working):
            working.clear()
            return True

        return self._mutate("reset_all", origin, apply) is not None

    # ── bulk operations used by reconciliation and import ───────────

    def replace_all(self, categories, origin=MutationOrigin.REMOTE):
        """Make ``categories`` the collection. Repeated ids refuse the whole set."""
        repeated = duplicate_ids(categories)
        if repeated:
            log.warning("replace_rejected", device=self.device_id, duplicate_ids=repeated)
            return None
        incoming = [self._bounded_category(c) for c in categories]

        def apply(working):
            working[:] = incoming
            return len(incoming)

        return self._mutate("replace_all", origin, apply)

    def apply_counts(self, categories, origin=MutationOrigin.REMOTE):
        """Copy counter values for ids both sides know; touch nothing else.

        Returns ``(updated_counters, skipped_category_ids)``. When no value
        differs nothing is committed, persisted or announced.
        """
        outcome = {"updated": 0, "skipped": []}

        def apply(working):
            for remote in categories:
                local = find_category(working, remote.id)
                if local is None:
                    outcome["skipped"].append(remote.id)
                    continue
                changed = False
                for remote_counter in remote.counters:
                    local_counter = local.find_counter(remote_counter.id)
                    if local_counter is None:
                        continue
                    value = normalize_count(
                        remote_counter.count, local.allow_negative, local.allow_decimals
                    )
                    if local_counter.count != value:
                        local_counter.count = value
                        outcome["updated"] += 1
                        changed = True
                if changed:
                    local.touch()
            return outcome["updated"] or None

        self._mutate("merge_counts", origin, apply)
        return outcome["updated"], outcome["skipped"]

    def import_category(self, category, mode=ImportMode.OVERWRITE, origin=MutationOrigin.LOCAL):
        """Bring in a category received from another device or a share code."""
        repeated = duplicate_ids(category.counters)
        if repeated:
            log.warning("import_rejected", category=category.id, duplicate_ids=repeated)
            return None
        incoming = self._bounded_category(category)

        def apply(working):
            local = find_category(working, category.id)
            if local is None:
                working.append(incoming)
                return incoming.model_copy(deep=True)

            if mode is ImportMode.OVERWRITE:
                working[working.index(local)] = incoming
                return incoming.model_copy(deep=True)

            # summed values follow the local flags, not the sender's
            for remote_counter in category.counters:
                local_counter = local.find_counter(remote_counter.id)
                if local_counter is None:
                    local.counters.append(
                        Counter(
                            id=remote_counter.id,
                            name=remote_counter.name,
                            count=normalize_count(
                                remote_counter.count,
                                local.allow_negative,
                                local.allow_decimals,
                            ),
                        )
                    )
                else:
                    local_counter.count = clamp_delta(
                        local_counter.count,
                        remote_counter.count,
                        local.allow_negative,
                        local.allow_decimals,
                        max_abs=self.max_count,
                    )
            local.touch()
            return local.model_copy(deep=True)

        return self._mutate(f"import_{mode.value}", origin, apply)
