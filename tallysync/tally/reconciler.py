"""
Merges a collection received from the paired device into the local store.

Two modes, chosen per integration point:
  - counts-only: copy counter values for categories and counters both sides
    already know. Metadata stays locally owned, unknown categories are not
    created and nothing is deleted. The phone uses this for the watch's
    updates, since only counts are ever changed on the watch.
  - full replace: the local collection becomes the incoming one. The watch
    uses this for the phone's updates, the phone is its source of truth.

Conflicts are last-writer-wins per counter: whatever value the most recent
message carries is taken. Applying the same snapshot twice is a no-op the
second time, so duplicated or reordered deliveries are harmless.
"""

import time
from dataclasses import dataclass, field
from typing import List

import structlog

from ..models import ImportMode, MutationOrigin, SyncMode

log = structlog.get_logger()


@dataclass
class MergeResult:
    mode: str
    changed: bool
    updated_counters: int = 0
    skipped_categories: List[str] = field(default_factory=list)
    fingerprint_before: str = ""
    fingerprint_after: str = ""
    elapsed_ms: float = 0.0


class Reconciler:
    def __init__(self, store):
        self.store = store

    def apply(self, remote, mode=SyncMode.COUNTS_ONLY) -> MergeResult:
        mode = SyncMode(mode)
        if mode is SyncMode.FULL_REPLACE:
            return self.replace_all(remote)
        return self.merge_counts(remote)

    def merge_counts(self, remote) -> MergeResult:
        started = time.time()
        (updated, skipped), old_root, new_root = self.store.measured(
            lambda: self.store.apply_counts(remote, origin=MutationOrigin.REMOTE)
        )

        result = MergeResult(
            mode=SyncMode.COUNTS_ONLY.value,
            changed=old_root != new_root,
            updated_counters=updated,
            skipped_categories=skipped,
            fingerprint_before=old_root,
            fingerprint_after=new_root,
            elapsed_ms=round((time.time() - started) * 1000, 3),
        )
        if result.changed:
            log.info(
                "counts_merged",
                updated=updated,
                skipped=len(skipped),
                old_root=old_root[:12],
                new_root=new_root[:12],
            )
        elif skipped:
            log.debug("counts_merge_skipped_unknown", categories=skipped)
        return result

    def replace_all(self, remote) -> MergeResult:
        started = time.time()
        _, old_root, new_root = self.store.measured(
            lambda: self.store.replace_all(remote, origin=MutationOrigin.REMOTE)
        )

        result = MergeResult(
            mode=SyncMode.FULL_REPLACE.value,
            changed=old_root != new_root,
            fingerprint_before=old_root,
            fingerprint_after=new_root,
            elapsed_ms=round((time.time() - started) * 1000, 3),
        )
        if result.changed:
            log.info(
                "collection_replaced",
                categories=len(remote),
                old_root=old_root[:12],
                new_root=new_root[:12],
            )
        return result

    def import_category(self, category, mode=ImportMode.OVERWRITE) -> MergeResult:
        """Explicit user import (share code or device transfer).

        Runs as a LOCAL change on purpose: the imported data should reach
        the paired watch like any other edit made on this device.
        """
        mode = ImportMode(mode)
        started = time.time()
        _, old_root, new_root = self.store.measured(
            lambda: self.store.import_category(category, mode=mode, origin=MutationOrigin.LOCAL)
        )

        log.info("category_imported", category=category.id, mode=mode.value)
        return MergeResult(
            mode=mode.value,
            changed=old_root != new_root,
            fingerprint_before=old_root,
            fingerprint_after=new_root,
            elapsed_ms=round((time.time() - started) * 1000, 3),
        )
