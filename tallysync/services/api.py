import structlog
from datetime import datetime

from fastapi import FastAPI, HTTPException, Request

from ..config import Config
from ..models import (
    CategoryCreate,
    CategoryIds,
    CategoryUpdate,
    CountDelta,
    CounterCreate,
    CounterUpdate,
    DeviceStatus,
    ImportRequest,
)
from ..tally.codec import encode_share_basic, encode_share_counts

log = structlog.get_logger()


class DeviceApi:
    """HTTP API over one device's tally store, plus the inbound sync endpoint."""

    def __init__(self, config: Config, store, reconciler, sync, transport):
        self.config = config
        self.store = store
        self.reconciler = reconciler
        self.sync = sync
        self.transport = transport
        self.start_time = datetime.utcnow()
        self.app = self._build_app()

    def _category_or_404(self, category_id):
        category = self.store.get_category(category_id)
        if category is None:
            raise HTTPException(status_code=404, detail=f"category {category_id} not found")
        return category

    def _build_app(self):
        app = FastAPI(title=f"Tally Device {self.config.device_id}")

        @app.get("/")
        async def root():
            return {"device_id": self.config.device_id, "service": "tallysync"}

        @app.get("/health")
        async def health():
            return {"status": "ok"}

        @app.get("/status")
        async def get_status():
            categories = self.store.categories
            uptime = (datetime.utcnow() - self.start_time).total_seconds()
            return DeviceStatus(
                device_id=self.config.device_id,
                role=self.config.role,
                sync_mode=self.sync.mode.value,
                version=self.store.version,
                fingerprint=self.store.fingerprint(),
                category_count=len(categories),
                counter_count=sum(len(c.counters) for c in categories),
                peer_reachable=self.transport.is_reachable(),
                uptime_seconds=uptime,
            ).model_dump()

        # ── categories ──────────────────────────────────────────────

        @app.get("/categories")
        async def list_categories():
            return [c.to_wire() for c in self.store.categories]

        @app.post("/categories")
        async def add_category(body: CategoryCreate):
            category = self.store.add_category(
                body.name,
                body.color_tag,
                body.icon_tag,
                allow_negative=body.allow_negative,
                allow_decimals=body.allow_decimals,
            )
            log.info("category_added", category=category.id, name=category.name)
            return category.to_wire()

        @app.get("/categories/{category_id}")
        async def get_category(category_id: str):
            return self._category_or_404(category_id).to_wire()

        @app.patch("/categories/{category_id}")
        async def update_category(category_id: str, body: CategoryUpdate):
            updated = self.store.update_category_metadata(
                category_id, **body.model_dump(exclude_none=True)
            )
            if updated is None:
                raise HTTPException(status_code=404, detail=f"category {category_id} not found")
            return updated.to_wire()

        @app.delete("/categories/{category_id}")
        async def delete_category(category_id: str):
            if not self.store.delete_category(category_id):
                raise HTTPException(status_code=404, detail=f"category {category_id} not found")
            return {"status": "deleted", "category_id": category_id}

        @app.post("/categories/delete")
        async def delete_categories(body: CategoryIds):
            removed = self.store.delete_categories(body.ids)
            return {"status": "deleted" if removed else "unchanged", "remaining": len(self.store.categories)}

        @app.post("/categories/{category_id}/reset")
        async def reset_category(category_id: str):
            if not self.store.reset_category_counters(category_id):
                raise HTTPException(status_code=404, detail=f"category {category_id} not found")
            return self._category_or_404(category_id).to_wire()

        @app.get("/categories/{category_id}/share")
        async def share_category(category_id: str):
            """Both share payloads, in the order they are meant to be shown."""
            category = self._category_or_404(category_id)
            return {
                "steps": [
                    encode_share_basic(category).decode(),
                    encode_share_counts(category).decode(),
                ]
            }

        # ── counters ────────────────────────────────────────────────

        @app.post("/categories/{category_id}/counters")
        async def add_counter(category_id: str, body: CounterCreate):
            counter = self.store.add_counter(category_id, body.name, body.initial_count)
            if counter is None:
                raise HTTPException(status_code=404, detail=f"category {category_id} not found")
            return counter.model_dump()

        @app.patch("/categories/{category_id}/counters/{counter_id}")
        async def update_counter(category_id: str, counter_id: str, body: CounterUpdate):
            counter = self._category_or_404(category_id).find_counter(counter_id)
            if counter is None:
                raise HTTPException(status_code=404, detail=f"counter {counter_id} not found")
            if body.name is None and body.count is None:
                return counter.model_dump()
            counter = self.store.edit_counter(
                category_id, counter_id, name=body.name, count=body.count
            )
            if counter is None:
                raise HTTPException(status_code=400, detail="count limit reached")
            return counter.model_dump()

        @app.delete("/categories/{category_id}/counters/{counter_id}")
        async def delete_counter(category_id: str, counter_id: str):
            if not self.store.delete_counter(category_id, counter_id):
                raise HTTPException(status_code=404, detail=f"counter {counter_id} not found")
            return {"status": "deleted", "counter_id": counter_id}

        @app.post("/categories/{category_id}/counters/{counter_id}/delta")
        async def change_count(category_id: str, counter_id: str, body: CountDelta):
            category = self._category_or_404(category_id)
            if category.find_counter(counter_id) is None:
                raise HTTPException(status_code=404, detail=f"counter {counter_id} not found")
            count = self.store.update_count(category_id, counter_id, body.delta)
            if count is None:
                raise HTTPException(status_code=400, detail="count limit reached")
            return {"counter_id": counter_id, "count": count}

        @app.post("/categories/{category_id}/counters/{counter_id}/reset")
        async def reset_counter(category_id: str, counter_id: str):
            if not self.store.reset_count(category_id, counter_id):
                raise HTTPException(status_code=404, detail=f"counter {counter_id} not found")
            return {"counter_id": counter_id, "count": 0.0}

        # ── bulk ────────────────────────────────────────────────────

        @app.post("/reset")
        async def reset_all():
            self.store.reset_all()
            log.info("all_data_reset", device=self.config.device_id)
            return {"status": "reset"}

        @app.post("/import")
        async def import_category(body: ImportRequest):
            result = self.reconciler.import_category(body.category, body.mode)
            return {
                "status": "imported",
                "mode": result.mode,
                "changed": result.changed,
                "category": self._category_or_404(body.category.id).to_wire(),
            }

        # ── sync ────────────────────────────────────────────────────

        @app.post("/sync")
        async def receive_sync(request: Request):
            """Entry point for payloads pushed by the paired device."""
            payload = await request.body()
            self.transport.deliver(payload)
            return {"status": "accepted", "version": self.store.version}

        @app.get("/sync/stats")
        async def sync_stats():
            return self.sync.get_stats()

        @app.get("/sync/log")
        async def sync_log(limit: int = 50):
            if self.sync.sync_log is None:
                return {"entries": []}
            return {"entries": self.sync.sync_log.get_sync_log(limit)}

        return app
