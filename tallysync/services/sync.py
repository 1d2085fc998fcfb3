import asyncio
import time

import structlog

from ..config import Config
from ..models import MessageType, RequestType, SyncMode
from ..tally.codec import (
    DeserializationError,
    decode_message,
    encode_message,
    heartbeat_message,
    request_message,
)

log = structlog.get_logger()


class SyncService:
    """
    Inbound side of device-to-device sync.

    Every payload the transport delivers is decoded and dispatched by type:
      - sync:      merged into the local store (mode depends on device role)
      - request:   answered with our full collection
      - heartbeat: only recorded
      - response / error: logged

    Malformed payloads are dropped, they never reach the store. The
    outbound side is limited to the initial data request and a periodic
    heartbeat (``start`` / ``stop``).
    """

    def __init__(self, config: Config, store, reconciler, propagator, transport, sync_log=None):
        self.config = config
        self.store = store
        self.reconciler = reconciler
        self.propagator = propagator
        self.transport = transport
        self.sync_log = sync_log
        self.mode = SyncMode(config.sync_mode)
        self._requested_initial_data = False
        self.running = False
        self.stats = {
            "received": 0,
            "received_bytes": 0,
            "merged": 0,
            "unchanged": 0,
            "dropped": 0,
            "ignored": 0,
            "requests_answered": 0,
            "heartbeats": 0,
            "heartbeats_sent": 0,
            "peer_errors": 0,
            "merge_time_ms_total": 0.0,
            "last_merge_ms": 0.0,
            "last_message_type": None,
            "last_message_at": None,
            "last_successful_merge_at": None,
            "last_heartbeat_at": None,
        }
        transport.on_receive(self.handle_payload)

    def handle_payload(self, payload):
        self.stats["received"] += 1
        self.stats["received_bytes"] += len(payload or b"")
        try:
            message = decode_message(payload)
        except DeserializationError as e:
            self.stats["dropped"] += 1
            log.warning("sync_payload_dropped", error=str(e))
            return
        self.stats["last_message_type"] = message.type.value
        self.stats["last_message_at"] = time.time()
        self._handle(message)

    def _handle(self, message):
        if message.sender == self.config.device_id:
            self.stats["ignored"] += 1
            return  # ignore our own messages

        if message.type is MessageType.SYNC:
            result = self.reconciler.apply(message.categories, self.mode)
            self.stats["last_merge_ms"] = result.elapsed_ms
            self.stats["merge_time_ms_total"] += result.elapsed_ms
            if result.changed:
                self.stats["merged"] += 1
                self.stats["last_successful_merge_at"] = time.time()
            else:
                self.stats["unchanged"] += 1
            self._record(message, result.changed)

        elif message.type is MessageType.REQUEST:
            self.propagator.push(self.store.categories, reason="requested")
            self.stats["requests_answered"] += 1
            log.info(
                "data_request_answered",
                from_device=message.sender,
                request_type=message.request_type.value if message.request_type else None,
            )
            self._record(message, False)

        elif message.type is MessageType.HEARTBEAT:
            self.stats["heartbeats"] += 1
            self.stats["last_heartbeat_at"] = time.time()

        elif message.type is MessageType.ERROR:
            self.stats["peer_errors"] += 1
            log.warning(
                "peer_reported_error",
                from_device=message.sender,
                code=message.error_code,
                description=message.error_description,
            )

        else:
            log.info(
                "peer_response",
                from_device=message.sender,
                success=message.success,
                message=message.message,
            )

    def _record(self, message, changed):
        if self.sync_log is not None:
            self.sync_log.log_sync(
                message.type.value, message.sender, mode=self.mode.value, changed=changed
            )

    def request_initial_data(self):
        """Ask the peer for its collection, once per service lifetime."""
        if self._requested_initial_data:
            return False
        self._requested_initial_data = True
        self.transport.send(
            encode_message(request_message(self.config.device_id, RequestType.FULL_SYNC))
        )
        log.info("initial_data_requested", device=self.config.device_id)
        return True

    def send_heartbeat(self):
        self.transport.send(encode_message(heartbeat_message(self.config.device_id)))
        self.stats["heartbeats_sent"] += 1

    async def start(self):
        """Send a heartbeat to the peer every ``heartbeat_interval`` seconds."""
        self.running = True
        log.info("heartbeats_started", interval=self.config.heartbeat_interval)
        while self.running:
            try:
                self.send_heartbeat()
            except Exception as e:
                log.warning("heartbeat_failed", error=str(e))
            await asyncio.sleep(self.config.heartbeat_interval)

    async def stop(self):
        self.running = False

    def get_stats(self):
        stats = dict(self.stats)
        # the total covers unchanged snapshots too
        attempts = stats.get("merged", 0) + stats.get("unchanged", 0)
        total_merge_ms = stats.get("merge_time_ms_total", 0.0)
        stats["avg_merge_ms"] = round(total_merge_ms / attempts, 3) if attempts else 0.0
        stats["mode"] = self.mode.value
        stats["peer_reachable"] = self.transport.is_reachable()
        return stats
