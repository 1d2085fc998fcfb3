import asyncio
import threading
import time
from collections import deque

import aiohttp
import structlog

from ..config import Config
from .transport import Transport

log = structlog.get_logger()


class HttpTransport(Transport):
    """
    Store-and-forward channel to the paired device over HTTP.

    ``send`` only queues the payload and wakes the flush loop, so it is safe
    to call from any thread and never blocks. The loop POSTs queued payloads
    to ``<peer_url>/sync`` in order; a payload that still fails after the
    retries stays at the head of the queue for the next cycle. Incoming
    payloads arrive through the device's own ``POST /sync`` endpoint, which
    calls ``deliver``.
    """

    def __init__(self, config: Config):
        super().__init__()
        self.config = config
        self.peer_url = config.peer_url
        self.pending = deque()
        self.reachable = False
        self.running = False
        self._loop = None
        self._wakeup = None
        self._lock = threading.Lock()
        self.stats = {
            "queued": 0,
            "sent": 0,
            "sent_bytes": 0,
            "dropped": 0,
            "failures": 0,
            "retries": 0,
            "flush_cycles": 0,
            "last_error": None,
            "last_success_at": None,
        }

    def is_reachable(self):
        return self.reachable

    def send(self, payload):
        with self._lock:
            if len(self.pending) >= self.config.sync_max_pending:
                # each sync carries the whole collection, the oldest is the least useful
                self.pending.popleft()
                self.stats["dropped"] += 1
            self.pending.append(bytes(payload))
            self.stats["queued"] += 1
        self._wake()

    def pending_count(self):
        with self._lock:
            return len(self.pending)

    def _wake(self):
        if self._loop is None or self._wakeup is None:
            return
        try:
            self._loop.call_soon_threadsafe(self._wakeup.set)
        except RuntimeError:
            pass  # loop already closed

    async def _post_with_retry(self, session, payload):
        url = f"{self.peer_url}/sync"
        last_error = None
        for attempt in range(1, self.config.sync_http_retries + 1):
            try:
                async with session.post(
                    url, data=payload, headers={"Content-Type": "application/json"}
                ) as resp:
                    if resp.status >= 400:
                        raise RuntimeError(f"peer answered HTTP {resp.status}")
                self.stats["sent"] += 1
                self.stats["sent_bytes"] += len(payload)
                self.stats["last_success_at"] = time.time()
                self.reachable = True
                return True
            except Exception as error:
                self.stats["failures"] += 1
                last_error = error
                if attempt < self.config.sync_http_retries:
                    self.stats["retries"] += 1
                    await asyncio.sleep((self.config.sync_http_retry_backoff_ms / 1000.0) * attempt)

        self.reachable = False
        self.stats["last_error"] = str(last_error)
        log.warning("peer_unreachable", url=url, error=str(last_error), pending=self.pending_count())
        return False

    async def flush_once(self):
        """Deliver as much of the queue as the peer accepts; returns the count sent."""
        if not self.peer_url or not self.pending_count():
            return 0

        self.stats["flush_cycles"] += 1
        delivered = 0
        async with aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=5)
        ) as session:
            while True:
                with self._lock:
                    payload = self.pending[0] if self.pending else None
                if payload is None:
                    break
                if not await self._post_with_retry(session, payload):
                    break
                with self._lock:
                    if self.pending and self.pending[0] is payload:
                        self.pending.popleft()
                delivered += 1

        if delivered:
            log.debug("transport_flushed", delivered=delivered, pending=self.pending_count())
        return delivered

    async def start(self):
        self.running = True
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        log.info("transport_started", peer=self.peer_url or None)

        while self.running:
            try:
                await asyncio.wait_for(
                    self._wakeup.wait(), timeout=self.config.sync_flush_interval
                )
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()
            if not self.running:
                break
            try:
                await self.flush_once()
            except Exception as e:
                log.error("flush_error", error=str(e))

    async def stop(self):
        self.running = False
        self._wake()

    def get_stats(self):
        stats = dict(self.stats)
        stats["pending"] = self.pending_count()
        stats["reachable"] = self.reachable
        return stats
