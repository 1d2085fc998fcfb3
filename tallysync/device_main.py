"""
Device entry point. Starts the HTTP API, the sync transport and heartbeats.
"""
import asyncio
import logging
import signal
from dataclasses import dataclass

import structlog
import uvicorn

from tallysync.config import Config, config
from tallysync.models import DeviceRole
from tallysync.services import DeviceApi, HttpTransport, SyncService
from tallysync.storage import SQLiteSlot
from tallysync.tally import ChangePropagator, LocalStore, Reconciler

log = structlog.get_logger()


def configure_logging(level):
    logging.basicConfig(format="%(message)s", level=getattr(logging, level, logging.INFO))

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


@dataclass
class Device:
    slot: SQLiteSlot
    store: LocalStore
    transport: HttpTransport
    propagator: ChangePropagator
    sync: SyncService
    api: DeviceApi

    def close(self):
        self.propagator.detach()
        self.slot.close()


def build_device(cfg: Config) -> Device:
    """Wire one device from its config and restore its saved collection."""
    slot = SQLiteSlot(cfg.db_path, key=cfg.storage_key)
    store = LocalStore(slot, device_id=cfg.device_id, max_count=cfg.max_count)
    store.load()

    transport = HttpTransport(cfg)
    reconciler = Reconciler(store)
    propagator = ChangePropagator(transport, sender=cfg.device_id).attach(store)
    sync = SyncService(cfg, store, reconciler, propagator, transport, sync_log=slot)
    api = DeviceApi(cfg, store, reconciler, sync, transport)

    # the watch has nothing of its own until the phone answers
    if cfg.role == DeviceRole.WATCH.value:
        sync.request_initial_data()

    return Device(slot, store, transport, propagator, sync, api)


async def main():
    device = build_device(config)
    shutdown = asyncio.Event()

    loop = asyncio.get_event_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown.set)

    server = uvicorn.Server(uvicorn.Config(
        device.api.app, host="0.0.0.0", port=config.http_port, log_level="warning"
    ))

    log.info("device_starting", device_id=config.device_id, role=config.role,
             http=config.http_port, peer=config.peer_url or None, mode=config.sync_mode,
             categories=len(device.store.categories))

    async def wait_shutdown():
        await shutdown.wait()
        raise asyncio.CancelledError()

    try:
        await asyncio.gather(
            server.serve(), device.transport.start(), device.sync.start(), wait_shutdown()
        )
    except asyncio.CancelledError:
        pass
    finally:
        await device.sync.stop()
        await device.transport.stop()
        device.close()
        log.info("device_stopped", device_id=config.device_id)


def run():
    configure_logging(config.log_level)
    asyncio.run(main())


if __name__ == "__main__":
    run()
