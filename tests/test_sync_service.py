import asyncio

from tallysync.config import Config
from tallysync.models import Category, Counter, MessageType, MutationOrigin, SyncMessage
from tallysync.services.sync import SyncService
from tallysync.services.transport import InMemoryTransport, Transport
from tallysync.storage import MemorySlot
from tallysync.tally import ChangePropagator, LocalStore, Reconciler
from tallysync.tally.codec import (
    decode_message,
    encode_collection,
    encode_message,
    heartbeat_message,
    request_message,
    sync_message,
)


class RecordingTransport(Transport):
    def __init__(self):
        super().__init__()
        self.sent = []

    def send(self, payload):
        self.sent.append(payload)

    def is_reachable(self):
        return True


def _category(count):
    return Category(
        id="c1",
        name="Exercise",
        color_tag="bg-blue-600",
        icon_tag="figure.run",
        counters=[Counter(id="k1", name="Pushups", count=count)],
    )


def _build_sync_service(monkeypatch, device_id="phone", role="phone", transport=None):
    monkeypatch.setenv("DEVICE_ID", device_id)
    monkeypatch.setenv("DEVICE_ROLE", role)
    monkeypatch.delenv("SYNC_MODE", raising=False)
    config = Config()
    slot = MemorySlot()
    store = LocalStore(slot, device_id=config.device_id)
    store.replace_all([_category(5)], origin=MutationOrigin.LOCAL)
    if transport is None:
        transport = RecordingTransport()
    propagator = ChangePropagator(transport, sender=config.device_id).attach(store)
    service = SyncService(
        config, store, Reconciler(store), propagator, transport, sync_log=slot
    )
    return service, store, transport, slot


def test_phone_merges_counts_from_watch(monkeypatch):
    service, store, transport, slot = _build_sync_service(monkeypatch)
    remote = _category(8)
    remote.name = "Renamed on watch"

    transport.deliver(encode_message(sync_message("watch", [remote])))

    category = store.get_category("c1")
    assert category.find_counter("k1").count == 8
    assert category.name == "Exercise"
    assert service.stats["merged"] == 1
    assert transport.sent == []
    assert slot.get_sync_log()[0]["message_type"] == "sync"


def test_watch_mirrors_phone(monkeypatch):
    service, store, transport, _ = _build_sync_service(monkeypatch, "watch", "watch")
    remote = _category(2)
    remote.name = "Renamed on phone"
    extra = Category(id="c2", name="Water", color_tag="bg-cyan-500", icon_tag="drop")

    transport.deliver(encode_message(sync_message("phone", [remote, extra])))

    assert service.mode.value == "full_replace"
    assert [c.id for c in store.categories] == ["c1", "c2"]
    assert store.get_category("c1").name == "Renamed on phone"
    assert transport.sent == []


def test_duplicate_snapshot_counts_as_unchanged(monkeypatch):
    service, _, transport, _ = _build_sync_service(monkeypatch)
    payload = encode_message(sync_message("watch", [_category(8)]))
    transport.deliver(payload)
    transport.deliver(payload)
    assert service.stats["merged"] == 1
    assert service.stats["unchanged"] == 1


def test_bare_array_payload_is_merged(monkeypatch):
    service, store, transport, _ = _build_sync_service(monkeypatch)
    transport.deliver(encode_collection([_category(11)]))
    assert store.get_category("c1").find_counter("k1").count == 11


def test_malformed_payload_is_dropped(monkeypatch):
    service, store, transport, _ = _build_sync_service(monkeypatch)
    before = store.categories

    transport.deliver(b"\x00garbage")
    transport.deliver(b'{"type": "sync", "sender": "watch", "categories": [{"id": 1}]}')

    assert service.stats["dropped"] == 2
    assert store.categories == before


def test_own_messages_are_ignored(monkeypatch):
    service, store, transport, _ = _build_sync_service(monkeypatch)
    transport.deliver(encode_message(sync_message("phone", [_category(99)])))
    assert service.stats["ignored"] == 1
    assert store.get_category("c1").find_counter("k1").count == 5


def test_request_is_answered_with_collection(monkeypatch):
    service, store, transport, _ = _build_sync_service(monkeypatch)
    transport.deliver(encode_message(request_message("watch")))

    assert len(transport.sent) == 1
    reply = decode_message(transport.sent[0])
    assert reply.type is MessageType.SYNC
    assert reply.reason == "requested"
    assert reply.categories == store.categories
    assert service.stats["requests_answered"] == 1


def test_heartbeat_and_error_are_recorded(monkeypatch):
    service, _, transport, _ = _build_sync_service(monkeypatch)
    transport.deliver(encode_message(heartbeat_message("watch")))
    transport.deliver(
        encode_message(
            SyncMessage(type=MessageType.ERROR, sender="watch", error_code=2, error_description="full")
        )
    )
    assert service.stats["heartbeats"] == 1
    assert service.stats["peer_errors"] == 1


def test_initial_data_requested_once(monkeypatch):
    service, _, transport, _ = _build_sync_service(monkeypatch, "watch", "watch")
    assert service.request_initial_data() is True
    assert service.request_initial_data() is False

    assert len(transport.sent) == 1
    message = decode_message(transport.sent[0])
    assert message.type is MessageType.REQUEST
    assert message.sender == "watch"


def test_stats_include_average(monkeypatch):
    service, _, transport, _ = _build_sync_service(monkeypatch)
    transport.deliver(encode_message(sync_message("watch", [_category(8)])))
    stats = service.get_stats()
    assert stats["avg_merge_ms"] >= 0
    assert stats["mode"] == "counts_only"
    assert stats["peer_reachable"] is True


def test_average_merge_time_covers_unchanged_snapshots(monkeypatch):
    service, _, _, _ = _build_sync_service(monkeypatch)
    service.stats.update(merged=1, unchanged=3, merge_time_ms_total=8.0)
    assert service.get_stats()["avg_merge_ms"] == 2.0


def test_heartbeats_are_sent_until_stopped(monkeypatch):
    service, _, transport, _ = _build_sync_service(monkeypatch)
    service.config.heartbeat_interval = 0.01

    async def run_briefly():
        task = asyncio.create_task(service.start())
        await asyncio.sleep(0.05)
        await service.stop()
        await asyncio.wait_for(task, timeout=1)

    asyncio.run(run_briefly())

    assert service.stats["heartbeats_sent"] >= 1
    assert len(transport.sent) == service.stats["heartbeats_sent"]
    assert all(decode_message(p).type is MessageType.HEARTBEAT for p in transport.sent)


def test_heartbeat_reaches_the_peer(monkeypatch):
    phone_link, watch_link = InMemoryTransport.pair("phone", "watch")
    phone, _, _, _ = _build_sync_service(monkeypatch, transport=phone_link)
    watch, _, _, _ = _build_sync_service(monkeypatch, "watch", "watch", transport=watch_link)

    watch.send_heartbeat()

    assert phone.stats["heartbeats"] == 1
    assert phone.stats["last_heartbeat_at"] is not None
    assert watch.stats["heartbeats_sent"] == 1
