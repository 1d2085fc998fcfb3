from tallysync.models import MessageType, MutationOrigin
from tallysync.services.transport import Transport
from tallysync.storage import MemorySlot
from tallysync.tally import ChangePropagator, LocalStore
from tallysync.tally.codec import decode_message


class RecordingTransport(Transport):
    def __init__(self, fail=False):
        super().__init__()
        self.fail = fail
        self.sent = []

    def send(self, payload):
        if self.fail:
            raise ConnectionError("radio off")
        self.sent.append(payload)

    def is_reachable(self):
        return not self.fail


def _build(fail=False):
    store = LocalStore(MemorySlot(), device_id="phone")
    transport = RecordingTransport(fail=fail)
    propagator = ChangePropagator(transport, sender="phone").attach(store)
    return store, propagator, transport


def test_local_change_sends_full_collection():
    store, propagator, transport = _build()
    category = store.add_category("Exercise", "bg-blue-600", "figure.run")

    assert len(transport.sent) == 1
    message = decode_message(transport.sent[0])
    assert message.type is MessageType.SYNC
    assert message.sender == "phone"
    assert message.reason == "add_category"
    assert [c.id for c in message.categories] == [category.id]
    assert propagator.stats["sent"] == 1


def test_remote_change_is_suppressed():
    store, propagator, transport = _build()
    store.add_category("Exercise", "bg-blue-600", "figure.run", origin=MutationOrigin.REMOTE)
    assert transport.sent == []
    assert propagator.stats["suppressed"] == 1


def test_every_mutation_sends_in_order():
    store, _, transport = _build()
    category = store.add_category("Exercise", "bg-blue-600", "figure.run")
    counter = store.add_counter(category.id, "Pushups")
    store.update_count(category.id, counter.id, 3)
    store.update_count(category.id, counter.id, 2)

    assert len(transport.sent) == 4
    counts = [
        m.categories[0].counters[0].count
        for m in map(decode_message, transport.sent[1:])
    ]
    assert counts == [0, 3, 5]


def test_send_failure_is_not_the_stores_problem():
    store, propagator, transport = _build(fail=True)
    category = store.add_category("Exercise", "bg-blue-600", "figure.run")

    assert store.get_category(category.id) is not None
    assert propagator.stats["errors"] == 1
    assert propagator.stats["sent"] == 0


def test_detach_stops_propagation():
    store, propagator, transport = _build()
    propagator.detach()
    store.add_category("Exercise", "bg-blue-600", "figure.run")
    assert transport.sent == []


def test_push_sends_explicit_snapshot():
    store, propagator, transport = _build()
    store.add_category("Exercise", "bg-blue-600", "figure.run")
    assert propagator.push(store.categories, reason="requested") is True
    assert decode_message(transport.sent[-1]).reason == "requested"
