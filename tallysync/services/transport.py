"""
Message channel between two paired devices.

The channel is unreliable and only intermittently connected. ``send`` is a
handoff: it never fails from the caller's point of view, and a payload that
cannot go out right away is kept and delivered later. Receivers get whole
payloads through the callbacks registered with ``on_receive``, with no
ordering promise across separate sends.
"""

from collections import deque

import structlog

log = structlog.get_logger()


class Transport:
    def __init__(self):
        self._callbacks = []

    def send(self, payload):
        raise NotImplementedError

    def is_reachable(self):
        """Advisory only; used for status display, never for correctness."""
        raise NotImplementedError

    def on_receive(self, callback):
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def deliver(self, payload):
        """Hand an arrived payload to every receiver."""
        for callback in list(self._callbacks):
            try:
                callback(payload)
            except Exception as e:
                log.error("receive_callback_failed", error=str(e))


class InMemoryTransport(Transport):
    """
    One end of an in-process link. Build both ends with ``pair()``.

    While the link is down, sends are queued; bringing it back up flushes
    the queue to the peer in send order.
    """

    def __init__(self, name):
        super().__init__()
        self.name = name
        self.peer = None
        self.reachable = True
        self.pending = deque()
        self.sent = []

    @classmethod
    def pair(cls, first="phone", second="watch"):
        a, b = cls(first), cls(second)
        a.peer, b.peer = b, a
        return a, b

    def is_reachable(self):
        return self.reachable and self.peer is not None

    def set_reachable(self, reachable):
        self.reachable = reachable
        if self.peer is not None:
            self.peer.reachable = reachable
        if reachable:
            self.flush()
            if self.peer is not None:
                self.peer.flush()

    def send(self, payload):
        payload = bytes(payload)
        self.sent.append(payload)
        if self.is_reachable():
            self.peer.deliver(payload)
        else:
            self.pending.append(payload)
            log.debug("transport_queued", link=self.name, pending=len(self.pending))

    def flush(self):
        while self.pending and self.is_reachable():
            self.peer.deliver(self.pending.popleft())
