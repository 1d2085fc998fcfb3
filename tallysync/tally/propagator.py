import time

import structlog

from ..models import MutationOrigin
from .codec import encode_message, sync_message

log = structlog.get_logger()


class ChangePropagator:
    """
    Pushes the full collection to the paired device after every local change.

    Changes that came in from the peer (origin REMOTE) are not sent back,
    otherwise two devices would keep bouncing the same snapshot forever.
    Sending is fire-and-forget: whether and when the payload arrives is the
    transport's business, failures never reach the store.
    """

    def __init__(self, transport, sender):
        self.transport = transport
        self.sender = sender
        self._unsubscribe = None
        self.stats = {
            "sent": 0,
            "suppressed": 0,
            "errors": 0,
            "sent_bytes": 0,
            "last_sent_at": None,
            "last_action": None,
        }

    def attach(self, store):
        self.detach()
        self._unsubscribe = store.subscribe(self.on_change)
        return self

    def detach(self):
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    def on_change(self, change):
        if change.origin is MutationOrigin.REMOTE:
            self.stats["suppressed"] += 1
            return
        self.stats["last_action"] = change.action
        self.push(change.categories, reason=change.action)

    def push(self, categories, reason="local_change"):
        """Send ``categories`` to the peer; returns False if the handoff failed."""
        try:
            payload = encode_message(sync_message(self.sender, categories, reason=reason))
            self.transport.send(payload)
        except Exception as e:
            self.stats["errors"] += 1
            log.warning("propagate_send_failed", reason=reason, error=str(e))
            return False

        self.stats["sent"] += 1
        self.stats["sent_bytes"] += len(payload)
        self.stats["last_sent_at"] = time.time()
        log.debug("propagated", reason=reason, categories=len(categories), bytes=len(payload))
        return True
