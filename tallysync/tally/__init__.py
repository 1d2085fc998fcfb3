from .codec import DeserializationError
from .propagator import ChangePropagator
from .reconciler import MergeResult, Reconciler
from .store import LocalStore, StoreChange

__all__ = [
    "ChangePropagator",
    "DeserializationError",
    "LocalStore",
    "MergeResult",
    "Reconciler",
    "StoreChange",
]
