"""Level-triggered event notification primitives."""

from .subscription import Event, ReadinessHandle, Subscription

__all__ = ["Event", "Subscription", "ReadinessHandle"]
