"""
Error taxonomy for the presence tracker.

Propagation policy:
- FeedUnavailable aborts the current poll cycle only.
- MalformedEntry skips a single snapshot row.
- StoreIOError is logged; in-memory state stays authoritative.
- DurableStoreError / DurableWriteError are logged and repaired by the
  next synchronizer run.
"""


class PresenceError(Exception):
    """Base class for all tracker errors."""


class FeedUnavailable(PresenceError):
    """The snapshot feed could not be fetched or parsed (network, timeout, bad JSON)."""


class MalformedEntry(PresenceError):
    """A single snapshot row could not be classified."""


class StoreIOError(PresenceError):
    """Writing or reading an ephemeral JSON store failed."""


class DurableStoreError(PresenceError):
    """The durable relational store is unreachable or rejected a query."""


class DurableWriteError(DurableStoreError):
    """A write to the durable store failed."""
