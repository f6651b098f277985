"""Exception hierarchy for the reconciliation engine."""

from __future__ import annotations


class ReconciliationError(Exception):
    """Base class for engine failures that abort a sync run."""


class AdapterFailure(ReconciliationError):
    """Upstream fetch failed (network error, expired credential, bad envelope)."""

    def __init__(self, source: str, message: str) -> None:
        super().__init__(f"{source}: {message}")
        self.source = source


class FeedTruncated(AdapterFailure):
    """Upstream returned a partial or unrecognizable order list."""


class MissingCredential(ReconciliationError):
    """No active session/credential is available for the source."""


class PersistenceConflict(ReconciliationError):
    """Ledger write collided with a concurrent writer."""


class SyncAborted(ReconciliationError):
    """Sync gave up after repeated persistence conflicts."""


class InvalidStopLoss(ReconciliationError, ValueError):
    """Stop-loss is on the wrong side of the entry price for the trade direction."""

    def __init__(self, direction: str, entry_price: float, stop_loss: float) -> None:
        relation = "<=" if direction == "LONG" else ">="
        super().__init__(
            f"{direction} trade requires stop_loss {relation} entry price "
            f"({stop_loss} vs {entry_price})."
        )
        self.direction = direction
        self.entry_price = entry_price
        self.stop_loss = stop_loss
