# dispatch-scheduler/dispatch_scheduler/errors.py
"""
Domain exceptions for the dispatch scheduling engine.

Every exception carries a ``user_message`` that the calling layer can show
as-is. Caller/input errors (InvalidTransition, MissingReason) are raised
before anything is written; SlotConflict and PersistenceFailure raised during
a commit are only propagated after the partial writes have been undone.
"""

from __future__ import annotations

from typing import Optional


class DispatchError(Exception):
    """Base exception for all dispatch engine errors."""

    user_message: str = "The dispatch request could not be completed."

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.user_message)


class NoCandidateDrivers(DispatchError):
    """No driver can cover the order on its day. Escalate, don't fail."""

    user_message = (
        "No drivers are available for the requested pickup day. "
        "Offer the client a new pickup date or escalate to a dispatcher."
    )

    def __init__(self, order_id: str) -> None:
        self.order_id = order_id
        super().__init__(f"No candidate drivers for order {order_id}")


class SlotConflict(DispatchError):
    """The chosen slot was taken by a concurrent request. Safe to retry."""

    user_message = "That time slot was just taken. Refresh the driver list and pick again."
    retryable = True


class InvalidTransition(DispatchError):
    """Requested status is not reachable from the order's current status."""

    def __init__(self, current: str, requested: str) -> None:
        self.current = current
        self.requested = requested
        self.user_message = f"An order that is '{current}' cannot be moved to '{requested}'."
        super().__init__(self.user_message)


class MissingReason(DispatchError):
    """Cancellation or reactivation was attempted without a reason."""

    def __init__(self, requested: str) -> None:
        self.requested = requested
        self.user_message = f"A reason is required to move an order to '{requested}'."
        super().__init__(self.user_message)


class RecordNotFound(DispatchError):
    """An order, driver or slot id does not exist in the store."""

    def __init__(self, kind: str, record_id: str) -> None:
        self.kind = kind
        self.record_id = record_id
        self.user_message = f"Unknown {kind}: {record_id}"
        super().__init__(self.user_message)


class PersistenceFailure(DispatchError):
    """A read or write against the backing store failed."""

    user_message = "The order could not be saved. Please try again."


class DriversUnavailable(PersistenceFailure):
    """Driver data could not be read while building a proposal."""

    user_message = "Driver availability could not be loaded right now."


class StoreTimeout(PersistenceFailure):
    """A store operation did not complete within its timeout."""

    user_message = "The scheduling store did not respond in time."


class NotificationError(DispatchError):
    """An outbound notification could not be handed to the delivery system."""
