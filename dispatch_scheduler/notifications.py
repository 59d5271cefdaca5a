# dispatch-scheduler/dispatch_scheduler/notifications.py
"""
Outbound notifications.

The engine decides *when* to notify and *what* the payload is; delivery
belongs to an external system. A ``Notifier`` receives:
- driver_assigned: once per successful assignment
- order_cancelled / order_reactivated: once per such transition

Also holds the catalog of standard cancellation reasons. A cancellation
reason is either one of these keys or free text typed by a dispatcher.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import requests

from .errors import NotificationError
from .models import DriverAssignedNotification, OrderNotice

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CancellationReason:
    """A standard cancellation reason offered to dispatchers."""
    key: str
    label: str
    description: str
    client_message: str
    automatic: bool = False


CANCELLATION_REASONS: Dict[str, CancellationReason] = {
    reason.key: reason for reason in (
        CancellationReason(
            key="past_date_unassigned",
            label="Order Date Passed (Unassigned)",
            description="The scheduled pickup date has passed without driver assignment.",
            client_message=("Unfortunately, your scheduled pickup date has passed and we were "
                            "unable to assign a driver to your order."),
            automatic=True,
        ),
        CancellationReason(
            key="no_drivers_available",
            label="No Drivers Available",
            description="No drivers are available for the requested time slot.",
            client_message=("We regret to inform you that we do not have drivers available "
                            "for your requested pickup time."),
        ),
        CancellationReason(
            key="client_requested",
            label="Client Requested Cancellation",
            description="Cancellation requested by the client.",
            client_message="As per your request, we have cancelled your order.",
        ),
        CancellationReason(
            key="route_conflict",
            label="Route Conflict",
            description="Order conflicts with existing route assignments.",
            client_message=("Due to routing constraints, we are unable to fulfill your order "
                            "at the requested time."),
        ),
    )
}


def manual_cancellation_reasons() -> List[CancellationReason]:
    """Reasons a dispatcher may pick by hand (automatic ones excluded)."""
    return [r for r in CANCELLATION_REASONS.values() if not r.automatic]


def resolve_reason(reason: str) -> Tuple[Optional[str], str, str]:
    """
    Expand a reason given to a cancellation.

    Returns:
        Tuple of (catalog_key_or_None, log_text, client_message). Free text is
        used verbatim for both the log and the client message.
    """
    text = reason.strip()
    catalogued = CANCELLATION_REASONS.get(text)
    if catalogued is None:
        return None, text, text
    return catalogued.key, catalogued.label, catalogued.client_message


class Notifier:
    """Base notifier. Subclasses override the hooks they deliver."""

    def driver_assigned(self, notification: DriverAssignedNotification) -> None:
        pass

    def order_cancelled(self, notice: OrderNotice) -> None:
        pass

    def order_reactivated(self, notice: OrderNotice) -> None:
        pass


class LoggingNotifier(Notifier):
    """Writes every notification to the log. The default."""

    def driver_assigned(self, notification: DriverAssignedNotification) -> None:
        logger.info(f"Notify driver {notification.driver_id}: order {notification.order_id} "
                    f"pickup at {notification.pickup_time_formatted}")

    def order_cancelled(self, notice: OrderNotice) -> None:
        logger.info(f"Notify client: order {notice.order_id} cancelled - {notice.message}")

    def order_reactivated(self, notice: OrderNotice) -> None:
        logger.info(f"Notify client: order {notice.order_id} reactivated - {notice.message}")


class WebhookNotifier(Notifier):
    """
    POSTs each notification as JSON to an external delivery service.

    Body: {"event": <name>, "payload": <payload dict>}
    """

    def __init__(self, url: str, timeout: float = 5.0) -> None:
        self.url = url
        self.timeout = timeout

    def _post(self, event: str, payload: Dict[str, Any]) -> None:
        try:
            response = requests.post(
                self.url, json={"event": event, "payload": payload}, timeout=self.timeout
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise NotificationError(f"Webhook delivery of '{event}' failed: {e}") from e

    def driver_assigned(self, notification: DriverAssignedNotification) -> None:
        self._post("driver_assigned", notification.to_dict())

    def order_cancelled(self, notice: OrderNotice) -> None:
        self._post("order_cancelled", notice.to_dict())

    def order_reactivated(self, notice: OrderNotice) -> None:
        self._post("order_reactivated", notice.to_dict())


def build_notifier(webhook_url: Optional[str], timeout: float = 5.0) -> Notifier:
    """Webhook notifier when a URL is configured, logging notifier otherwise."""
    if webhook_url:
        return WebhookNotifier(webhook_url, timeout=timeout)
    return LoggingNotifier()
