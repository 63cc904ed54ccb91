from __future__ import annotations

import json
import logging
from typing import Any, Callable, Optional

import requests
from pywebpush import WebPushException, webpush

from pilltime import DeliveryReport, ReminderStore, Subscriber
from shared.config import VapidCredentials
from shared.contracts.enums import DeliveryOutcome
from shared.contracts.models import NotificationPayload

logger = logging.getLogger(__name__)

# Push services answer 404/410 once an endpoint has been unsubscribed or expired.
GONE_STATUS_CODES = {404, 410}

Sender = Callable[..., Any]


def _status_code(exc: WebPushException) -> Optional[int]:
    response = getattr(exc, "response", None)
    return getattr(response, "status_code", None)


class WebPushTransport:
    def __init__(
        self,
        store: ReminderStore,
        vapid: Optional[VapidCredentials],
        timeout: float = 10.0,
        sender: Sender = webpush,
    ) -> None:
        self.store = store
        self.vapid = vapid
        self.timeout = timeout
        self.sender = sender

    @property
    def enabled(self) -> bool:
        return self.vapid is not None

    def deliver(self, subscriber: Subscriber, payload: NotificationPayload) -> DeliveryOutcome:
        if self.vapid is None:
            return DeliveryOutcome.TRANSIENT_FAILURE

        endpoint = subscriber.endpoint
        try:
            self.sender(
                subscription_info={"endpoint": endpoint, "keys": dict(subscriber.keys)},
                data=json.dumps(payload.to_wire()),
                vapid_private_key=self.vapid.private_key,
                # pywebpush writes aud/exp into the claims dict it is given.
                vapid_claims={"sub": self.vapid.subject},
                timeout=self.timeout,
            )
        except WebPushException as exc:
            status = _status_code(exc)
            if status in GONE_STATUS_CODES:
                self._forget(endpoint, status)
                return DeliveryOutcome.PERMANENT_FAILURE
            logger.warning("Push to %s failed with status %s: %s", endpoint[:50], status, exc)
            return DeliveryOutcome.TRANSIENT_FAILURE
        except requests.exceptions.Timeout:
            logger.warning("Push to %s timed out after %.1fs", endpoint[:50], self.timeout)
            return DeliveryOutcome.TRANSIENT_FAILURE
        except requests.exceptions.RequestException as exc:
            logger.warning("Push to %s failed: %s", endpoint[:50], exc)
            return DeliveryOutcome.TRANSIENT_FAILURE
        except Exception:
            logger.exception("Push to %s raised unexpectedly", endpoint[:50])
            return DeliveryOutcome.TRANSIENT_FAILURE

        logger.debug("Notification sent to %s", endpoint[:50])
        return DeliveryOutcome.DELIVERED

    def send_to_all(self, payload: NotificationPayload) -> DeliveryReport:
        report = DeliveryReport()
        if self.vapid is None:
            logger.warning("Push notifications disabled (VAPID keys not configured)")
            return report

        subscribers = self.store.list_subscribers()
        if not subscribers:
            logger.info("No push subscriptions registered")
            return report

        # Sequential so a permanent-failure delete never races a send to the same endpoint.
        for subscriber in subscribers:
            report.record(subscriber.endpoint, self.deliver(subscriber, payload))

        logger.info("Notifications sent: %d succeeded, %d failed", report.sent, report.failed)
        return report

    def _forget(self, endpoint: str, status: int) -> None:
        try:
            removed = self.store.delete_subscriber(endpoint)
        except Exception:
            logger.exception("Could not remove gone subscription %s", endpoint[:50])
            return
        if removed:
            logger.warning("Removed subscription %s after HTTP %s", endpoint[:50], status)
