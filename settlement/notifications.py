# settlement/notifications.py
"""
Best-effort notification sinks.

Settlement publishes an event per credit after its transaction has committed.
A sink must never raise into the engine: delivery problems are logged and
dropped.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional
import logging

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from models import Notification

logger = logging.getLogger(__name__)

ROI = "ROI"
REFERRAL = "REFERRAL"


@dataclass(frozen=True)
class NotificationEvent:
    account_id: int
    kind: str
    amount: Decimal
    source_investment_id: Optional[int] = None
    level: Optional[int] = None

    def to_dict(self):
        payload = {
            "accountId": self.account_id,
            "kind": self.kind,
            "amount": str(self.amount),
        }
        if self.source_investment_id is not None:
            payload["sourceInvestmentId"] = self.source_investment_id
        if self.level is not None:
            payload["level"] = self.level
        return payload

    def title(self):
        if self.kind == ROI:
            return "Daily ROI Credited"
        return "Referral Commission Received"

    def message(self):
        if self.kind == ROI:
            return f"₹{self.amount} has been credited to your wallet as daily ROI."
        return f"₹{self.amount} has been credited as Level {self.level} referral commission."


class NotificationSink:
    """Base sink. ``publish`` swallows every error ``deliver`` raises."""

    name = "base"

    def deliver(self, event: NotificationEvent):
        raise NotImplementedError

    def publish(self, event: NotificationEvent) -> bool:
        try:
            self.deliver(event)
            return True
        except Exception as e:
            logger.warning(f"Notification sink '{self.name}' failed for account {event.account_id}: {e}")
            return False

    def publish_all(self, events: Iterable[NotificationEvent]) -> int:
        return sum(1 for event in events if self.publish(event))


class NullNotificationSink(NotificationSink):
    name = "null"

    def deliver(self, event):
        pass


class LoggingNotificationSink(NotificationSink):
    name = "log"

    def deliver(self, event):
        logger.info(f"Notification: {event.to_dict()}")


class DatabaseNotificationSink(NotificationSink):
    """Writes notification rows in a session of its own, outside settlement."""

    name = "database"

    def __init__(self, store):
        self.store = store

    def deliver(self, event):
        with self.store.session_scope() as session:
            session.add(Notification(
                account_id=event.account_id,
                kind=event.kind,
                title=event.title(),
                message=event.message(),
                amount=event.amount,
            ))


class WebhookNotificationSink(NotificationSink):
    """POSTs each event as JSON to an external notification service."""

    name = "webhook"

    def __init__(self, url: str, timeout: float = 5, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or self._build_session()

    @staticmethod
    def _build_session():
        session = requests.Session()
        retry_strategy = Retry(
            total=2,
            backoff_factor=0.5,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["POST"],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def deliver(self, event):
        response = self.session.post(
            self.url,
            json=event.to_dict(),
            timeout=self.timeout,
            headers={'Content-Type': 'application/json'},
        )
        response.raise_for_status()


class CompositeNotificationSink(NotificationSink):
    name = "composite"

    def __init__(self, sinks):
        self.sinks = list(sinks)

    def deliver(self, event):
        for sink in self.sinks:
            sink.publish(event)


def build_notification_sink(config, store) -> NotificationSink:
    """Sink stack for the app config: log always, plus database and webhook when enabled."""
    sinks = [LoggingNotificationSink()]
    if config.get("NOTIFICATIONS_TO_DATABASE"):
        sinks.append(DatabaseNotificationSink(store))
    if config.get("NOTIFICATION_WEBHOOK_URL"):
        sinks.append(WebhookNotificationSink(
            config["NOTIFICATION_WEBHOOK_URL"],
            timeout=config.get("NOTIFICATION_WEBHOOK_TIMEOUT", 5),
        ))
    return CompositeNotificationSink(sinks)
