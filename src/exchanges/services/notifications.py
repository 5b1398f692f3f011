"""
Exchange notification services.
"""
import logging
from typing import Any, Dict, Protocol

from celery import shared_task
from django.conf import settings
from django.db import models, transaction

logger = logging.getLogger(__name__)


class NotificationEvent(models.TextChoices):
    STAGE_CHANGED = 'stage_changed', 'Stage Changed'
    DEADLINE_REMINDER = 'deadline_reminder', 'Deadline Reminder'
    DEADLINE_OVERDUE = 'deadline_overdue', 'Deadline Overdue'
    EXCHANGE_COMPLETED = 'exchange_completed', 'Exchange Completed'


@shared_task
def send_exchange_notification(party_id, event_kind, payload):
    """
    Deliver an exchange notification to a party.

    Args:
        party_id: UUID string of the recipient party record
        event_kind: NotificationEvent value
        payload: JSON-serializable event details
    """
    # Skip notifications in test mode
    if getattr(settings, 'TESTING', False):
        return

    # Delivery channels live in the notification system; this hands off
    logger.info(
        f"Notification {event_kind} for party {party_id}: "
        f"exchange {payload.get('exchange_id')}"
    )


class Notifier(Protocol):
    def notify(self, party_id, event_kind: str, payload: Dict[str, Any]) -> None:
        ...


class CeleryNotifier:
    """Fire-and-forget notifier that enqueues a celery task per message."""

    def notify(self, party_id, event_kind: str, payload: Dict[str, Any]) -> None:
        try:
            send_exchange_notification.delay(str(party_id), str(event_kind), payload)
        except Exception:
            # Delivery is best effort; the workflow never retries it
            logger.exception(
                f"Failed to enqueue {event_kind} notification for party {party_id}"
            )


def notify_on_commit(notifier: Notifier, party_id, event_kind: str,
                     payload: Dict[str, Any]) -> None:
    """Send once the surrounding transaction commits; dropped on rollback."""

    def _send():
        try:
            notifier.notify(party_id, event_kind, payload)
        except Exception:
            logger.exception(f"Notifier failed for {event_kind} to party {party_id}")

    transaction.on_commit(_send)
