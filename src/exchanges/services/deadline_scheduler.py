"""
Periodic scan of exchange regulatory deadlines.

Each tick recomputes compliance status, retires timers that no longer
apply and fires deadline reminders. Reminders follow the deadlines stored
on the exchange, so cases in progress or on hold are reminded as well.
A reminder fires at most once per exchange, deadline and threshold: the
marker row is claimed under a unique constraint before the notification
is queued, so overlapping ticks and restarts never send it twice. The
scheduler never writes ``stage``.
"""

import logging
from collections import Counter
from datetime import date
from typing import Dict, Iterable, List, Optional, Tuple

from django.db import IntegrityError, transaction
from django.utils import timezone

from ..conf import get_workflow_config
from ..models import (
    DeadlineKind, DeadlineReminder, DeadlineTimer, Exchange, ExchangeStage, TERMINAL_STAGES
)
from .compliance import compute_compliance_status
from .notifications import CeleryNotifier, NotificationEvent, notify_on_commit
from .store import DjangoCaseStore

logger = logging.getLogger(__name__)

IDENTIFICATION_TRACKED_STAGES = frozenset({
    ExchangeStage.IN_PROGRESS,
    ExchangeStage.IDENTIFICATION_PERIOD,
})


class DeadlineScheduler:
    """Compliance and reminder scan over every open exchange."""

    def __init__(self, store=None, notifier=None,
                 thresholds: Optional[Iterable[int]] = None, clock=None):
        self.store = store or DjangoCaseStore()
        self.notifier = notifier or CeleryNotifier()
        config = get_workflow_config()
        self.thresholds = sorted(
            config['REMINDER_THRESHOLDS'] if thresholds is None else thresholds
        )
        self.at_risk_window_days = config['AT_RISK_WINDOW_DAYS']
        self.clock = clock or timezone.now

    def tick(self, today: Optional[date] = None) -> Dict[str, int]:
        now = self.clock()
        today = today or now.date()
        summary = Counter(
            scanned=0, compliance_updated=0, conflicts=0, reminders_sent=0,
            reminders_suppressed=0, overdue_sent=0, timers_retired=0, errors=0,
        )

        summary['timers_retired'] += self._retire_terminal_timers(now)

        for exchange in self.store.deadline_candidates():
            summary['scanned'] += 1
            try:
                self._scan_exchange(exchange, today, now, summary)
            except Exception:
                summary['errors'] += 1
                logger.exception(f"Deadline scan failed for exchange {exchange.code}")

        logger.info(f"Deadline scan for {today}: {dict(summary)}")
        return dict(summary)

    def _scan_exchange(self, exchange: Exchange, today: date, now, summary: Counter):
        status = compute_compliance_status(
            stage=exchange.stage,
            identification_deadline=exchange.identification_deadline,
            completion_deadline=exchange.completion_deadline,
            today=today,
            identification_filed=exchange.identification_date is not None,
            at_risk_window_days=self.at_risk_window_days,
        )
        if status != exchange.compliance_status:
            if self.store.update_compliance(exchange.id, exchange.version, status):
                summary['compliance_updated'] += 1
                logger.info(
                    f"Exchange {exchange.code} compliance "
                    f"{exchange.compliance_status} -> {status}"
                )
            else:
                # Picked up again on the next tick
                summary['conflicts'] += 1

        timers = DeadlineTimer.objects.filter(exchange=exchange, retired_at__isnull=True)
        for timer in timers:
            if timer.owning_stage != exchange.stage:
                timer.retired_at = now
                timer.save(update_fields=['retired_at', 'updated_at'])
                summary['timers_retired'] += 1

        for kind, deadline in tracked_deadlines(exchange):
            self._fire_reminders(exchange, kind, deadline, today, now, summary)

    def _fire_reminders(self, exchange: Exchange, kind: str, deadline: date, today: date,
                        now, summary: Counter):
        days = (deadline - today).days

        if days < 0:
            if self._claim(exchange, kind, deadline, DeadlineReminder.OVERDUE, now):
                self._notify(exchange, kind, deadline, NotificationEvent.DEADLINE_OVERDUE, days,
                             DeadlineReminder.OVERDUE)
                summary['overdue_sent'] += 1
            return

        crossed = [threshold for threshold in self.thresholds if days <= threshold]
        if not crossed:
            return

        # Wider thresholds crossed in the same tick are recorded, not sent
        tightest, wider = crossed[0], crossed[1:]
        marker = DeadlineReminder.marker_for(tightest)
        if self._claim(exchange, kind, deadline, marker, now):
            self._notify(exchange, kind, deadline, NotificationEvent.DEADLINE_REMINDER, days,
                         marker)
            summary['reminders_sent'] += 1

        for threshold in wider:
            if self._claim(exchange, kind, deadline, DeadlineReminder.marker_for(threshold), now,
                           suppressed=True):
                summary['reminders_suppressed'] += 1

    def _claim(self, exchange: Exchange, kind: str, deadline: date, marker: str, now,
               suppressed: bool = False) -> bool:
        try:
            with transaction.atomic():
                DeadlineReminder.objects.create(
                    exchange=exchange,
                    kind=kind,
                    deadline=deadline,
                    marker=marker,
                    fired_at=now,
                    suppressed=suppressed,
                )
        except IntegrityError:
            return False
        return True

    def _notify(self, exchange: Exchange, kind: str, deadline: date, event_kind: str,
                days: int, marker: str):
        payload = {
            'exchange_id': str(exchange.id),
            'exchange_code': exchange.code,
            'exchange_name': exchange.name,
            'deadline_kind': kind,
            'deadline': deadline.isoformat(),
            'days_remaining': days,
            'marker': marker,
        }
        for party_id in _recipients(exchange):
            notify_on_commit(self.notifier, party_id, event_kind, payload)

        logger.info(
            f"{event_kind} for exchange {exchange.code}: {kind} deadline "
            f"{deadline} ({days} days)"
        )

    def _retire_terminal_timers(self, now) -> int:
        return DeadlineTimer.objects.filter(
            retired_at__isnull=True,
            exchange__stage__in=list(TERMINAL_STAGES),
        ).update(retired_at=now, updated_at=now)


def tracked_deadlines(exchange: Exchange) -> List[Tuple[str, date]]:
    """
    Deadlines that still need reminders for ``exchange``.

    An exchange on hold is treated as the stage it was held from. The
    identification deadline stops mattering once the notice is filed or
    the exchange has moved past identification.
    """
    if exchange.is_terminal:
        return []

    stage = exchange.stage
    if stage == ExchangeStage.ON_HOLD and exchange.held_from_stage:
        stage = exchange.held_from_stage

    deadlines = []
    if (
        exchange.identification_deadline
        and exchange.identification_date is None
        and stage in IDENTIFICATION_TRACKED_STAGES
    ):
        deadlines.append((DeadlineKind.IDENTIFICATION, exchange.identification_deadline))
    if exchange.completion_deadline:
        deadlines.append((DeadlineKind.COMPLETION, exchange.completion_deadline))
    return deadlines


def _recipients(exchange: Exchange) -> List:
    return [p for p in (exchange.client_id, exchange.coordinator_id) if p]
