"""
Auto-actions run after a committed exchange stage transition.

Every action runs in its own savepoint. A failing action is logged and
reported back as data; it never undoes the stage change and never stops
the remaining actions.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from django.db import models, transaction
from django.utils import timezone

from ..models import (
    DeadlineKind, DeadlineTimer, Exchange, ExchangeDocument, ExchangeStage,
    ExchangeTask
)
from .documents import DocumentGenerator, RecordingDocumentGenerator
from .errors import VersionConflictError
from .notifications import (
    CeleryNotifier, NotificationEvent, Notifier, notify_on_commit
)
from .store import DjangoCaseStore

logger = logging.getLogger(__name__)


class AutoAction(models.TextChoices):
    SEED_STAGE_WORK_ITEMS = 'seed_stage_work_items', 'Seed stage work items'
    START_IDENTIFICATION_TIMER = 'start_identification_timer', 'Start 45-day identification timer'
    START_COMPLETION_TIMER = 'start_completion_timer', 'Start 180-day completion timer'
    NOTIFY_COORDINATOR = 'notify_coordinator', 'Notify coordinator'
    NOTIFY_CLIENT = 'notify_client', 'Notify client'
    NOTIFY_ALL_PARTIES = 'notify_all_parties', 'Notify all parties'
    NOTIFY_COMPLETION = 'notify_completion', 'Notify completion'
    GENERATE_COMPLETION_CERTIFICATE = 'generate_completion_certificate', 'Generate completion certificate'
    ARCHIVE_EXCHANGE = 'archive_exchange', 'Archive exchange'


@dataclass(frozen=True)
class TaskTemplate:
    code: str
    title: str
    description: str
    priority: str
    days_to_complete: int


P = ExchangeTask.Priority

STAGE_TASK_TEMPLATES: Dict[str, List[TaskTemplate]] = {
    ExchangeStage.DRAFT: [
        TaskTemplate('collect_client_info', 'Collect Client Information',
                     'Gather complete client details and contact information', P.HIGH, 2),
        TaskTemplate('identify_relinquished_property', 'Identify Relinquished Property',
                     'Document the property to be sold in the exchange', P.HIGH, 3),
        TaskTemplate('prepare_exchange_agreement', 'Prepare Exchange Agreement',
                     'Draft and review the 1031 exchange agreement', P.MEDIUM, 5),
    ],
    ExchangeStage.IN_PROGRESS: [
        TaskTemplate('execute_exchange_agreement', 'Execute Exchange Agreement',
                     'Get all parties to sign the exchange agreement', P.HIGH, 3),
        TaskTemplate('monitor_relinquished_sale', 'Monitor Relinquished Property Sale',
                     'Track the sale of the relinquished property', P.HIGH, 30),
        TaskTemplate('prepare_identification_period', 'Prepare for 45-Day Period',
                     'Set up identification period tracking', P.MEDIUM, 1),
    ],
    ExchangeStage.IDENTIFICATION_PERIOD: [
        TaskTemplate('identify_replacement_properties', 'Identify Replacement Properties',
                     'Client must identify potential replacement properties', P.URGENT, 45),
        TaskTemplate('prepare_purchase_agreements', 'Prepare Purchase Agreements',
                     'Draft purchase agreements for identified properties', P.HIGH, 40),
        TaskTemplate('research_replacement_properties', 'Research Replacement Properties',
                     'Research and evaluate potential replacement properties', P.HIGH, 30),
        TaskTemplate('property_inspections', 'Property Inspections',
                     'Conduct inspections of identified properties', P.HIGH, 35),
        TaskTemplate('finalize_property_selection', 'Finalize Property Selection',
                     'Make final selection of replacement properties', P.URGENT, 40),
        TaskTemplate('submit_identification_notice', 'Submit Identification Notice',
                     'Formally submit the 45-day identification notice', P.URGENT, 43),
    ],
    ExchangeStage.COMPLETION_PERIOD: [
        TaskTemplate('coordinate_property_closings', 'Coordinate Property Closings',
                     'Coordinate closing on all replacement properties', P.URGENT, 150),
        TaskTemplate('prepare_completion_documents', 'Prepare Completion Documents',
                     'Generate final exchange completion paperwork', P.HIGH, 170),
        TaskTemplate('final_fund_transfers', 'Final Fund Transfers',
                     'Execute final exchange fund transfers', P.URGENT, 175),
        TaskTemplate('complete_property_acquisitions', 'Complete Property Acquisitions',
                     'Close on the replacement properties', P.URGENT, 180),
    ],
    ExchangeStage.COMPLETED: [
        TaskTemplate('final_documentation_review', 'Final Documentation Review',
                     'Review all exchange documents for completeness', P.MEDIUM, 7),
        TaskTemplate('archive_exchange_files', 'Archive Exchange Files',
                     'Properly archive all exchange documentation', P.LOW, 14),
    ],
}

TIMER_OWNING_STAGE = {
    DeadlineKind.IDENTIFICATION: ExchangeStage.IDENTIFICATION_PERIOD,
    DeadlineKind.COMPLETION: ExchangeStage.COMPLETION_PERIOD,
}


@dataclass
class ActionContext:
    """What the actions know about the transition that triggered them."""
    from_stage: str
    to_stage: str
    entered_at: datetime
    acting_party_id: Optional[str] = None
    reason: str = ''

    def payload(self, exchange: Exchange) -> Dict[str, Any]:
        return {
            'exchange_id': str(exchange.id),
            'exchange_code': exchange.code,
            'exchange_name': exchange.name,
            'from_stage': str(self.from_stage),
            'to_stage': str(self.to_stage),
            'reason': self.reason,
        }


@dataclass
class ActionOutcome:
    action: str
    succeeded: bool
    error: str = ''
    detail: Dict[str, Any] = field(default_factory=dict)

    def as_error(self) -> Dict[str, str]:
        return {'action': self.action, 'error': self.error}


class AutoActionExecutor:
    """
    Runs the auto-actions declared for a transition.
    """

    def __init__(self, notifier: Optional[Notifier] = None,
                 document_generator: Optional[DocumentGenerator] = None,
                 task_templates: Optional[Dict[str, List[TaskTemplate]]] = None,
                 store=None):
        self.store = store or DjangoCaseStore()
        self.notifier = notifier or CeleryNotifier()
        self.document_generator = document_generator or RecordingDocumentGenerator()
        self.task_templates = STAGE_TASK_TEMPLATES if task_templates is None else task_templates
        self._handlers: Dict[AutoAction, Callable[[Exchange, ActionContext], Dict[str, Any]]] = {
            AutoAction.SEED_STAGE_WORK_ITEMS: self._seed_stage_work_items,
            AutoAction.START_IDENTIFICATION_TIMER: self._start_identification_timer,
            AutoAction.START_COMPLETION_TIMER: self._start_completion_timer,
            AutoAction.NOTIFY_COORDINATOR: self._notify_coordinator,
            AutoAction.NOTIFY_CLIENT: self._notify_client,
            AutoAction.NOTIFY_ALL_PARTIES: self._notify_all_parties,
            AutoAction.NOTIFY_COMPLETION: self._notify_completion,
            AutoAction.GENERATE_COMPLETION_CERTIFICATE: self._generate_completion_certificate,
            AutoAction.ARCHIVE_EXCHANGE: self._archive_exchange,
        }

    def run(self, actions: Iterable[str], exchange: Exchange,
            context: ActionContext) -> List[ActionOutcome]:
        outcomes = []
        for action in actions:
            try:
                handler = self._handlers[AutoAction(action)]
            except (ValueError, KeyError):
                logger.error(f"Unknown auto-action {action} for exchange {exchange.code}")
                outcomes.append(ActionOutcome(str(action), False, f"Unknown auto-action: {action}"))
                continue

            try:
                with transaction.atomic():
                    detail = handler(exchange, context) or {}
            except Exception as e:
                logger.exception(f"Error executing auto-action {action} for exchange {exchange.code}")
                outcomes.append(ActionOutcome(str(action), False, str(e) or e.__class__.__name__))
            else:
                outcomes.append(ActionOutcome(str(action), True, detail=detail))
        return outcomes

    # Work items

    def _seed_stage_work_items(self, exchange, context):
        templates = self.task_templates.get(context.to_stage, [])
        start = context.entered_at.date()

        created = []
        for template in templates:
            task = ExchangeTask.objects.create(
                exchange=exchange,
                title=template.title,
                description=template.description,
                priority=template.priority,
                due_date=start + timedelta(days=template.days_to_complete),
                stage=context.to_stage,
                template_code=template.code,
                assigned_to=exchange.coordinator_id or context.acting_party_id,
                created_by=context.acting_party_id,
            )
            created.append(str(task.id))

        logger.info(f"Seeded {len(created)} tasks for exchange {exchange.code} in {context.to_stage}")
        return {'tasks_created': len(created)}

    # Deadline timers

    def _start_identification_timer(self, exchange, context):
        return self._start_timer(exchange, DeadlineKind.IDENTIFICATION, exchange.identification_deadline)

    def _start_completion_timer(self, exchange, context):
        return self._start_timer(exchange, DeadlineKind.COMPLETION, exchange.completion_deadline)

    def _start_timer(self, exchange, kind, deadline):
        if deadline is None:
            raise ValueError(f"Exchange has no {kind} deadline to track")

        timer = DeadlineTimer.objects.filter(
            exchange=exchange, kind=kind, retired_at__isnull=True
        ).first()
        if timer and timer.deadline == deadline:
            return {'timer_id': str(timer.id), 'deadline': deadline.isoformat(), 'reused': True}
        if timer:
            timer.retired_at = timezone.now()
            timer.save(update_fields=['retired_at', 'updated_at'])

        timer = DeadlineTimer.objects.create(
            exchange=exchange,
            kind=kind,
            deadline=deadline,
            owning_stage=TIMER_OWNING_STAGE[kind],
        )
        logger.info(f"Started {kind} timer for exchange {exchange.code}, due {deadline}")
        return {'timer_id': str(timer.id), 'deadline': deadline.isoformat(), 'reused': False}

    # Notifications

    def _notify(self, party_ids, event_kind, payload):
        for party_id in party_ids:
            notify_on_commit(self.notifier, party_id, event_kind, payload)
        return {'recipients': [str(p) for p in party_ids]}

    def _notify_coordinator(self, exchange, context):
        if not exchange.coordinator_id:
            raise ValueError("No coordinator assigned to notify")
        return self._notify(
            [exchange.coordinator_id], NotificationEvent.STAGE_CHANGED, context.payload(exchange)
        )

    def _notify_client(self, exchange, context):
        if not exchange.client_id:
            raise ValueError("No client linked to notify")
        return self._notify(
            [exchange.client_id], NotificationEvent.STAGE_CHANGED, context.payload(exchange)
        )

    def _notify_all_parties(self, exchange, context):
        recipients = _all_party_ids(exchange)
        if not recipients:
            raise ValueError("Exchange has no parties to notify")
        return self._notify(recipients, NotificationEvent.STAGE_CHANGED, context.payload(exchange))

    def _notify_completion(self, exchange, context):
        recipients = [p for p in (exchange.client_id, exchange.coordinator_id) if p]
        if not recipients:
            raise ValueError("Exchange has no parties to notify")
        payload = context.payload(exchange)
        payload['completion_date'] = exchange.completion_date.isoformat() if exchange.completion_date else None
        return self._notify(recipients, NotificationEvent.EXCHANGE_COMPLETED, payload)

    # Documents and archive

    def _generate_completion_certificate(self, exchange, context):
        document = self.document_generator.generate(
            exchange,
            ExchangeDocument.DocumentType.COMPLETION_CERTIFICATE,
            generated_by=context.acting_party_id,
        )
        return {'document_id': str(document.id)}

    def _archive_exchange(self, exchange, context):
        archived_at = timezone.now()
        saved = self.store.save_case(
            exchange.id, exchange.version,
            {'is_archived': True, 'archived_at': archived_at},
            expected_stage=exchange.stage,
        )
        if not saved:
            raise VersionConflictError(exchange.id, exchange.version)
        exchange.version += 1
        exchange.is_archived = True
        exchange.archived_at = archived_at
        logger.info(f"Archived exchange {exchange.code}")
        return {'archived_at': archived_at.isoformat()}


def _all_party_ids(exchange):
    seen = []
    for party_id in [exchange.client_id, exchange.coordinator_id] + [
        p.party_id for p in exchange.participants.all()
    ]:
        if party_id and party_id not in seen:
            seen.append(party_id)
    return seen
