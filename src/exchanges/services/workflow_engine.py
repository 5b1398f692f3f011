"""
Workflow engine for managing exchange stage progression.

The engine is the only writer of an exchange's stage. A transition is
validated against the transition table and its guards, written with a
versioned compare-and-swap, followed by its auto-actions, and recorded in
the audit trail. Rejected and conflicting attempts are recorded too.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Optional

from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone

from ..conf import get_workflow_config
from ..models import (
    DeadlineKind, DeadlineTimer, Exchange, ExchangeStage, ExchangeTask,
    ExchangeTransition, PRE_COMPLETION_STAGES
)
from .actions import ActionContext, ActionOutcome, AutoActionExecutor
from .compliance import compute_compliance_status
from .conditions import evaluate_all
from .errors import (
    ActionPartialFailure, GuardsNotMetError, InvalidTransitionError,
    VersionConflictError
)
from .store import DjangoCaseStore, ExchangeSnapshot
from .transitions import TRANSITION_TABLE, TransitionRule, TransitionTable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AvailableTransition:
    to_stage: str
    required_conditions: List[str]
    is_administrative: bool = False


@dataclass
class ValidationResult:
    valid: bool
    from_stage: str
    to_stage: str
    failed_conditions: List[Dict[str, str]] = field(default_factory=list)
    conditions_evaluated: List[str] = field(default_factory=list)
    message: str = ''
    rule: Optional[TransitionRule] = None

    @property
    def is_permitted(self) -> bool:
        return self.rule is not None


@dataclass
class TransitionResult:
    exchange: Exchange
    audit_entry: ExchangeTransition
    action_outcomes: List[ActionOutcome] = field(default_factory=list)
    partial_failure: Optional[ActionPartialFailure] = None

    @property
    def actions_run(self) -> List[str]:
        return [outcome.action for outcome in self.action_outcomes]


def replay_stage(entries: Iterable[ExchangeTransition],
                 initial_stage: str = ExchangeStage.DRAFT) -> str:
    """
    Rebuild the current stage from an ordered audit trail.

    Raises ValueError when a successful entry does not start where the
    previous one ended, which means the trail is incomplete.
    """
    stage = str(initial_stage)
    for entry in entries:
        if entry.outcome != ExchangeTransition.Outcome.SUCCEEDED:
            continue
        if entry.from_stage != stage:
            raise ValueError(
                f"Audit trail gap: entry {entry.id} starts at {entry.from_stage}, "
                f"expected {stage}"
            )
        stage = entry.to_stage
    return stage


class WorkflowEngine:
    """
    Engine for managing exchange workflow progression and automation.
    """

    def __init__(self, store=None, table: Optional[TransitionTable] = None,
                 executor: Optional[AutoActionExecutor] = None, notifier=None,
                 document_generator=None, clock=None):
        self.store = store or DjangoCaseStore()
        self.table = table or TRANSITION_TABLE
        self.executor = executor or AutoActionExecutor(
            notifier=notifier, document_generator=document_generator, store=self.store
        )
        self.clock = clock or timezone.now
        self.config = get_workflow_config()

    # Queries

    def available_transitions(self, exchange_id) -> List[AvailableTransition]:
        """
        Stages reachable from the current stage, with the guards each needs.

        Guards are not evaluated here; they are only checked when a
        transition is executed.
        """
        snapshot = self.store.load_case(exchange_id)
        return [
            AvailableTransition(
                to_stage=rule.to_stage,
                required_conditions=[str(c) for c in rule.conditions],
                is_administrative=rule.is_administrative,
            )
            for rule in self.table.rules_from(snapshot.stage)
        ]

    def validate_transition(self, exchange_id, to_stage) -> ValidationResult:
        """Check a transition without changing anything."""
        snapshot = self.store.load_case(exchange_id, as_of=self._today())
        return self._validate(snapshot, to_stage)

    def get_timeline(self, exchange_id) -> List[ExchangeTransition]:
        """Every transition attempt for the exchange, oldest first."""
        self.store.get_exchange(exchange_id)
        return self.store.list_audit_for_case(exchange_id)

    def get_workflow_summary(self, exchange_id) -> Dict[str, Any]:
        exchange = self.store.get_exchange(exchange_id)
        open_tasks = exchange.tasks.filter(
            status__in=[ExchangeTask.Status.PENDING, ExchangeTask.Status.IN_PROGRESS]
        ).order_by('due_date')

        return {
            'exchange': {
                'id': str(exchange.id),
                'code': exchange.code,
                'name': exchange.name,
                'stage': exchange.stage,
                'compliance_status': exchange.compliance_status,
                'start_date': exchange.start_date,
                'identification_deadline': exchange.identification_deadline,
                'completion_deadline': exchange.completion_deadline,
            },
            'deadlines': exchange.get_days_to_deadlines(self._today()),
            'workflow': {
                'available_transitions': self.available_transitions(exchange_id),
                'open_tasks': list(open_tasks),
            },
            'timeline': [
                {
                    'date': entry.performed_at,
                    'stage': entry.to_stage,
                    'outcome': entry.outcome,
                    'performed_by': entry.performed_by,
                    'reason': entry.reason,
                }
                for entry in self.store.list_audit_for_case(exchange_id)
            ],
        }

    # Commands

    def execute_transition(self, exchange_id, to_stage, acting_party_id=None,
                           reason: str = '') -> TransitionResult:
        """
        Move an exchange to a new stage.

        Re-reads and re-validates the exchange, writes the stage with a
        versioned update, runs the declared auto-actions and appends the
        audit entry, all in one database transaction. Raises
        InvalidTransitionError, GuardsNotMetError or VersionConflictError
        after recording the failed attempt.

        The failed-attempt row is written in the caller's transaction. A
        caller that wraps this call in ``transaction.atomic()`` must catch
        the error inside that block, or the row is rolled back with it.
        """
        now = self.clock()
        snapshot = self.store.load_case(exchange_id, as_of=now.date())
        validation = self._validate(snapshot, to_stage)
        from_stage = snapshot.stage

        if not validation.is_permitted:
            self._record_failure(snapshot, to_stage, acting_party_id, reason, now,
                                 details={'error': validation.message})
            raise InvalidTransitionError(from_stage, to_stage, validation.message)

        if not validation.valid:
            self._record_failure(snapshot, to_stage, acting_party_id, reason, now,
                                 failed_conditions=validation.failed_conditions)
            raise GuardsNotMetError(from_stage, to_stage, validation.failed_conditions)

        rule = validation.rule
        if rule.is_administrative and not (reason or '').strip():
            message = "Administrative transitions require a reason"
            self._record_failure(snapshot, to_stage, acting_party_id, reason, now,
                                 is_administrative=True, details={'error': message})
            raise InvalidTransitionError(from_stage, to_stage, message)

        changes = self._stage_entry_changes(snapshot, rule, now)

        with transaction.atomic():
            saved = self.store.save_case(
                snapshot.id, snapshot.version, changes, expected_stage=from_stage
            )
            if saved:
                exchange = self.store.get_exchange(snapshot.id)
                self._retire_timers(exchange, rule.to_stage, now)
                outcomes = self.executor.run(
                    rule.actions,
                    exchange,
                    ActionContext(
                        from_stage=from_stage,
                        to_stage=rule.to_stage,
                        entered_at=now,
                        acting_party_id=acting_party_id,
                        reason=reason,
                    ),
                )
                action_errors = [o.as_error() for o in outcomes if not o.succeeded]
                entry = self.store.append_audit(
                    exchange_id=snapshot.id,
                    from_stage=from_stage,
                    to_stage=rule.to_stage,
                    outcome=ExchangeTransition.Outcome.SUCCEEDED,
                    is_administrative=rule.is_administrative,
                    performed_by=acting_party_id,
                    performed_at=now,
                    reason=reason,
                    auto_actions_run=[o.action for o in outcomes],
                    action_errors=action_errors,
                    details={'version': exchange.version},
                )

        if not saved:
            self._record_failure(snapshot, to_stage, acting_party_id, reason, now,
                                 outcome=ExchangeTransition.Outcome.CONFLICT,
                                 details={'expected_version': snapshot.version})
            raise VersionConflictError(snapshot.id, snapshot.version)

        logger.info(
            f"Exchange {exchange.code} moved from {from_stage} to {rule.to_stage}"
            f"{' (administrative)' if rule.is_administrative else ''}"
        )

        partial_failure = None
        if action_errors:
            partial_failure = ActionPartialFailure(action_errors)
            logger.warning(f"Exchange {exchange.code}: {partial_failure}")

        return TransitionResult(
            exchange=self.store.get_exchange(snapshot.id),
            audit_entry=entry,
            action_outcomes=outcomes,
            partial_failure=partial_failure,
        )

    def override_deadlines(self, exchange_id, acting_party_id, reason: str,
                           identification_deadline: Optional[date] = None,
                           completion_deadline: Optional[date] = None) -> Exchange:
        """
        Administratively change regulatory deadlines.

        The only way deadlines change after they are first derived. Active
        timers for a changed deadline are restarted against the new date.
        """
        if not (reason or '').strip():
            raise ValidationError("A reason is required to override deadlines")
        if identification_deadline is None and completion_deadline is None:
            raise ValidationError("No deadline given to override")

        now = self.clock()
        snapshot = self.store.load_case(exchange_id, as_of=now.date())

        changes = {}
        override = {}
        new_deadlines = {
            DeadlineKind.IDENTIFICATION: snapshot.identification_deadline,
            DeadlineKind.COMPLETION: snapshot.completion_deadline,
        }
        if identification_deadline is not None:
            changes['identification_deadline'] = identification_deadline
            new_deadlines[DeadlineKind.IDENTIFICATION] = identification_deadline
            override['identification_deadline'] = [
                _iso(snapshot.identification_deadline), identification_deadline.isoformat()
            ]
        if completion_deadline is not None:
            changes['completion_deadline'] = completion_deadline
            new_deadlines[DeadlineKind.COMPLETION] = completion_deadline
            override['completion_deadline'] = [
                _iso(snapshot.completion_deadline), completion_deadline.isoformat()
            ]
        changes['compliance_status'] = compute_compliance_status(
            stage=snapshot.stage,
            identification_deadline=new_deadlines[DeadlineKind.IDENTIFICATION],
            completion_deadline=new_deadlines[DeadlineKind.COMPLETION],
            today=now.date(),
            identification_filed=snapshot.identification_date is not None,
            at_risk_window_days=self.config['AT_RISK_WINDOW_DAYS'],
        )

        with transaction.atomic():
            saved = self.store.save_case(
                snapshot.id, snapshot.version, changes, expected_stage=snapshot.stage
            )
            if saved:
                for kind, deadline in new_deadlines.items():
                    if deadline is not None:
                        self._restart_timer(snapshot.id, kind, deadline, now)
                self.store.append_audit(
                    exchange_id=snapshot.id,
                    from_stage=snapshot.stage,
                    to_stage=snapshot.stage,
                    outcome=ExchangeTransition.Outcome.SUCCEEDED,
                    is_administrative=True,
                    performed_by=acting_party_id,
                    performed_at=now,
                    reason=reason,
                    details={'deadline_override': override, 'version': snapshot.version + 1},
                )

        if not saved:
            self._record_failure(snapshot, snapshot.stage, acting_party_id, reason, now,
                                 outcome=ExchangeTransition.Outcome.CONFLICT,
                                 is_administrative=True,
                                 details={'expected_version': snapshot.version,
                                          'deadline_override': override})
            raise VersionConflictError(snapshot.id, snapshot.version)

        logger.info(f"Deadlines overridden for exchange {snapshot.id}: {override}")
        return self.store.get_exchange(snapshot.id)

    # Internals

    def _today(self) -> date:
        return self.clock().date()

    def _validate(self, snapshot: ExchangeSnapshot, to_stage) -> ValidationResult:
        try:
            to_stage = ExchangeStage(to_stage)
        except ValueError:
            return ValidationResult(
                valid=False,
                from_stage=snapshot.stage,
                to_stage=str(to_stage),
                message=f"Unknown stage: {to_stage}",
            )

        rule = self.table.rule(snapshot.stage, to_stage)
        if rule is None:
            return ValidationResult(
                valid=False,
                from_stage=snapshot.stage,
                to_stage=to_stage.value,
                message=f"Invalid transition from {snapshot.stage} to {to_stage.value}",
            )

        if (
            snapshot.completion_date
            and to_stage in PRE_COMPLETION_STAGES
            and not rule.is_administrative
        ):
            return ValidationResult(
                valid=False,
                from_stage=snapshot.stage,
                to_stage=to_stage.value,
                message="Completed exchanges can only be reopened administratively",
            )

        if rule.is_administrative:
            return ValidationResult(
                valid=True,
                from_stage=snapshot.stage,
                to_stage=to_stage.value,
                message="Administrative transition",
                rule=rule,
            )

        results = evaluate_all(snapshot, rule.conditions, to_stage.value)
        failed = [result.as_dict() for result in results if not result.met]
        return ValidationResult(
            valid=not failed,
            from_stage=snapshot.stage,
            to_stage=to_stage.value,
            failed_conditions=failed,
            conditions_evaluated=[result.condition for result in results],
            message='Transition conditions not met' if failed else 'Transition is valid',
            rule=rule,
        )

    def _stage_entry_changes(self, snapshot: ExchangeSnapshot, rule: TransitionRule,
                             now) -> Dict[str, Any]:
        """Fields written together with the stage when entering ``rule.to_stage``."""
        today = now.date()
        to_stage = rule.to_stage
        changes: Dict[str, Any] = {'stage': to_stage, 'stage_entered_at': now}

        identification_deadline = snapshot.identification_deadline
        completion_deadline = snapshot.completion_deadline

        if (
            to_stage == ExchangeStage.IN_PROGRESS
            and identification_deadline is None
            and completion_deadline is None
        ):
            start_date = snapshot.start_date or today
            identification_deadline = start_date + timedelta(
                days=self.config['IDENTIFICATION_PERIOD_DAYS']
            )
            completion_deadline = start_date + timedelta(
                days=self.config['COMPLETION_PERIOD_DAYS']
            )
            changes.update(
                start_date=start_date,
                identification_deadline=identification_deadline,
                completion_deadline=completion_deadline,
            )

        if to_stage == ExchangeStage.ON_HOLD:
            changes['held_from_stage'] = snapshot.stage
        elif snapshot.stage == ExchangeStage.ON_HOLD:
            changes['held_from_stage'] = ''

        if to_stage == ExchangeStage.COMPLETED:
            changes['completion_date'] = today

        if rule.is_administrative:
            changes.update(completion_date=None, is_archived=False, archived_at=None)

        changes['compliance_status'] = compute_compliance_status(
            stage=to_stage,
            identification_deadline=identification_deadline,
            completion_deadline=completion_deadline,
            today=today,
            identification_filed=snapshot.identification_date is not None,
            at_risk_window_days=self.config['AT_RISK_WINDOW_DAYS'],
        )
        return changes

    def _retire_timers(self, exchange: Exchange, to_stage: str, now) -> int:
        retired = DeadlineTimer.objects.filter(
            exchange=exchange, retired_at__isnull=True
        ).exclude(owning_stage=to_stage).update(retired_at=now, updated_at=now)
        if retired:
            logger.info(f"Retired {retired} deadline timers for exchange {exchange.code}")
        return retired

    def _restart_timer(self, exchange_id, kind, deadline, now):
        active = DeadlineTimer.objects.filter(
            exchange_id=exchange_id, kind=kind, retired_at__isnull=True
        ).exclude(deadline=deadline)
        for timer in active:
            timer.retired_at = now
            timer.save(update_fields=['retired_at', 'updated_at'])
            DeadlineTimer.objects.create(
                exchange_id=exchange_id,
                kind=kind,
                deadline=deadline,
                owning_stage=timer.owning_stage,
                started_at=now,
            )

    def _record_failure(self, snapshot: ExchangeSnapshot, to_stage, acting_party_id,
                        reason, now, failed_conditions=None,
                        outcome=ExchangeTransition.Outcome.REJECTED,
                        is_administrative=False, details=None) -> ExchangeTransition:
        entry = self.store.append_audit(
            exchange_id=snapshot.id,
            from_stage=snapshot.stage,
            to_stage=str(to_stage),
            outcome=outcome,
            is_administrative=is_administrative,
            performed_by=acting_party_id,
            performed_at=now,
            reason=reason or '',
            failed_conditions=failed_conditions or [],
            details=details or {},
        )
        logger.warning(
            f"Transition {snapshot.stage} -> {to_stage} for exchange {snapshot.id} "
            f"{outcome}: {failed_conditions or details}"
        )
        return entry


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None
