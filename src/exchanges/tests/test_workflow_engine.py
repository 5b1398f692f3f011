"""
Tests for the Exchange Workflow Engine.
"""

import uuid
from datetime import datetime, timedelta, timezone as dt_timezone
from unittest.mock import patch

from django.core.exceptions import ValidationError
from django.db import transaction
from django.test import TestCase

from ..models import (
    ComplianceStatus, DeadlineKind, DeadlineTimer, Exchange, ExchangeDocument,
    ExchangeStage, ExchangeTask, ExchangeTransition
)
from ..services.actions import AutoAction
from ..services.conditions import Condition
from ..services.errors import (
    GuardsNotMetError, InvalidTransitionError, NotFoundError, VersionConflictError
)
from ..services.notifications import NotificationEvent
from ..services.workflow_engine import WorkflowEngine, replay_stage
from .factories import (
    DeadlineTimerFactory, DocumentFactory, ExchangeFactory, FailingDocumentGenerator,
    RecordingNotifier, SteppingClock, completion_ready_kwargs, exchange_with_parties,
    identification_ready_kwargs
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=dt_timezone.utc)
TODAY = NOW.date()


class WorkflowEngineTestCase(TestCase):

    def setUp(self):
        self.notifier = RecordingNotifier()
        self.engine = WorkflowEngine(notifier=self.notifier, clock=SteppingClock(NOW))
        self.actor = uuid.uuid4()

    def reload(self, exchange):
        return Exchange.objects.get(pk=exchange.pk)

    def audit(self, exchange, outcome=None):
        entries = ExchangeTransition.objects.filter(exchange=exchange)
        if outcome:
            entries = entries.filter(outcome=outcome)
        return entries


class AvailableTransitionsTests(WorkflowEngineTestCase):
    """Test listing reachable stages."""

    def test_draft_transitions(self):
        exchange = ExchangeFactory()

        with patch('exchanges.services.workflow_engine.evaluate_all') as mock_evaluate:
            available = self.engine.available_transitions(exchange.id)

        mock_evaluate.assert_not_called()
        by_stage = {t.to_stage: t for t in available}
        self.assertEqual(set(by_stage), {ExchangeStage.IN_PROGRESS, ExchangeStage.CANCELLED})
        self.assertEqual(
            by_stage[ExchangeStage.IN_PROGRESS].required_conditions,
            [Condition.HAS_CLIENT_INFO, Condition.HAS_RELINQUISHED_PROPERTY,
             Condition.HAS_COORDINATOR_ASSIGNED],
        )
        self.assertEqual(by_stage[ExchangeStage.CANCELLED].required_conditions, [])

    def test_completed_offers_administrative_reopen(self):
        exchange = ExchangeFactory(stage=ExchangeStage.COMPLETED, completion_date=TODAY)

        available = self.engine.available_transitions(exchange.id)

        self.assertEqual(len(available), 1)
        self.assertEqual(available[0].to_stage, ExchangeStage.DRAFT)
        self.assertTrue(available[0].is_administrative)

    def test_unknown_exchange(self):
        with self.assertRaises(NotFoundError):
            self.engine.available_transitions(uuid.uuid4())


class ValidateTransitionTests(WorkflowEngineTestCase):
    """Test validation without mutation."""

    def test_skipping_a_stage_evaluates_no_guards(self):
        exchange = exchange_with_parties()

        with patch('exchanges.services.workflow_engine.evaluate_all') as mock_evaluate:
            result = self.engine.validate_transition(
                exchange.id, ExchangeStage.IDENTIFICATION_PERIOD
            )

        mock_evaluate.assert_not_called()
        self.assertFalse(result.valid)
        self.assertFalse(result.is_permitted)
        self.assertEqual(result.failed_conditions, [])
        self.assertEqual(result.conditions_evaluated, [])

    def test_unknown_stage_is_invalid(self):
        exchange = ExchangeFactory()

        result = self.engine.validate_transition(exchange.id, 'limbo')

        self.assertFalse(result.valid)
        self.assertIn('Unknown stage', result.message)

    def test_failed_guards_reported(self):
        exchange = ExchangeFactory(coordinator_id=None, relinquished_property_address='')

        result = self.engine.validate_transition(exchange.id, ExchangeStage.IN_PROGRESS)

        self.assertFalse(result.valid)
        self.assertEqual(
            [c['condition'] for c in result.failed_conditions],
            ['has_client_info', 'has_relinquished_property', 'has_coordinator_assigned'],
        )
        self.assertEqual(len(result.conditions_evaluated), 3)

    def test_validation_is_deterministic_and_read_only(self):
        exchange = ExchangeFactory(relinquished_property_address='')

        first = self.engine.validate_transition(exchange.id, ExchangeStage.IN_PROGRESS)
        second = self.engine.validate_transition(exchange.id, ExchangeStage.IN_PROGRESS)

        self.assertEqual(first.failed_conditions, second.failed_conditions)
        stored = self.reload(exchange)
        self.assertEqual(stored.version, 0)
        self.assertEqual(stored.stage, ExchangeStage.DRAFT)
        self.assertFalse(self.audit(exchange).exists())

    def test_valid_transition(self):
        exchange = exchange_with_parties()

        result = self.engine.validate_transition(exchange.id, ExchangeStage.IN_PROGRESS)

        self.assertTrue(result.valid)
        self.assertEqual(result.failed_conditions, [])


class ExecuteTransitionTests(WorkflowEngineTestCase):
    """Test executing stage transitions."""

    def test_draft_to_in_progress(self):
        exchange = exchange_with_parties()

        with self.captureOnCommitCallbacks(execute=True):
            result = self.engine.execute_transition(
                exchange.id, ExchangeStage.IN_PROGRESS, self.actor, 'Client onboarded'
            )

        stored = self.reload(exchange)
        self.assertEqual(stored.stage, ExchangeStage.IN_PROGRESS)
        self.assertEqual(stored.version, 1)
        self.assertEqual(stored.start_date, TODAY)
        self.assertEqual(stored.identification_deadline, TODAY + timedelta(days=45))
        self.assertEqual(stored.completion_deadline, TODAY + timedelta(days=180))
        self.assertEqual(stored.compliance_status, ComplianceStatus.COMPLIANT)
        self.assertIsNotNone(stored.stage_entered_at)

        tasks = ExchangeTask.objects.filter(exchange=exchange, stage=ExchangeStage.IN_PROGRESS)
        self.assertEqual(tasks.count(), 3)
        agreement_task = tasks.get(template_code='execute_exchange_agreement')
        self.assertEqual(agreement_task.due_date, TODAY + timedelta(days=3))
        self.assertEqual(agreement_task.assigned_to, exchange.coordinator_id)

        entry = result.audit_entry
        self.assertEqual(entry.outcome, ExchangeTransition.Outcome.SUCCEEDED)
        self.assertEqual(entry.from_stage, ExchangeStage.DRAFT)
        self.assertEqual(entry.to_stage, ExchangeStage.IN_PROGRESS)
        self.assertEqual(entry.performed_by, self.actor)
        self.assertFalse(entry.is_administrative)
        self.assertIn(AutoAction.SEED_STAGE_WORK_ITEMS, entry.auto_actions_run)
        self.assertEqual(entry.action_errors, [])
        self.assertIsNone(result.partial_failure)

        self.assertEqual(self.notifier.recipients(), [exchange.coordinator_id])
        self.assertEqual(self.notifier.event_kinds, [NotificationEvent.STAGE_CHANGED])

    def test_existing_start_date_drives_deadlines(self):
        start = TODAY - timedelta(days=10)
        exchange = exchange_with_parties(start_date=start)

        self.engine.execute_transition(exchange.id, ExchangeStage.IN_PROGRESS, self.actor)

        stored = self.reload(exchange)
        self.assertEqual(stored.identification_deadline, start + timedelta(days=45))
        self.assertEqual(stored.completion_deadline, start + timedelta(days=180))

    def test_notifications_wait_for_commit(self):
        exchange = exchange_with_parties()

        with self.captureOnCommitCallbacks(execute=False) as callbacks:
            self.engine.execute_transition(exchange.id, ExchangeStage.IN_PROGRESS, self.actor)

        self.assertEqual(self.notifier.sent, [])
        self.assertEqual(len(callbacks), 1)

    def test_skipping_in_progress_is_rejected(self):
        exchange = exchange_with_parties()

        with self.assertRaises(InvalidTransitionError):
            self.engine.execute_transition(
                exchange.id, ExchangeStage.IDENTIFICATION_PERIOD, self.actor
            )

        self.assertEqual(self.reload(exchange).stage, ExchangeStage.DRAFT)
        rejected = self.audit(exchange, ExchangeTransition.Outcome.REJECTED).get()
        self.assertEqual(rejected.to_stage, ExchangeStage.IDENTIFICATION_PERIOD)
        self.assertEqual(rejected.failed_conditions, [])

    def test_rejection_kept_when_caught_inside_caller_transaction(self):
        exchange = exchange_with_parties()

        with transaction.atomic():
            try:
                self.engine.execute_transition(
                    exchange.id, ExchangeStage.IDENTIFICATION_PERIOD, self.actor
                )
            except InvalidTransitionError:
                pass

        self.assertEqual(self.audit(exchange, ExchangeTransition.Outcome.REJECTED).count(), 1)

    def test_rejection_rolled_back_with_caller_transaction(self):
        exchange = exchange_with_parties()

        with self.assertRaises(InvalidTransitionError):
            with transaction.atomic():
                self.engine.execute_transition(
                    exchange.id, ExchangeStage.IDENTIFICATION_PERIOD, self.actor
                )

        self.assertFalse(self.audit(exchange).exists())

    def test_missing_replacement_properties(self):
        exchange = exchange_with_parties(
            stage=ExchangeStage.IDENTIFICATION_PERIOD,
            identification_deadline=TODAY + timedelta(days=10),
            completion_deadline=TODAY + timedelta(days=145),
            identification_date=TODAY - timedelta(days=1),
        )

        with self.assertRaises(GuardsNotMetError) as ctx:
            self.engine.execute_transition(
                exchange.id, ExchangeStage.COMPLETION_PERIOD, self.actor
            )

        self.assertEqual(ctx.exception.condition_names, ['has_replacement_properties'])
        stored = self.reload(exchange)
        self.assertEqual(stored.stage, ExchangeStage.IDENTIFICATION_PERIOD)
        self.assertEqual(stored.version, 0)

        rejected = self.audit(exchange, ExchangeTransition.Outcome.REJECTED).get()
        self.assertEqual(
            [c['condition'] for c in rejected.failed_conditions],
            ['has_replacement_properties'],
        )
        self.assertFalse(ExchangeTask.objects.filter(exchange=exchange).exists())

    def test_unknown_exchange(self):
        with self.assertRaises(NotFoundError):
            self.engine.execute_transition(uuid.uuid4(), ExchangeStage.IN_PROGRESS, self.actor)

    def test_malformed_exchange_id(self):
        with self.assertRaises(NotFoundError):
            self.engine.execute_transition('not-a-uuid', ExchangeStage.IN_PROGRESS, self.actor)

    def test_entering_identification_period_starts_timer(self):
        exchange = exchange_with_parties(
            stage=ExchangeStage.IN_PROGRESS,
            identification_deadline=TODAY + timedelta(days=40),
            completion_deadline=TODAY + timedelta(days=175),
            **identification_ready_kwargs(TODAY)
        )

        with self.captureOnCommitCallbacks(execute=True):
            self.engine.execute_transition(
                exchange.id, ExchangeStage.IDENTIFICATION_PERIOD, self.actor
            )

        timer = DeadlineTimer.objects.get(exchange=exchange, retired_at__isnull=True)
        self.assertEqual(timer.kind, DeadlineKind.IDENTIFICATION)
        self.assertEqual(timer.deadline, TODAY + timedelta(days=40))
        self.assertEqual(timer.owning_stage, ExchangeStage.IDENTIFICATION_PERIOD)
        self.assertEqual(
            ExchangeTask.objects.filter(
                exchange=exchange, stage=ExchangeStage.IDENTIFICATION_PERIOD
            ).count(),
            6,
        )
        self.assertEqual(self.notifier.recipients(), [exchange.client_id])

    def test_compliance_recomputed_on_transition(self):
        exchange = exchange_with_parties(
            stage=ExchangeStage.IN_PROGRESS,
            identification_deadline=TODAY - timedelta(days=5),
            completion_deadline=TODAY + timedelta(days=10),
            identification_date=TODAY - timedelta(days=6),
            **identification_ready_kwargs(TODAY)
        )

        self.engine.execute_transition(exchange.id, ExchangeStage.ON_HOLD, self.actor)

        self.assertEqual(self.reload(exchange).compliance_status, ComplianceStatus.AT_RISK)


class CompletionTests(WorkflowEngineTestCase):
    """Test completing an exchange."""

    def setUp(self):
        super().setUp()
        self.exchange = exchange_with_parties(
            stage=ExchangeStage.COMPLETION_PERIOD, **completion_ready_kwargs(TODAY)
        )
        DocumentFactory(exchange=self.exchange,
                        document_type=ExchangeDocument.DocumentType.EXCHANGE_AGREEMENT)
        DocumentFactory(exchange=self.exchange,
                        document_type=ExchangeDocument.DocumentType.IDENTIFICATION_NOTICE)
        self.timer = DeadlineTimerFactory(
            exchange=self.exchange, deadline=self.exchange.completion_deadline
        )

    def test_complete_exchange(self):
        with self.captureOnCommitCallbacks(execute=True):
            result = self.engine.execute_transition(
                self.exchange.id, ExchangeStage.COMPLETED, self.actor, 'All closings recorded'
            )

        stored = result.exchange
        self.assertEqual(stored.stage, ExchangeStage.COMPLETED)
        self.assertEqual(stored.completion_date, TODAY)
        self.assertEqual(stored.compliance_status, ComplianceStatus.COMPLIANT)
        self.assertTrue(stored.is_archived)
        self.assertIsNotNone(stored.archived_at)
        # One bump for the stage change, one for archiving
        self.assertEqual(stored.version, 2)
        self.assertEqual(result.audit_entry.details['version'], 2)

        certificate = ExchangeDocument.objects.get(
            exchange=self.exchange,
            document_type=ExchangeDocument.DocumentType.COMPLETION_CERTIFICATE,
        )
        self.assertTrue(certificate.is_generated)
        self.assertEqual(certificate.generated_by, self.actor)

        self.timer = DeadlineTimer.objects.get(pk=self.timer.pk)
        self.assertIsNotNone(self.timer.retired_at)

        self.assertEqual(
            set(self.notifier.recipients(NotificationEvent.EXCHANGE_COMPLETED)),
            {self.exchange.client_id, self.exchange.coordinator_id},
        )
        self.assertEqual(
            result.actions_run,
            ['seed_stage_work_items', 'generate_completion_certificate',
             'archive_exchange', 'notify_completion'],
        )

    def test_failed_action_is_reported_not_fatal(self):
        engine = WorkflowEngine(
            notifier=self.notifier,
            document_generator=FailingDocumentGenerator(),
            clock=SteppingClock(NOW),
        )

        with self.captureOnCommitCallbacks(execute=True):
            result = engine.execute_transition(
                self.exchange.id, ExchangeStage.COMPLETED, self.actor
            )

        self.assertEqual(result.exchange.stage, ExchangeStage.COMPLETED)
        self.assertIsNotNone(result.partial_failure)
        self.assertEqual(result.partial_failure.failed_actions,
                         ['generate_completion_certificate'])
        self.assertFalse(result.partial_failure.retryable)

        # Later actions still ran
        self.assertTrue(result.exchange.is_archived)
        self.assertTrue(self.notifier.sent)

        entry = ExchangeTransition.objects.get(pk=result.audit_entry.pk)
        self.assertEqual(entry.outcome, ExchangeTransition.Outcome.SUCCEEDED)
        self.assertEqual(entry.action_errors[0]['action'], 'generate_completion_certificate')
        self.assertIn('Document service unavailable', entry.action_errors[0]['error'])

    def test_missing_documents_block_completion(self):
        ExchangeDocument.objects.filter(
            exchange=self.exchange,
            document_type=ExchangeDocument.DocumentType.IDENTIFICATION_NOTICE,
        ).delete()

        with self.assertRaises(GuardsNotMetError) as ctx:
            self.engine.execute_transition(self.exchange.id, ExchangeStage.COMPLETED, self.actor)

        self.assertEqual(ctx.exception.condition_names, ['documents_complete'])


class AdministrativeReopenTests(WorkflowEngineTestCase):
    """Test reopening terminal exchanges."""

    def setUp(self):
        super().setUp()
        self.exchange = ExchangeFactory(
            stage=ExchangeStage.COMPLETED,
            completion_date=TODAY - timedelta(days=3),
            is_archived=True,
            relinquished_property_address='',
        )

    def test_reopen_completed_exchange(self):
        result = self.engine.execute_transition(
            self.exchange.id, ExchangeStage.DRAFT, self.actor, 'Closing statement was wrong'
        )

        stored = result.exchange
        self.assertEqual(stored.stage, ExchangeStage.DRAFT)
        self.assertIsNone(stored.completion_date)
        self.assertFalse(stored.is_archived)

        entry = result.audit_entry
        self.assertTrue(entry.is_administrative)
        self.assertEqual(entry.reason, 'Closing statement was wrong')
        self.assertEqual(entry.failed_conditions, [])

    def test_reopen_requires_reason(self):
        with self.assertRaises(InvalidTransitionError):
            self.engine.execute_transition(self.exchange.id, ExchangeStage.DRAFT, self.actor, '  ')

        self.assertEqual(self.reload(self.exchange).stage, ExchangeStage.COMPLETED)
        rejected = self.audit(self.exchange, ExchangeTransition.Outcome.REJECTED).get()
        self.assertTrue(rejected.is_administrative)

    def test_completed_exchange_cannot_skip_back(self):
        exchange = ExchangeFactory(
            stage=ExchangeStage.COMPLETION_PERIOD,
            completion_date=TODAY,
        )

        with self.assertRaises(InvalidTransitionError) as ctx:
            self.engine.execute_transition(exchange.id, ExchangeStage.ON_HOLD, self.actor)

        self.assertIn('reopened administratively', str(ctx.exception))


class HoldAndResumeTests(WorkflowEngineTestCase):
    """Test putting an exchange on hold and resuming it."""

    def setUp(self):
        super().setUp()
        self.exchange = exchange_with_parties(
            stage=ExchangeStage.IDENTIFICATION_PERIOD,
            identification_deadline=TODAY + timedelta(days=20),
            completion_deadline=TODAY + timedelta(days=155),
        )
        self.timer = DeadlineTimerFactory(
            exchange=self.exchange,
            kind=DeadlineKind.IDENTIFICATION,
            deadline=self.exchange.identification_deadline,
            owning_stage=ExchangeStage.IDENTIFICATION_PERIOD,
        )

    def test_hold_records_stage_and_retires_timer(self):
        self.engine.execute_transition(self.exchange.id, ExchangeStage.ON_HOLD, self.actor,
                                       'Awaiting lender')

        stored = self.reload(self.exchange)
        self.assertEqual(stored.stage, ExchangeStage.ON_HOLD)
        self.assertEqual(stored.held_from_stage, ExchangeStage.IDENTIFICATION_PERIOD)
        self.assertIsNotNone(DeadlineTimer.objects.get(pk=self.timer.pk).retired_at)

    def test_resume_must_return_to_held_stage(self):
        self.engine.execute_transition(self.exchange.id, ExchangeStage.ON_HOLD, self.actor)

        with self.assertRaises(GuardsNotMetError) as ctx:
            self.engine.execute_transition(
                self.exchange.id, ExchangeStage.COMPLETION_PERIOD, self.actor
            )
        self.assertEqual(ctx.exception.condition_names, ['resumes_held_stage'])

        self.engine.execute_transition(
            self.exchange.id, ExchangeStage.IDENTIFICATION_PERIOD, self.actor
        )

        stored = self.reload(self.exchange)
        self.assertEqual(stored.stage, ExchangeStage.IDENTIFICATION_PERIOD)
        self.assertEqual(stored.held_from_stage, '')
        active = DeadlineTimer.objects.get(exchange=self.exchange, retired_at__isnull=True)
        self.assertEqual(active.deadline, self.exchange.identification_deadline)


class ConcurrencyTests(WorkflowEngineTestCase):
    """Two writers racing on the same exchange."""

    def test_stale_writer_gets_version_conflict(self):
        exchange = exchange_with_parties()
        stale = self.engine.store.load_case(exchange.id, as_of=TODAY)

        self.engine.execute_transition(exchange.id, ExchangeStage.IN_PROGRESS, self.actor)

        with patch.object(self.engine.store, 'load_case', return_value=stale):
            with self.assertRaises(VersionConflictError) as ctx:
                self.engine.execute_transition(
                    exchange.id, ExchangeStage.IN_PROGRESS, uuid.uuid4()
                )

        self.assertTrue(ctx.exception.retryable)
        stored = self.reload(exchange)
        self.assertEqual(stored.stage, ExchangeStage.IN_PROGRESS)
        self.assertEqual(stored.version, 1)
        self.assertEqual(self.audit(exchange, ExchangeTransition.Outcome.SUCCEEDED).count(), 1)
        self.assertEqual(self.audit(exchange, ExchangeTransition.Outcome.CONFLICT).count(), 1)
        self.assertEqual(
            ExchangeTask.objects.filter(exchange=exchange, stage=ExchangeStage.IN_PROGRESS).count(),
            3,
        )

    def test_racing_cancel_and_advance(self):
        exchange = exchange_with_parties()
        stale = self.engine.store.load_case(exchange.id, as_of=TODAY)

        self.engine.execute_transition(exchange.id, ExchangeStage.CANCELLED, self.actor)

        with patch.object(self.engine.store, 'load_case', return_value=stale):
            with self.assertRaises(VersionConflictError):
                self.engine.execute_transition(exchange.id, ExchangeStage.IN_PROGRESS, self.actor)

        self.assertEqual(self.reload(exchange).stage, ExchangeStage.CANCELLED)


class TimelineTests(WorkflowEngineTestCase):
    """Test the audit timeline and replay."""

    def test_replay_reconstructs_stage(self):
        exchange = exchange_with_parties()
        engine = self.engine

        engine.execute_transition(exchange.id, ExchangeStage.IN_PROGRESS, self.actor)
        with self.assertRaises(GuardsNotMetError):
            engine.execute_transition(exchange.id, ExchangeStage.IDENTIFICATION_PERIOD, self.actor)
        engine.execute_transition(exchange.id, ExchangeStage.ON_HOLD, self.actor)
        engine.execute_transition(exchange.id, ExchangeStage.IN_PROGRESS, self.actor)
        engine.execute_transition(exchange.id, ExchangeStage.CANCELLED, self.actor)
        engine.execute_transition(exchange.id, ExchangeStage.DRAFT, self.actor, 'Cancelled in error')

        timeline = engine.get_timeline(exchange.id)

        self.assertEqual(len(timeline), 6)
        self.assertEqual(
            [entry.performed_at for entry in timeline],
            sorted(entry.performed_at for entry in timeline),
        )
        self.assertEqual(replay_stage(timeline), self.reload(exchange).stage)
        self.assertEqual(self.reload(exchange).stage, ExchangeStage.DRAFT)

    def test_replay_detects_gap(self):
        exchange = exchange_with_parties()
        self.engine.execute_transition(exchange.id, ExchangeStage.IN_PROGRESS, self.actor)
        self.engine.execute_transition(exchange.id, ExchangeStage.ON_HOLD, self.actor)

        timeline = self.engine.get_timeline(exchange.id)

        with self.assertRaises(ValueError):
            replay_stage(timeline[1:])

    def test_timeline_unknown_exchange(self):
        with self.assertRaises(NotFoundError):
            self.engine.get_timeline(uuid.uuid4())


class WorkflowSummaryTests(WorkflowEngineTestCase):

    def test_summary(self):
        exchange = exchange_with_parties()
        self.engine.execute_transition(exchange.id, ExchangeStage.IN_PROGRESS, self.actor)

        summary = self.engine.get_workflow_summary(exchange.id)

        self.assertEqual(summary['exchange']['stage'], ExchangeStage.IN_PROGRESS)
        self.assertEqual([d['type'] for d in summary['deadlines']],
                         ['identification', 'completion'])
        self.assertEqual(summary['deadlines'][0]['days'], 45)
        self.assertEqual(len(summary['workflow']['open_tasks']), 3)
        self.assertIn(
            ExchangeStage.IDENTIFICATION_PERIOD,
            [t.to_stage for t in summary['workflow']['available_transitions']],
        )
        self.assertEqual(len(summary['timeline']), 1)


class OverrideDeadlinesTests(WorkflowEngineTestCase):
    """Test administrative deadline overrides."""

    def setUp(self):
        super().setUp()
        self.exchange = exchange_with_parties(
            stage=ExchangeStage.COMPLETION_PERIOD,
            identification_deadline=TODAY - timedelta(days=100),
            identification_date=TODAY - timedelta(days=110),
            completion_deadline=TODAY + timedelta(days=20),
            compliance_status=ComplianceStatus.AT_RISK,
        )
        self.timer = DeadlineTimerFactory(
            exchange=self.exchange, deadline=self.exchange.completion_deadline
        )

    def test_override_completion_deadline(self):
        new_deadline = TODAY + timedelta(days=90)

        exchange = self.engine.override_deadlines(
            self.exchange.id, self.actor, 'Disaster relief extension',
            completion_deadline=new_deadline,
        )

        self.assertEqual(exchange.completion_deadline, new_deadline)
        self.assertEqual(exchange.compliance_status, ComplianceStatus.COMPLIANT)
        self.assertEqual(exchange.stage, ExchangeStage.COMPLETION_PERIOD)
        self.assertEqual(exchange.version, 1)

        self.assertIsNotNone(DeadlineTimer.objects.get(pk=self.timer.pk).retired_at)
        active = DeadlineTimer.objects.get(exchange=self.exchange, retired_at__isnull=True)
        self.assertEqual(active.deadline, new_deadline)
        self.assertEqual(active.owning_stage, ExchangeStage.COMPLETION_PERIOD)

        entry = self.audit(self.exchange).get()
        self.assertTrue(entry.is_administrative)
        self.assertEqual(entry.from_stage, entry.to_stage)
        self.assertEqual(
            entry.details['deadline_override']['completion_deadline'][1],
            new_deadline.isoformat(),
        )

        # Overrides do not disturb stage replay
        self.assertEqual(
            replay_stage(self.engine.get_timeline(self.exchange.id),
                         initial_stage=ExchangeStage.COMPLETION_PERIOD),
            ExchangeStage.COMPLETION_PERIOD,
        )

    def test_override_requires_reason(self):
        with self.assertRaises(ValidationError):
            self.engine.override_deadlines(
                self.exchange.id, self.actor, '',
                completion_deadline=TODAY + timedelta(days=90),
            )
        self.assertFalse(self.audit(self.exchange).exists())

    def test_override_requires_a_deadline(self):
        with self.assertRaises(ValidationError):
            self.engine.override_deadlines(self.exchange.id, self.actor, 'Extension')
