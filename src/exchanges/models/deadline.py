"""
Deadline timers and the reminder markers that keep them idempotent.
"""

from django.db import models
from django.utils import timezone

from .base import TimestampedModel, UUIDModel
from .exchange import ExchangeStage


class DeadlineKind(models.TextChoices):
    IDENTIFICATION = 'identification', '45-Day Identification'
    COMPLETION = 'completion', '180-Day Completion'


class DeadlineTimer(TimestampedModel, UUIDModel):
    """
    An active regulatory deadline for an exchange.

    Retired when the exchange leaves the owning stage or reaches a
    terminal stage.
    """

    exchange = models.ForeignKey(
        'Exchange',
        on_delete=models.CASCADE,
        related_name='deadline_timers'
    )
    kind = models.CharField(max_length=20, choices=DeadlineKind.choices)
    deadline = models.DateField()
    owning_stage = models.CharField(max_length=30, choices=ExchangeStage.choices)
    started_at = models.DateTimeField(default=timezone.now)
    retired_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'exchange_deadline_timers'
        ordering = ['deadline']
        indexes = [
            models.Index(fields=['retired_at', 'deadline']),
        ]

    def __str__(self):
        return f"{self.exchange_id} {self.kind} due {self.deadline}"

    @property
    def is_active(self):
        return self.retired_at is None


class DeadlineReminder(UUIDModel):
    """
    Marker that a reminder threshold has fired for a deadline.

    The unique constraint is what guarantees each threshold fires at most
    once per exchange and deadline, across restarts and overlapping scans.
    """

    OVERDUE = 'overdue'

    exchange = models.ForeignKey(
        'Exchange',
        on_delete=models.CASCADE,
        related_name='deadline_reminders'
    )
    kind = models.CharField(max_length=20, choices=DeadlineKind.choices)
    deadline = models.DateField()
    marker = models.CharField(
        max_length=20,
        help_text="Threshold label such as '7d', or 'overdue'"
    )
    fired_at = models.DateTimeField(default=timezone.now)
    suppressed = models.BooleanField(
        default=False,
        help_text="Claimed together with a tighter threshold and not sent"
    )

    class Meta:
        db_table = 'exchange_deadline_reminders'
        ordering = ['fired_at']
        constraints = [
            models.UniqueConstraint(
                fields=['exchange', 'kind', 'deadline', 'marker'],
                name='unique_deadline_reminder_marker',
            ),
        ]

    def __str__(self):
        return f"{self.exchange_id} {self.kind} {self.marker}"

    @staticmethod
    def marker_for(threshold_days):
        return f"{threshold_days}d"
