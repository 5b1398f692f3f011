"""
Audit trail of exchange stage transitions.
"""

from django.core.exceptions import ValidationError
from django.db import models
from django.utils import timezone

from .base import UUIDModel
from .exchange import ExchangeStage


class ExchangeTransition(UUIDModel):
    """
    Immutable record of one transition attempt, successful or not.

    The ordered successful entries of an exchange replay to its current
    stage. Rows are append-only: updates and deletes are refused.
    """

    class Outcome(models.TextChoices):
        SUCCEEDED = 'succeeded', 'Succeeded'
        REJECTED = 'rejected', 'Rejected'
        CONFLICT = 'conflict', 'Version Conflict'

    exchange = models.ForeignKey(
        'Exchange',
        on_delete=models.PROTECT,
        related_name='transitions'
    )
    from_stage = models.CharField(max_length=30, choices=ExchangeStage.choices)
    to_stage = models.CharField(max_length=30, choices=ExchangeStage.choices)
    outcome = models.CharField(max_length=20, choices=Outcome.choices)
    is_administrative = models.BooleanField(
        default=False,
        help_text="Reopen or override that bypassed normal guards"
    )

    # Who and when
    performed_by = models.UUIDField(null=True, blank=True)
    performed_at = models.DateTimeField(default=timezone.now, db_index=True)
    reason = models.TextField(blank=True)

    # What ran
    auto_actions_run = models.JSONField(default=list, blank=True)
    action_errors = models.JSONField(
        default=list,
        blank=True,
        help_text="List of {action, error} for failed auto-actions"
    )
    failed_conditions = models.JSONField(
        default=list,
        blank=True,
        help_text="List of {condition, message} for unmet guards"
    )
    details = models.JSONField(default=dict, blank=True)

    class Meta:
        db_table = 'exchange_transitions'
        verbose_name = 'Exchange Transition'
        verbose_name_plural = 'Exchange Transitions'
        ordering = ['performed_at']
        indexes = [
            models.Index(fields=['exchange', 'performed_at']),
            models.Index(fields=['exchange', 'outcome']),
        ]

    def __str__(self):
        return f"{self.exchange_id}: {self.from_stage} → {self.to_stage} ({self.outcome})"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValidationError("Exchange transitions are append-only")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError("Exchange transitions cannot be deleted")

    @property
    def succeeded(self):
        return self.outcome == self.Outcome.SUCCEEDED
