"""
Work items generated for exchange stages.
"""

from django.db import models
from django.utils import timezone

from .base import TimestampedModel, UUIDModel
from .exchange import ExchangeStage


class ExchangeTask(TimestampedModel, UUIDModel):
    """
    A unit of work on an exchange.

    Stage tasks are seeded by the workflow when an exchange enters a stage;
    tasks are never deleted, only completed or abandoned.
    """

    class Status(models.TextChoices):
        PENDING = 'pending', 'Pending'
        IN_PROGRESS = 'in_progress', 'In Progress'
        COMPLETED = 'completed', 'Completed'
        ABANDONED = 'abandoned', 'Abandoned'

    class Priority(models.TextChoices):
        LOW = 'low', 'Low'
        MEDIUM = 'medium', 'Medium'
        HIGH = 'high', 'High'
        URGENT = 'urgent', 'Urgent'

    exchange = models.ForeignKey(
        'Exchange',
        on_delete=models.CASCADE,
        related_name='tasks'
    )
    title = models.CharField(max_length=200)
    description = models.TextField(blank=True)
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PENDING
    )
    priority = models.CharField(
        max_length=20,
        choices=Priority.choices,
        default=Priority.MEDIUM
    )
    due_date = models.DateField()

    # Origin
    stage = models.CharField(
        max_length=30,
        choices=ExchangeStage.choices,
        blank=True,
        help_text="Stage this task was seeded for"
    )
    template_code = models.CharField(max_length=100, blank=True)

    # Assignment
    assigned_to = models.UUIDField(null=True, blank=True)
    created_by = models.UUIDField(null=True, blank=True)

    completed_date = models.DateField(null=True, blank=True)
    completion_notes = models.TextField(blank=True)

    class Meta:
        db_table = 'exchange_tasks'
        verbose_name = 'Exchange Task'
        verbose_name_plural = 'Exchange Tasks'
        ordering = ['exchange', 'due_date']
        indexes = [
            models.Index(fields=['exchange', 'status']),
            models.Index(fields=['due_date', 'status']),
        ]

    def __str__(self):
        return f"{self.exchange.code} - {self.title}"

    @property
    def is_open(self):
        return self.status in [self.Status.PENDING, self.Status.IN_PROGRESS]

    @property
    def is_overdue(self):
        if not self.is_open:
            return False
        return timezone.now().date() > self.due_date

    def complete(self, notes=''):
        """Mark task as completed"""
        self.status = self.Status.COMPLETED
        self.completed_date = timezone.now().date()
        self.completion_notes = notes
        self.save()

    def abandon(self, notes=''):
        self.status = self.Status.ABANDONED
        self.completion_notes = notes
        self.save()
