"""
Core exchange model for 1031 like-kind exchange tracking.
"""

from decimal import Decimal

from django.core.validators import MinValueValidator
from django.db import models
from django.utils import timezone
from django_fsm import FSMField

from .base import TimestampedModel, UUIDModel


class ExchangeStage(models.TextChoices):
    DRAFT = 'draft', 'Draft'
    IN_PROGRESS = 'in_progress', 'In Progress'
    IDENTIFICATION_PERIOD = 'identification_period', '45-Day Identification Period'
    COMPLETION_PERIOD = 'completion_period', '180-Day Completion Period'
    ON_HOLD = 'on_hold', 'On Hold'
    COMPLETED = 'completed', 'Completed'
    CANCELLED = 'cancelled', 'Cancelled'


TERMINAL_STAGES = frozenset({ExchangeStage.COMPLETED, ExchangeStage.CANCELLED})

PRE_COMPLETION_STAGES = frozenset({
    ExchangeStage.DRAFT,
    ExchangeStage.IN_PROGRESS,
    ExchangeStage.IDENTIFICATION_PERIOD,
    ExchangeStage.COMPLETION_PERIOD,
    ExchangeStage.ON_HOLD,
})


class ComplianceStatus(models.TextChoices):
    COMPLIANT = 'compliant', 'Compliant'
    AT_RISK = 'at_risk', 'At Risk'
    NON_COMPLIANT = 'non_compliant', 'Non-Compliant'
    PENDING_REVIEW = 'pending_review', 'Pending Review'


class Exchange(TimestampedModel, UUIDModel):
    """
    A 1031 exchange under management.

    The stage column is protected: it can only be changed through the
    workflow engine, which writes it with a versioned queryset update.
    """

    # Basic Information
    name = models.CharField(max_length=200)
    code = models.CharField(
        max_length=50,
        unique=True,
        blank=True,
        help_text="Unique exchange code (e.g., EX-2024-001)"
    )
    description = models.TextField(blank=True)

    # Workflow
    stage = FSMField(
        max_length=30,
        choices=ExchangeStage.choices,
        default=ExchangeStage.DRAFT,
        protected=True
    )
    version = models.PositiveIntegerField(
        default=0,
        help_text="Incremented on every workflow write"
    )
    stage_entered_at = models.DateTimeField(null=True, blank=True)
    held_from_stage = models.CharField(
        max_length=30,
        choices=ExchangeStage.choices,
        blank=True,
        help_text="Stage the exchange was in when put on hold"
    )
    compliance_status = models.CharField(
        max_length=20,
        choices=ComplianceStatus.choices,
        default=ComplianceStatus.PENDING_REVIEW
    )

    # Parties (external records)
    coordinator_id = models.UUIDField(null=True, blank=True)
    client_id = models.UUIDField(null=True, blank=True)

    # Dates
    start_date = models.DateField(null=True, blank=True)
    identification_deadline = models.DateField(
        null=True,
        blank=True,
        help_text="45-day identification deadline"
    )
    completion_deadline = models.DateField(
        null=True,
        blank=True,
        help_text="180-day completion deadline"
    )
    identification_date = models.DateField(
        null=True,
        blank=True,
        help_text="When the identification notice was filed"
    )
    completion_date = models.DateField(null=True, blank=True)
    funds_transferred_date = models.DateField(null=True, blank=True)

    # Relinquished property
    relinquished_property_address = models.CharField(max_length=500, blank=True)
    relinquished_closing_date = models.DateField(null=True, blank=True)
    relinquished_sale_price = models.DecimalField(
        max_digits=15,
        decimal_places=2,
        null=True,
        blank=True,
        validators=[MinValueValidator(Decimal('0.00'))]
    )

    # Replacement properties
    replacement_properties = models.JSONField(
        default=list,
        blank=True,
        help_text="List of {address, value, closing_date} entries"
    )

    # Financial Information
    exchange_value = models.DecimalField(
        max_digits=15,
        decimal_places=2,
        null=True,
        blank=True,
        validators=[MinValueValidator(Decimal('0.00'))]
    )
    replacement_value = models.DecimalField(
        max_digits=15,
        decimal_places=2,
        null=True,
        blank=True,
        validators=[MinValueValidator(Decimal('0.00'))]
    )

    # Archive
    is_archived = models.BooleanField(default=False)
    archived_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'exchanges'
        verbose_name = 'Exchange'
        verbose_name_plural = 'Exchanges'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['stage']),
            models.Index(fields=['compliance_status']),
            models.Index(fields=['completion_deadline', 'stage']),
            models.Index(fields=['coordinator_id', 'stage']),
        ]

    def save(self, *args, **kwargs):
        """Override save to generate code if not provided"""
        if not self.code:
            year = timezone.now().year
            prefix = f"EX-{year}"
            existing_codes = Exchange.objects.filter(
                code__startswith=prefix
            ).values_list('code', flat=True)

            sequence_numbers = []
            for code in existing_codes:
                try:
                    sequence_numbers.append(int(code.split('-')[-1]))
                except (ValueError, IndexError):
                    continue

            next_seq = max(sequence_numbers, default=0) + 1
            self.code = f"{prefix}-{next_seq:03d}"

        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.code}: {self.name}"

    @property
    def is_terminal(self):
        return self.stage in TERMINAL_STAGES

    def get_days_to_deadlines(self, today=None):
        """Days remaining to each set deadline, negative once passed."""
        today = today or timezone.now().date()
        deadlines = []
        for kind, deadline in (
            ('identification', self.identification_deadline),
            ('completion', self.completion_deadline),
        ):
            if deadline:
                days = (deadline - today).days
                deadlines.append({
                    'type': kind,
                    'date': deadline,
                    'days': days,
                    'passed': days < 0,
                })
        return deadlines


class ExchangeParticipant(TimestampedModel, UUIDModel):
    """
    A party to an exchange, as seen by the workflow.

    Mirrors the contact fields of the external party record that guards and
    notifications need.
    """

    class Role(models.TextChoices):
        CLIENT = 'client', 'Client'
        COORDINATOR = 'coordinator', 'Coordinator'
        INTERMEDIARY = 'intermediary', 'Qualified Intermediary'
        ATTORNEY = 'attorney', 'Attorney'
        OTHER = 'other', 'Other'

    exchange = models.ForeignKey(
        Exchange,
        on_delete=models.CASCADE,
        related_name='participants'
    )
    role = models.CharField(max_length=20, choices=Role.choices)
    party_id = models.UUIDField()
    first_name = models.CharField(max_length=100, blank=True)
    last_name = models.CharField(max_length=100, blank=True)
    email = models.EmailField(blank=True)

    class Meta:
        db_table = 'exchange_participants'
        ordering = ['exchange', 'role']
        unique_together = [['exchange', 'party_id', 'role']]

    def __str__(self):
        return f"{self.get_role_display()}: {self.first_name} {self.last_name}".strip()


class ExchangeDocument(TimestampedModel, UUIDModel):
    """Record that a document of a given type exists for an exchange."""

    class DocumentType(models.TextChoices):
        EXCHANGE_AGREEMENT = 'exchange_agreement', 'Exchange Agreement'
        IDENTIFICATION_NOTICE = 'identification_notice', 'Identification Notice'
        CLOSING_STATEMENT = 'closing_statement', 'Closing Statement'
        COMPLETION_CERTIFICATE = 'completion_certificate', 'Completion Certificate'
        OTHER = 'other', 'Other'

    exchange = models.ForeignKey(
        Exchange,
        on_delete=models.CASCADE,
        related_name='documents'
    )
    document_type = models.CharField(max_length=30, choices=DocumentType.choices)
    title = models.CharField(max_length=200, blank=True)
    is_generated = models.BooleanField(default=False)
    generated_by = models.UUIDField(null=True, blank=True)

    class Meta:
        db_table = 'exchange_documents'
        ordering = ['exchange', 'created_at']
        indexes = [
            models.Index(fields=['exchange', 'document_type']),
        ]

    def __str__(self):
        return f"{self.exchange.code} - {self.get_document_type_display()}"
