"""
Case store: the persistence boundary of the exchange workflow.

The workflow engine and the deadline scheduler see an exchange only as an
immutable ``ExchangeSnapshot`` and write it back only through a versioned
compare-and-swap update, so that concurrent writers can never clobber each
other's stage change.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Protocol, Tuple
from uuid import UUID

from django.core.exceptions import ValidationError
from django.db.models import F, Q
from django.utils import timezone

from ..models import (
    Exchange, ExchangeParticipant, ExchangeTransition, TERMINAL_STAGES
)
from .errors import NotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PartyInfo:
    """Contact details of an exchange participant."""
    party_id: UUID
    role: str
    first_name: str = ''
    last_name: str = ''
    email: str = ''

    @property
    def is_complete(self) -> bool:
        return bool(self.first_name and self.last_name and self.email)


@dataclass(frozen=True)
class ExchangeSnapshot:
    """
    Read-only view of an exchange at a point in time.

    Everything a guard may consult is part of this snapshot; ``as_of`` is
    the date guards treat as today.
    """
    id: UUID
    version: int
    stage: str
    name: str = ''
    start_date: Optional[date] = None
    identification_date: Optional[date] = None
    identification_deadline: Optional[date] = None
    completion_deadline: Optional[date] = None
    completion_date: Optional[date] = None
    funds_transferred_date: Optional[date] = None
    relinquished_property_address: str = ''
    relinquished_closing_date: Optional[date] = None
    exchange_value: Optional[Decimal] = None
    coordinator_id: Optional[UUID] = None
    client_id: Optional[UUID] = None
    held_from_stage: str = ''
    compliance_status: str = ''
    replacement_properties: Tuple[Dict[str, Any], ...] = ()
    document_types: FrozenSet[str] = frozenset()
    participants: Tuple[PartyInfo, ...] = ()
    as_of: date = field(default_factory=lambda: timezone.now().date())

    def participant(self, role: str, party_id: Optional[UUID] = None) -> Optional[PartyInfo]:
        for party in self.participants:
            if party.role != role:
                continue
            if party_id is None or party.party_id == party_id:
                return party
        return None

    @property
    def client(self) -> Optional[PartyInfo]:
        if self.client_id is None:
            return None
        return self.participant(ExchangeParticipant.Role.CLIENT, self.client_id)

    @property
    def coordinator(self) -> Optional[PartyInfo]:
        if self.coordinator_id is None:
            return None
        return (
            self.participant(ExchangeParticipant.Role.COORDINATOR, self.coordinator_id)
            or PartyInfo(party_id=self.coordinator_id, role=ExchangeParticipant.Role.COORDINATOR)
        )


class CaseStore(Protocol):
    """Persistence operations the workflow depends on."""

    def load_case(self, exchange_id) -> ExchangeSnapshot:
        ...

    def save_case(self, exchange_id, expected_version: int, changes: Dict[str, Any],
                  expected_stage: Optional[str] = None) -> bool:
        ...

    def append_audit(self, **entry) -> ExchangeTransition:
        ...

    def list_audit_for_case(self, exchange_id) -> List[ExchangeTransition]:
        ...


class DjangoCaseStore:
    """Case store backed by the Django ORM."""

    def get_exchange(self, exchange_id) -> Exchange:
        try:
            return Exchange.objects.get(pk=exchange_id)
        except (Exchange.DoesNotExist, ValidationError, ValueError):
            raise NotFoundError(exchange_id)

    def load_case(self, exchange_id, as_of: Optional[date] = None) -> ExchangeSnapshot:
        try:
            exchange = Exchange.objects.prefetch_related(
                'participants', 'documents'
            ).get(pk=exchange_id)
        except (Exchange.DoesNotExist, ValidationError, ValueError):
            raise NotFoundError(exchange_id)
        return self.snapshot_of(exchange, as_of=as_of)

    @staticmethod
    def snapshot_of(exchange: Exchange, as_of: Optional[date] = None) -> ExchangeSnapshot:
        participants = tuple(
            PartyInfo(
                party_id=p.party_id,
                role=p.role,
                first_name=p.first_name,
                last_name=p.last_name,
                email=p.email,
            )
            for p in exchange.participants.all()
        )
        return ExchangeSnapshot(
            id=exchange.id,
            version=exchange.version,
            stage=exchange.stage,
            name=exchange.name,
            start_date=exchange.start_date,
            identification_date=exchange.identification_date,
            identification_deadline=exchange.identification_deadline,
            completion_deadline=exchange.completion_deadline,
            completion_date=exchange.completion_date,
            funds_transferred_date=exchange.funds_transferred_date,
            relinquished_property_address=exchange.relinquished_property_address,
            relinquished_closing_date=exchange.relinquished_closing_date,
            exchange_value=exchange.exchange_value,
            coordinator_id=exchange.coordinator_id,
            client_id=exchange.client_id,
            held_from_stage=exchange.held_from_stage,
            compliance_status=exchange.compliance_status,
            replacement_properties=tuple(exchange.replacement_properties or ()),
            document_types=frozenset(d.document_type for d in exchange.documents.all()),
            participants=participants,
            as_of=as_of or timezone.now().date(),
        )

    def save_case(self, exchange_id, expected_version: int, changes: Dict[str, Any],
                  expected_stage: Optional[str] = None) -> bool:
        """
        Apply ``changes`` only if the stored version still matches.

        Returns False on a version (or stage) mismatch; nothing is written
        in that case.
        """
        filters = {'pk': exchange_id, 'version': expected_version}
        if expected_stage is not None:
            filters['stage'] = expected_stage

        updated = Exchange.objects.filter(**filters).update(
            version=F('version') + 1,
            updated_at=timezone.now(),
            **changes
        )
        if not updated:
            logger.warning(
                f"Versioned update rejected for exchange {exchange_id} "
                f"(expected version {expected_version})"
            )
        return updated == 1

    def update_compliance(self, exchange_id, expected_version: int, status: str) -> bool:
        return self.save_case(exchange_id, expected_version, {'compliance_status': status})

    def append_audit(self, **entry) -> ExchangeTransition:
        return ExchangeTransition.objects.create(**entry)

    def list_audit_for_case(self, exchange_id) -> List[ExchangeTransition]:
        return list(
            ExchangeTransition.objects.filter(exchange_id=exchange_id).order_by('performed_at')
        )

    def deadline_candidates(self) -> Iterable[Exchange]:
        """Non-terminal exchanges that carry a regulatory deadline."""
        return Exchange.objects.exclude(
            stage__in=list(TERMINAL_STAGES)
        ).filter(
            Q(identification_deadline__isnull=False) | Q(completion_deadline__isnull=False)
        ).order_by('completion_deadline')
