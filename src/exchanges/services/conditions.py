"""
Guard conditions for exchange stage transitions.

Each condition is a pure predicate over an ``ExchangeSnapshot``. The
evaluator never touches the database: anything a guard needs must already
be in the snapshot.
"""

from dataclasses import dataclass
from datetime import date
from typing import Callable, Dict, Iterable, List, Tuple, Union

from django.core.exceptions import ImproperlyConfigured
from django.db import models

from ..models import ExchangeDocument, ExchangeStage
from .store import ExchangeSnapshot


class Condition(models.TextChoices):
    HAS_CLIENT_INFO = 'has_client_info', 'Client information is complete'
    HAS_RELINQUISHED_PROPERTY = 'has_relinquished_property', 'Relinquished property is documented'
    HAS_COORDINATOR_ASSIGNED = 'has_coordinator_assigned', 'Coordinator is assigned'
    HAS_EXECUTED_AGREEMENT = 'has_executed_agreement', 'Exchange agreement is executed'
    RELINQUISHED_PROPERTY_SOLD = 'relinquished_property_sold', 'Relinquished property sale has closed'
    HAS_IDENTIFICATION_NOTICE = 'has_identification_notice', 'Identification notice is filed'
    HAS_REPLACEMENT_PROPERTIES = 'has_replacement_properties', 'Replacement properties are identified'
    ALL_REPLACEMENTS_ACQUIRED = 'all_replacements_acquired', 'All replacement properties are acquired'
    FUNDS_TRANSFERRED = 'funds_transferred', 'Exchange funds are transferred'
    DOCUMENTS_COMPLETE = 'documents_complete', 'All required documents are present'
    RESUMES_HELD_STAGE = 'resumes_held_stage', 'Resumes the stage the exchange was held from'


REQUIRED_COMPLETION_DOCUMENTS = (
    ExchangeDocument.DocumentType.EXCHANGE_AGREEMENT,
    ExchangeDocument.DocumentType.IDENTIFICATION_NOTICE,
)


@dataclass(frozen=True)
class ConditionResult:
    condition: str
    met: bool
    message: str

    def as_dict(self) -> Dict[str, str]:
        return {'condition': self.condition, 'message': self.message}


# A check receives the snapshot and the target stage and returns (met, message)
Check = Callable[[ExchangeSnapshot, str], Tuple[bool, str]]


def _parse_date(value):
    if isinstance(value, date):
        return value
    if not value:
        return None
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        return None


def _has_client_info(snapshot, to_stage):
    client = snapshot.client
    if client is None:
        return False, "No client is linked to this exchange"
    if not client.is_complete:
        return False, "Client information is missing or incomplete"
    return True, "Client information is complete"


def _has_relinquished_property(snapshot, to_stage):
    if snapshot.relinquished_property_address.strip():
        return True, "Relinquished property is identified"
    return False, "Relinquished property information is missing"


def _has_coordinator_assigned(snapshot, to_stage):
    if snapshot.coordinator_id:
        return True, "Exchange coordinator is assigned"
    return False, "No coordinator assigned to this exchange"


def _has_executed_agreement(snapshot, to_stage):
    if snapshot.exchange_value is not None and snapshot.start_date:
        return True, "Exchange agreement is executed"
    return False, "Exchange agreement not yet executed"


def _relinquished_property_sold(snapshot, to_stage):
    closing = snapshot.relinquished_closing_date
    if closing and closing <= snapshot.as_of:
        return True, "Relinquished property has been sold"
    return False, "Relinquished property sale not completed"


def _has_identification_notice(snapshot, to_stage):
    if not snapshot.identification_date or not snapshot.identification_deadline:
        return False, "Identification notice is missing"
    if snapshot.identification_date > snapshot.identification_deadline:
        return False, (
            f"Identification notice filed {snapshot.identification_date} after "
            f"the {snapshot.identification_deadline} deadline"
        )
    return True, "Identification notice has been filed"


def _has_replacement_properties(snapshot, to_stage):
    if snapshot.replacement_properties:
        count = len(snapshot.replacement_properties)
        return True, f"{count} replacement propert{'y' if count == 1 else 'ies'} identified"
    return False, "No replacement properties identified"


def _all_replacements_acquired(snapshot, to_stage):
    if not snapshot.replacement_properties:
        return False, "No replacement properties identified"
    pending = [
        prop.get('address') or f"#{index + 1}"
        for index, prop in enumerate(snapshot.replacement_properties)
        if not (_parse_date(prop.get('closing_date'))
                and _parse_date(prop.get('closing_date')) <= snapshot.as_of)
    ]
    if pending:
        return False, f"Replacement property acquisitions not complete: {', '.join(pending)}"
    return True, "All replacement properties acquired"


def _funds_transferred(snapshot, to_stage):
    if snapshot.exchange_value is not None and snapshot.funds_transferred_date:
        return True, "Exchange funds have been transferred"
    return False, "Exchange funds transfer not complete"


def _documents_complete(snapshot, to_stage):
    missing = [
        doc_type.label for doc_type in REQUIRED_COMPLETION_DOCUMENTS
        if doc_type not in snapshot.document_types
    ]
    if missing:
        return False, f"Missing required documents: {', '.join(missing)}"
    return True, "All required documents are complete"


def _stage_label(stage):
    try:
        return ExchangeStage(stage).label
    except ValueError:
        return stage or "unknown stage"


def _resumes_held_stage(snapshot, to_stage):
    if not snapshot.held_from_stage:
        return True, "No prior stage recorded for this hold"
    if snapshot.held_from_stage == to_stage:
        return True, f"Resuming {_stage_label(to_stage)}"
    return False, (
        f"Exchange was held from {_stage_label(snapshot.held_from_stage)}, "
        f"not {_stage_label(to_stage)}"
    )


CHECKS: Dict[Condition, Check] = {
    Condition.HAS_CLIENT_INFO: _has_client_info,
    Condition.HAS_RELINQUISHED_PROPERTY: _has_relinquished_property,
    Condition.HAS_COORDINATOR_ASSIGNED: _has_coordinator_assigned,
    Condition.HAS_EXECUTED_AGREEMENT: _has_executed_agreement,
    Condition.RELINQUISHED_PROPERTY_SOLD: _relinquished_property_sold,
    Condition.HAS_IDENTIFICATION_NOTICE: _has_identification_notice,
    Condition.HAS_REPLACEMENT_PROPERTIES: _has_replacement_properties,
    Condition.ALL_REPLACEMENTS_ACQUIRED: _all_replacements_acquired,
    Condition.FUNDS_TRANSFERRED: _funds_transferred,
    Condition.DOCUMENTS_COMPLETE: _documents_complete,
    Condition.RESUMES_HELD_STAGE: _resumes_held_stage,
}

_missing = set(Condition) - set(CHECKS)
if _missing:
    raise ImproperlyConfigured(
        f"No check registered for conditions: {sorted(c.value for c in _missing)}"
    )


def evaluate(snapshot: ExchangeSnapshot, condition: Union[Condition, str],
             to_stage: str = '') -> ConditionResult:
    """
    Evaluate one guard against a snapshot.

    Unknown condition names fail with a diagnostic instead of raising.
    """
    try:
        condition = Condition(condition)
    except ValueError:
        return ConditionResult(
            condition=str(condition),
            met=False,
            message=f"Unknown condition: {condition}",
        )

    met, message = CHECKS[condition](snapshot, to_stage)
    return ConditionResult(condition=condition.value, met=bool(met), message=message)


def evaluate_all(snapshot: ExchangeSnapshot, conditions: Iterable[Union[Condition, str]],
                 to_stage: str = '') -> List[ConditionResult]:
    return [evaluate(snapshot, condition, to_stage) for condition in conditions]
