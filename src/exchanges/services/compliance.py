"""
Compliance status derivation for exchanges.
"""

from datetime import date
from typing import Optional

from ..conf import get_workflow_config
from ..models import ComplianceStatus, ExchangeStage


def compute_compliance_status(
    stage: str,
    identification_deadline: Optional[date],
    completion_deadline: Optional[date],
    today: date,
    identification_filed: bool = False,
    at_risk_window_days: Optional[int] = None,
) -> str:
    """
    Classify how close an exchange is to breaching a regulatory deadline.

    An in-progress exchange that has not yet filed its identification
    notice is non-compliant once the identification deadline has passed.
    Without a completion deadline there is nothing to measure against, so
    the status is pending review.
    """
    if at_risk_window_days is None:
        at_risk_window_days = get_workflow_config()['AT_RISK_WINDOW_DAYS']

    if stage == ExchangeStage.COMPLETED:
        return ComplianceStatus.COMPLIANT

    if completion_deadline is None:
        return ComplianceStatus.PENDING_REVIEW

    if today > completion_deadline:
        return ComplianceStatus.NON_COMPLIANT

    if (
        stage == ExchangeStage.IN_PROGRESS
        and not identification_filed
        and identification_deadline is not None
        and today > identification_deadline
    ):
        return ComplianceStatus.NON_COMPLIANT

    if (completion_deadline - today).days <= at_risk_window_days:
        return ComplianceStatus.AT_RISK

    return ComplianceStatus.COMPLIANT
