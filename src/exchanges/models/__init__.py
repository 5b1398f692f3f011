"""
Exchange workflow models.

This module provides exchange tracking, stage tasks, the transition audit
trail and regulatory deadline timers.
"""

from .exchange import (
    Exchange, ExchangeStage, ComplianceStatus, ExchangeParticipant,
    ExchangeDocument, TERMINAL_STAGES, PRE_COMPLETION_STAGES
)
from .task import ExchangeTask
from .audit import ExchangeTransition
from .deadline import DeadlineKind, DeadlineTimer, DeadlineReminder

__all__ = [
    'Exchange',
    'ExchangeStage',
    'ComplianceStatus',
    'ExchangeParticipant',
    'ExchangeDocument',
    'TERMINAL_STAGES',
    'PRE_COMPLETION_STAGES',
    'ExchangeTask',
    'ExchangeTransition',
    'DeadlineKind',
    'DeadlineTimer',
    'DeadlineReminder',
]
