"""
Static declaration of the exchange stage workflow.

Lookups are pure. A pair that is not declared is simply not reachable;
callers treat that as "transition not permitted".
"""

from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from ..models import ExchangeStage
from .actions import AutoAction
from .conditions import Condition

S = ExchangeStage
C = Condition
A = AutoAction


@dataclass(frozen=True)
class TransitionRule:
    from_stage: str
    to_stage: str
    conditions: Tuple[Condition, ...] = ()
    actions: Tuple[AutoAction, ...] = ()
    is_administrative: bool = False


def _rule(from_stage, to_stage, conditions=(), actions=(), is_administrative=False):
    return TransitionRule(
        from_stage=from_stage,
        to_stage=to_stage,
        conditions=tuple(conditions),
        actions=tuple(actions),
        is_administrative=is_administrative,
    )


DEFAULT_RULES = [
    # Draft
    _rule(S.DRAFT, S.IN_PROGRESS,
          [C.HAS_CLIENT_INFO, C.HAS_RELINQUISHED_PROPERTY, C.HAS_COORDINATOR_ASSIGNED],
          [A.SEED_STAGE_WORK_ITEMS, A.NOTIFY_COORDINATOR]),
    _rule(S.DRAFT, S.CANCELLED, actions=[A.NOTIFY_COORDINATOR]),

    # In progress
    _rule(S.IN_PROGRESS, S.IDENTIFICATION_PERIOD,
          [C.HAS_EXECUTED_AGREEMENT, C.RELINQUISHED_PROPERTY_SOLD],
          [A.START_IDENTIFICATION_TIMER, A.SEED_STAGE_WORK_ITEMS, A.NOTIFY_CLIENT]),
    _rule(S.IN_PROGRESS, S.ON_HOLD, actions=[A.NOTIFY_COORDINATOR]),
    _rule(S.IN_PROGRESS, S.CANCELLED, actions=[A.NOTIFY_COORDINATOR]),

    # 45-day identification period
    _rule(S.IDENTIFICATION_PERIOD, S.COMPLETION_PERIOD,
          [C.HAS_IDENTIFICATION_NOTICE, C.HAS_REPLACEMENT_PROPERTIES],
          [A.START_COMPLETION_TIMER, A.SEED_STAGE_WORK_ITEMS, A.NOTIFY_ALL_PARTIES]),
    _rule(S.IDENTIFICATION_PERIOD, S.ON_HOLD, actions=[A.NOTIFY_COORDINATOR]),
    _rule(S.IDENTIFICATION_PERIOD, S.CANCELLED, actions=[A.NOTIFY_COORDINATOR]),

    # 180-day completion period
    _rule(S.COMPLETION_PERIOD, S.COMPLETED,
          [C.ALL_REPLACEMENTS_ACQUIRED, C.FUNDS_TRANSFERRED, C.DOCUMENTS_COMPLETE],
          [A.SEED_STAGE_WORK_ITEMS, A.GENERATE_COMPLETION_CERTIFICATE,
           A.ARCHIVE_EXCHANGE, A.NOTIFY_COMPLETION]),
    _rule(S.COMPLETION_PERIOD, S.ON_HOLD, actions=[A.NOTIFY_COORDINATOR]),
    _rule(S.COMPLETION_PERIOD, S.CANCELLED, actions=[A.NOTIFY_COORDINATOR]),

    # On hold
    _rule(S.ON_HOLD, S.IN_PROGRESS, [C.RESUMES_HELD_STAGE], [A.NOTIFY_COORDINATOR]),
    _rule(S.ON_HOLD, S.IDENTIFICATION_PERIOD, [C.RESUMES_HELD_STAGE],
          [A.START_IDENTIFICATION_TIMER, A.NOTIFY_COORDINATOR]),
    _rule(S.ON_HOLD, S.COMPLETION_PERIOD, [C.RESUMES_HELD_STAGE],
          [A.START_COMPLETION_TIMER, A.NOTIFY_COORDINATOR]),
    _rule(S.ON_HOLD, S.CANCELLED, actions=[A.NOTIFY_COORDINATOR]),

    # Administrative reopen, guards bypassed
    _rule(S.COMPLETED, S.DRAFT, actions=[A.SEED_STAGE_WORK_ITEMS, A.NOTIFY_COORDINATOR],
          is_administrative=True),
    _rule(S.CANCELLED, S.DRAFT, actions=[A.SEED_STAGE_WORK_ITEMS, A.NOTIFY_COORDINATOR],
          is_administrative=True),
]


class TransitionTable:
    """Which stages may move to which, with their guards and auto-actions."""

    def __init__(self, rules: Iterable[TransitionRule] = DEFAULT_RULES):
        self._rules: Dict[Tuple[str, str], TransitionRule] = {}
        for rule in rules:
            self._rules[(str(rule.from_stage), str(rule.to_stage))] = rule

    def rule(self, from_stage, to_stage) -> Optional[TransitionRule]:
        return self._rules.get((str(from_stage), str(to_stage)))

    def reachable(self, from_stage) -> FrozenSet[str]:
        return frozenset(
            to_stage for (source, to_stage) in self._rules
            if source == str(from_stage)
        )

    def rules_from(self, from_stage) -> List[TransitionRule]:
        return [rule for (source, _), rule in self._rules.items() if source == str(from_stage)]

    def is_permitted(self, from_stage, to_stage) -> bool:
        return (str(from_stage), str(to_stage)) in self._rules

    def edges(self) -> List[TransitionRule]:
        return list(self._rules.values())


TRANSITION_TABLE = TransitionTable()
