"""
Condition evaluation for pipeline steps.
Implements when-clauses: event, matrix, branch, tag and cron predicates.
"""

from fnmatch import fnmatchcase
from typing import Iterable, Optional, Sequence

from .types import Leg, TriggerContext, WhenClause


class ConditionEvaluator:
    """
    Decides whether a step is included for a (trigger, leg) combination.

    A clause list is a disjunction: the step runs if ANY clause matches.
    Each clause is a conjunction of the sub-predicates present on it.
    Evaluation is side-effect free.
    """

    def matches(
        self,
        clauses: Sequence[WhenClause],
        context: TriggerContext,
        leg: Optional[Leg] = None
    ) -> bool:
        """
        Evaluate a clause list.

        Args:
            clauses: The when clauses from the step (empty means unconditional)
            context: Trigger context of the current run
            leg: Current matrix leg (None for pipeline-level filters)

        Returns:
            True if the step should be included
        """
        if not clauses:
            return True
        return any(self._clause_matches(clause, context, leg) for clause in clauses)

    def _clause_matches(self, clause: WhenClause, context: TriggerContext,
                        leg: Optional[Leg]) -> bool:
        if clause.event is not None and context.event not in clause.event:
            return False

        if clause.matrix is not None:
            variables = leg.variables if leg is not None else {}
            for axis, value in clause.matrix.items():
                if variables.get(axis) != value:
                    return False

        if clause.branch is not None and not self._pattern_matches(clause.branch, context.branch):
            return False

        if clause.tag is not None and not self._pattern_matches(clause.tag, context.tag):
            return False

        if clause.cron is not None and context.cron not in clause.cron:
            return False

        return True

    def _pattern_matches(self, patterns: Iterable[str], value: Optional[str]) -> bool:
        """Glob match; an absent value never matches."""
        if value is None:
            return False
        return any(fnmatchcase(value, pattern) for pattern in patterns)


_default_evaluator = ConditionEvaluator()


def matches(clauses: Sequence[WhenClause], context: TriggerContext,
            leg: Optional[Leg] = None) -> bool:
    """Module-level shortcut for ``ConditionEvaluator().matches``."""
    return _default_evaluator.matches(clauses, context, leg)
