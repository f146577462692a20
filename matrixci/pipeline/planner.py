"""
Run planning.

Expands the matrix, filters every leg's steps with their when-clauses and
materializes the survivors before anything executes, so malformed matrices
and unresolved variables abort the run without starting a sandbox.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Set

from ..exceptions import SubstitutionError
from ..publish.publisher import PublishTarget, resolve_target
from ..variables.substitution import VariableSubstitutor
from .conditions import ConditionEvaluator
from .matrix import expand_matrix
from .types import Leg, MaterializedStep, PipelineSpec, TriggerContext

logger = logging.getLogger(__name__)


@dataclass
class PlannedStep:
    name: str
    included: bool
    step: Optional[MaterializedStep] = None


@dataclass
class LegPlan:
    """Ordered steps of one leg, condition-excluded ones included as placeholders."""
    leg: Leg
    steps: List[PlannedStep] = field(default_factory=list)
    publish: PublishTarget = field(default_factory=lambda: PublishTarget(included=False))


@dataclass
class RunPlan:
    triggered: bool
    legs: List[LegPlan] = field(default_factory=list)


class RunPlanner:
    """Turns a PipelineSpec and a TriggerContext into a RunPlan."""

    def __init__(self, evaluator: Optional[ConditionEvaluator] = None,
                 substitutor: Optional[VariableSubstitutor] = None):
        self.evaluator = evaluator or ConditionEvaluator()
        self.substitutor = substitutor or VariableSubstitutor()

    def plan(self, spec: PipelineSpec, context: TriggerContext) -> RunPlan:
        """
        Build the run plan.

        Returns:
            RunPlan with ``triggered=False`` and no legs when the pipeline's
            trigger filter rejects the context

        Raises:
            SpecError: If the matrix cannot be expanded
            SubstitutionError: If any included step or publish template has
                undefined references (all legs are checked before raising)
        """
        if not self.evaluator.matches(spec.trigger, context):
            logger.info(f"Trigger filter does not match event '{context.event.value}', nothing to run")
            return RunPlan(triggered=False)

        legs = expand_matrix(spec.matrix)
        errors: List[SubstitutionError] = []
        plans = []

        for leg in legs:
            leg_plan = LegPlan(leg=leg)
            for step in spec.steps:
                if not self.evaluator.matches(step.when, context, leg):
                    leg_plan.steps.append(PlannedStep(name=step.name, included=False))
                    continue
                try:
                    materialized = self.substitutor.materialize(step, leg, context)
                except SubstitutionError as e:
                    errors.append(e)
                    continue
                leg_plan.steps.append(PlannedStep(name=step.name, included=True, step=materialized))

            try:
                leg_plan.publish = resolve_target(
                    spec.publish, leg, context, self.substitutor, self.evaluator
                )
            except SubstitutionError as e:
                errors.append(SubstitutionError(f"publish ({leg.label}): {e}", e.undefined))

            plans.append(leg_plan)

        if errors:
            undefined: Set[str] = set()
            for error in errors:
                undefined.update(error.undefined)
            raise SubstitutionError("\n".join(str(e) for e in errors), undefined)

        logger.debug(f"Planned {len(plans)} leg(s) for {spec.name}")
        return RunPlan(triggered=True, legs=plans)
