"""Pipeline model, matrix expansion and condition evaluation."""

from .types import (
    EventKind, Leg, MaterializedStep, MatrixSpec, OnFailure, PipelineSpec,
    PublishSpec, SecretReference, StepSpec, TriggerContext, WhenClause,
)
from .matrix import expand_matrix
from .conditions import ConditionEvaluator, matches

__all__ = [
    'EventKind', 'Leg', 'MaterializedStep', 'MatrixSpec', 'OnFailure',
    'PipelineSpec', 'PublishSpec', 'SecretReference', 'StepSpec',
    'TriggerContext', 'WhenClause', 'expand_matrix', 'ConditionEvaluator',
    'matches',
]
