"""CLI command handlers."""

from .run import run_pipeline
from .plan import plan_pipeline

__all__ = ['run_pipeline', 'plan_pipeline']
