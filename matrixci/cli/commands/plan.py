"""Plan command: print the legs and steps a run would execute."""

import logging
from argparse import Namespace
from pathlib import Path

from matrixci.exceptions import SpecError, SubstitutionError
from matrixci.loader import PipelineLoader
from matrixci.pipeline.planner import RunPlanner

from .run import build_trigger, configure_logging


logger = logging.getLogger(__name__)


def plan_pipeline(args: Namespace) -> int:
    """Print the run plan. Exit codes match 'run' for definition errors."""
    configure_logging(args)

    try:
        spec = PipelineLoader().load(Path(args.pipeline))
        context = build_trigger(args)
        plan = RunPlanner().plan(spec, context)
    except SpecError as e:
        for error in e.errors:
            logger.error(f"Validation error: {error.message}")
        return e.exit_code
    except SubstitutionError as e:
        logger.error(f"Substitution error: {e}")
        return e.exit_code
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        return 2

    print(f"{spec.name}: event={context.event.value} version={context.version}")
    if not plan.triggered:
        print("  trigger filter does not match, nothing to run")
        return 0

    for leg_plan in plan.legs:
        print(f"  {leg_plan.leg.label}")
        for planned in leg_plan.steps:
            marker = "+" if planned.included else "-"
            suffix = "" if planned.included else " (skipped by condition)"
            print(f"    {marker} {planned.name}{suffix}")
        for destination in leg_plan.publish.destinations:
            print(f"    > publish {destination}")
    return 0
