"""
Step scheduler.

Executes a RunPlan: one independent flow per leg, steps strictly in
declaration order within a leg, legs fanned out over a thread pool.
"""

import logging
import shutil
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, List, Optional

from ..config import RunConfig
from ..exceptions import PublishError, SandboxError, SecretNotFound
from ..exec.output_capture import OutputCapture
from ..exec.sandbox import Sandbox, SandboxRequest
from ..publish.publisher import ArtifactPublisher
from ..security.secrets import SecretProvider
from ..state import ExecutionRecord, LegResult, PublishRecord, RunResult, RunStore, utc_now
from .planner import LegPlan, RunPlan, RunPlanner
from .types import MaterializedStep, PipelineSpec, TriggerContext

logger = logging.getLogger(__name__)


class LegRunner:
    """
    Runs the steps of a single leg.

    State machine: Pending -> Running(step_i) -> Running(step_i+1) | Failed |
    Succeeded. A failing step skips every later step of the leg, except that
    the step's on-failure diagnostic is always attempted first.
    """

    def __init__(
        self,
        plan: LegPlan,
        sandbox: Sandbox,
        secret_provider: SecretProvider,
        workdir: Path,
        logs_dir: Path,
        cancel_event: threading.Event,
        publisher: Optional[ArtifactPublisher] = None,
        output_limit_bytes: Optional[int] = None,
        fail_fast: bool = False
    ):
        self.plan = plan
        self.leg = plan.leg
        self.sandbox = sandbox
        self.secret_provider = secret_provider
        self.workdir = workdir
        self.cancel_event = cancel_event
        self.publisher = publisher
        self.capture = OutputCapture(logs_dir, output_limit_bytes)
        self.fail_fast = fail_fast
        self.fatal = False

    def run(self) -> LegResult:
        result = LegResult(
            leg=self.leg,
            status="running",
            records=[ExecutionRecord(step=planned.name) for planned in self.plan.steps],
        )
        failed = False
        cancelled = False

        for planned, record in zip(self.plan.steps, result.records):
            if not planned.included:
                record.status = "skipped"
                record.reason = "condition"
                continue
            if failed:
                record.status = "skipped"
                record.reason = "previous_failure"
                continue
            # Cancellation is observed between steps, once the previous command list has completed
            if cancelled or self.cancel_event.is_set():
                cancelled = True
                record.status = "cancelled"
                record.reason = "cancelled"
                continue

            if not self._run_step(planned.step, record):
                failed = True

        result.fatal = self.fatal
        if failed:
            result.status = "failed"
        elif cancelled:
            result.status = "cancelled"
        else:
            self._publish(result)

        # Set before returning so legs still queued in the pool observe it
        if self.fatal:
            self.cancel_event.set()
        elif self.fail_fast and result.status in ("failed", "publish_failed"):
            logger.warning(f"{self._prefix()} Leg {result.status}, cancelling remaining legs (fail-fast)")
            self.cancel_event.set()
        return result

    def _prefix(self) -> str:
        return f"[{self.leg.label}]"

    def _request(self, step: MaterializedStep, commands) -> SandboxRequest:
        return SandboxRequest(
            image=step.image,
            commands=commands,
            workdir=self.workdir,
            environment=step.environment,
            secrets=step.secrets,
            step_name=step.name,
        )

    def _run_step(self, step: MaterializedStep, record: ExecutionRecord) -> bool:
        """Execute one step. Returns True if the leg may continue."""
        record.status = "running"
        record.started_at = utc_now()
        logger.info(f"{self._prefix()} Running step '{step.name}' in {step.image}")

        try:
            sandbox_result = self.sandbox.execute(self._request(step, step.commands), self.secret_provider)
        except SecretNotFound as e:
            # Cannot run safely without the secret: fatal for the whole run
            record.status = "failed"
            record.error = e.to_error()
            record.completed_at = utc_now()
            self.fatal = True
            self.cancel_event.set()
            logger.error(f"{self._prefix()} Step '{step.name}': {e}")
            return False
        except SandboxError as e:
            record.error = e.to_error()
            logger.error(f"{self._prefix()} Step '{step.name}' could not start: {e}")
            success = False
        else:
            capture = self.capture.capture(sandbox_result.output, step.name)
            record.exit_code = sandbox_result.exit_code
            record.duration_ms = sandbox_result.duration_ms
            record.output = capture.output
            record.truncated = capture.truncated
            record.log_path = str(capture.log_path)
            success = sandbox_result.exit_code == 0

        record.completed_at = utc_now()
        if success:
            record.status = "succeeded"
            logger.info(f"{self._prefix()} Step '{step.name}' succeeded")
            return True

        if record.exit_code is not None:
            logger.error(
                f"{self._prefix()} Step '{step.name}' failed with exit code {record.exit_code}. "
                f"Captured output:\n{record.output}"
            )

        if step.on_failure is not None:
            diagnostic_exit = self._run_diagnostic(step, record)
            if step.on_failure.recover and diagnostic_exit == 0:
                record.status = "succeeded"
                record.recovered = True
                logger.warning(f"{self._prefix()} Step '{step.name}' recovered by its on_failure commands")
                return True

        record.status = "failed"
        return False

    def _run_diagnostic(self, step: MaterializedStep, record: ExecutionRecord) -> Optional[int]:
        """Attempt the step's on-failure commands. Returns their exit code, or None."""
        logger.info(f"{self._prefix()} Running on_failure commands of '{step.name}'")
        try:
            sandbox_result = self.sandbox.execute(
                self._request(step, step.on_failure.commands), self.secret_provider
            )
        except (SandboxError, SecretNotFound) as e:
            record.diagnostic = f"on_failure commands could not run: {e}"
            logger.error(f"{self._prefix()} {record.diagnostic}")
            return None

        capture = self.capture.capture(sandbox_result.output, step.name, suffix="diagnostic.log")
        record.diagnostic = capture.output
        logger.warning(
            f"{self._prefix()} on_failure output of '{step.name}' "
            f"(exit {sandbox_result.exit_code}):\n{capture.output}"
        )
        return sandbox_result.exit_code

    def _publish(self, result: LegResult):
        if not self.plan.publish.included:
            result.status = "succeeded"
            return

        if self.cancel_event.is_set():
            result.status = "cancelled"
            result.publish = PublishRecord(status="skipped")
            return

        if self.publisher is None:
            result.status = "publish_failed"
            result.publish = PublishRecord(
                status="failed",
                destinations=self.plan.publish.destinations,
                error=PublishError("No artifact publisher configured").to_error(),
            )
            logger.error(f"{self._prefix()} Publish failed: no artifact publisher configured")
            return

        try:
            result.publish = self.publisher.publish(self.plan.publish, self.workdir)
        except PublishError as e:
            # Build steps keep their succeeded records
            result.status = "publish_failed"
            result.publish = PublishRecord(
                status="failed",
                destinations=self.plan.publish.destinations,
                error=e.to_error(),
            )
            logger.error(f"{self._prefix()} Publish failed: {e}")
            return

        result.status = "succeeded"


class PipelineScheduler:
    """
    Main pipeline execution engine.

    Args:
        sandbox: Sandbox adapter running command lists
        secret_provider: Resolves secret references at launch time
        config: Run configuration
        publisher: Artifact publisher (required only when the pipeline publishes)
        store: Run store for logs (default: one under config.state_dir)
    """

    def __init__(
        self,
        sandbox: Sandbox,
        secret_provider: SecretProvider,
        config: RunConfig,
        publisher: Optional[ArtifactPublisher] = None,
        store: Optional[RunStore] = None
    ):
        self.sandbox = sandbox
        self.secret_provider = secret_provider
        self.config = config
        self.publisher = publisher
        self.store = store or RunStore(config.state_dir)
        self.cancel_event = threading.Event()
        self._cancel_requested = False

    def cancel(self):
        """
        Stop starting new steps. Steps already running are allowed to finish.

        Applies to the run in progress, or to the next run if none is executing.
        """
        self._cancel_requested = True
        self.cancel_event.set()

    def run(self, spec: PipelineSpec, context: TriggerContext,
            planner: Optional[RunPlanner] = None) -> RunResult:
        """
        Plan and execute a pipeline.

        Raises:
            SpecError, SubstitutionError: Before any step executes
        """
        plan = (planner or RunPlanner()).plan(spec, context)
        return self.execute(plan)

    def execute(self, plan: RunPlan) -> RunResult:
        """Execute a plan and return the overall result."""
        self.store.initialize()
        result = RunResult(run_id=self.store.run_id, status="running", started_at=utc_now())

        if not plan.triggered:
            result.status = "skipped"
            result.exit_code = 0
            result.completed_at = utc_now()
            return result

        # One event per run; a cancel() issued before the run still applies
        cancel_event = threading.Event()
        if self._cancel_requested:
            cancel_event.set()
        self.cancel_event = cancel_event
        leg_results: Dict[int, LegResult] = {}

        with ThreadPoolExecutor(max_workers=self.config.concurrency) as pool:
            futures = {
                pool.submit(self._run_leg, leg_plan, cancel_event): leg_plan
                for leg_plan in plan.legs
            }

            for future in as_completed(futures):
                leg_plan = futures[future]
                try:
                    leg_result = future.result()
                except Exception as e:
                    logger.error(f"[{leg_plan.leg.label}] Leg aborted: {e}", exc_info=True)
                    leg_result = LegResult(
                        leg=leg_plan.leg,
                        status="failed",
                        records=[ExecutionRecord(step=s.name, status="skipped", reason="aborted")
                                 for s in leg_plan.steps],
                    )
                    if self.config.fail_fast:
                        cancel_event.set()
                leg_results[leg_plan.leg.index] = leg_result

        self._cancel_requested = False
        result.legs = [leg_results[leg_plan.leg.index] for leg_plan in plan.legs]
        result.completed_at = utc_now()

        if any(leg.fatal for leg in result.legs):
            result.status = "failed"
            result.exit_code = 2
        elif all(leg.succeeded for leg in result.legs):
            result.status = "succeeded"
            result.exit_code = 0
        else:
            result.status = "failed"
            result.exit_code = 1

        self._log_summary(result)
        return result

    def _run_leg(self, leg_plan: LegPlan, cancel_event: threading.Event) -> LegResult:
        runner = LegRunner(
            plan=leg_plan,
            sandbox=self.sandbox,
            secret_provider=self.secret_provider,
            workdir=self._prepare_workdir(leg_plan),
            logs_dir=self.store.leg_logs_dir(leg_plan.leg),
            cancel_event=cancel_event,
            publisher=self.publisher,
            output_limit_bytes=self.config.output_limit_bytes,
            fail_fast=self.config.fail_fast,
        )
        return runner.run()

    def _prepare_workdir(self, leg_plan: LegPlan) -> Path:
        if self.config.leg_workspaces == "shared":
            return self.config.workspace

        target = self.store.leg_workspace(leg_plan.leg)
        state_dir = Path(self.config.state_dir).resolve()

        def ignore(directory: str, names: List[str]) -> List[str]:
            return [n for n in names if (Path(directory) / n).resolve() == state_dir]

        shutil.copytree(self.config.workspace, target, ignore=ignore, symlinks=True)
        return target

    def _log_summary(self, result: RunResult):
        logger.info(f"Run {result.run_id} {result.status}")
        for leg in result.legs:
            line = f"  {leg.leg.label}: {leg.status}"
            if leg.status == "publish_failed" and leg.publish and leg.publish.error:
                line += f" ({leg.publish.error['message']})"
            if leg.status in ("succeeded", "cancelled"):
                logger.info(line)
            else:
                logger.error(line)
