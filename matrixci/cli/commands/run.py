"""Run command implementation."""

import dataclasses
import logging
from argparse import Namespace
from pathlib import Path
from typing import Optional

from matrixci.config import RunConfig
from matrixci.exceptions import SpecError, SubstitutionError
from matrixci.exec.sandbox import DockerSandbox, LocalSandbox, Sandbox
from matrixci.loader import PipelineLoader
from matrixci.pipeline.planner import RunPlanner
from matrixci.pipeline.scheduler import PipelineScheduler
from matrixci.pipeline.types import EventKind, TriggerContext
from matrixci.publish.publisher import ArtifactPublisher
from matrixci.publish.sinks import AwsCliObjectStore, DirectoryObjectStore, DockerRegistry
from matrixci.security.secrets import (
    EnvironmentSecretProvider, FileSecretProvider, SecretMasker, SecretProvider,
    SecretsMaskingFilter,
)
from matrixci.state import RunStore


logger = logging.getLogger(__name__)


def configure_logging(args: Namespace, masker: Optional[SecretMasker] = None) -> None:
    """Set up root logging from CLI flags, masking live secrets."""
    log_level = getattr(logging, args.log_level.upper().replace('WARN', 'WARNING'))
    if args.debug:
        log_level = logging.DEBUG
    elif args.quiet:
        log_level = logging.ERROR
    elif args.verbose:
        log_level = logging.DEBUG

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if masker is not None:
        masking_filter = SecretsMaskingFilter(masker)
        for handler in logging.getLogger().handlers:
            handler.addFilter(masking_filter)


def build_trigger(args: Namespace) -> TriggerContext:
    """Trigger context from CI_* environment variables, overridden by CLI flags."""
    context = TriggerContext.from_environ()
    overrides = {}
    if args.event:
        overrides['event'] = EventKind(args.event)
    for name in ('commit', 'branch', 'tag', 'cron'):
        value = getattr(args, name, None)
        if value:
            overrides[name] = value
    return dataclasses.replace(context, **overrides)


def build_secret_provider(args: Namespace) -> SecretProvider:
    if args.secrets_file:
        secrets_file = Path(args.secrets_file)
        if not secrets_file.exists():
            raise FileNotFoundError(f"Secrets file not found: {secrets_file}")
        return FileSecretProvider(secrets_file)
    return EnvironmentSecretProvider(prefix=args.secret_prefix)


def build_sandbox(args: Namespace, masker: SecretMasker) -> Sandbox:
    if args.sandbox == 'local':
        return LocalSandbox(masker=masker, timeout_sec=args.timeout)
    return DockerSandbox(extra_args=args.docker_arg, masker=masker, timeout_sec=args.timeout)


def build_publisher(args: Namespace, secret_provider: SecretProvider,
                    masker: SecretMasker) -> ArtifactPublisher:
    if args.artifact_dir:
        object_store = DirectoryObjectStore(Path(args.artifact_dir))
    else:
        object_store = AwsCliObjectStore(endpoint_url=args.s3_endpoint)
    return ArtifactPublisher(
        secret_provider=secret_provider,
        object_store=object_store,
        registry=DockerRegistry(),
        masker=masker,
    )


def run_pipeline(args: Namespace) -> int:
    """
    Run a pipeline.

    Returns:
        0 if every leg succeeded (or the trigger filter skipped the run),
        1 if any leg failed, 2 on definition or substitution errors
    """
    masker = SecretMasker()
    configure_logging(args, masker)

    try:
        pipeline_path = Path(args.pipeline).resolve()
        if not pipeline_path.exists():
            logger.error(f"Pipeline file not found: {pipeline_path}")
            return 1

        logger.info(f"Loading pipeline: {pipeline_path}")
        spec = PipelineLoader().load(pipeline_path)

        context = build_trigger(args)
        logger.info(f"Trigger: event={context.event.value} commit={context.commit} "
                    f"version={context.version}")

        plan = RunPlanner().plan(spec, context)

        # Dry run mode - just validate and plan
        if args.dry_run:
            logger.info(f"[DRY RUN] Pipeline valid, {len(plan.legs)} leg(s) planned")
            return 0

        config = RunConfig(
            workspace=Path(args.workspace),
            state_dir=Path(args.state_dir) if args.state_dir else None,
            concurrency=args.parallel,
            fail_fast=args.fail_fast,
            leg_workspaces=args.leg_workspaces,
        )
        secret_provider = build_secret_provider(args)
        store = RunStore(config.state_dir)

        scheduler = PipelineScheduler(
            sandbox=build_sandbox(args, masker),
            secret_provider=secret_provider,
            config=config,
            publisher=build_publisher(args, secret_provider, masker),
            store=store,
        )
        result = scheduler.execute(plan)

        report = store.write_report(result, pipeline_path)
        logger.info(f"Report written to {report}")
        return result.exit_code

    except SpecError as e:
        for error in e.errors:
            logger.error(f"Validation error: {error.message}")
        return e.exit_code
    except SubstitutionError as e:
        logger.error(f"Substitution error: {e}")
        return e.exit_code
    except FileNotFoundError as e:
        logger.error(f"File not found: {e}")
        return 1
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        return 2
    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        return 1
