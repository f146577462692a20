"""Main CLI entry point for matrixci."""

import argparse
import sys
from typing import Optional

from matrixci.pipeline.types import EventKind

from .commands import plan_pipeline, run_pipeline


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    """Arguments shared by 'run' and 'plan'."""
    parser.add_argument(
        'pipeline',
        type=str,
        help='Path to pipeline YAML file'
    )
    parser.add_argument(
        '--event',
        choices=[e.value for e in EventKind],
        help='Trigger event (default: $CI_PIPELINE_EVENT or manual)'
    )
    parser.add_argument(
        '--commit',
        type=str,
        help='Commit identifier (default: $CI_COMMIT_SHA)'
    )
    parser.add_argument(
        '--branch',
        type=str,
        help='Branch name (default: $CI_COMMIT_BRANCH)'
    )
    parser.add_argument(
        '--tag',
        type=str,
        help='Tag name for tag events (default: $CI_COMMIT_TAG)'
    )
    parser.add_argument(
        '--cron',
        type=str,
        help='Cron job name for cron events (default: $CI_PIPELINE_CRON)'
    )
    parser.add_argument(
        '--log-level',
        choices=['debug', 'info', 'warn', 'error'],
        default='info',
        help='Set log level'
    )
    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug logging'
    )
    parser.add_argument(
        '--quiet',
        action='store_true',
        help='Suppress non-error output'
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable verbose output'
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the matrixci CLI."""
    parser = argparse.ArgumentParser(
        prog='matrixci',
        description='Matrix pipeline execution engine'
    )

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    # Run command
    run_parser = subparsers.add_parser('run', help='Run a pipeline')
    _add_common_arguments(run_parser)
    run_parser.add_argument(
        '--workspace',
        type=str,
        default='.',
        help='Source workspace the steps run in (default: current directory)'
    )
    run_parser.add_argument(
        '--state-dir',
        type=str,
        help='Override default state directory (<workspace>/.matrixci)'
    )
    run_parser.add_argument(
        '--parallel',
        type=int,
        default=1,
        metavar='N',
        help='Maximum number of legs running at once'
    )
    run_parser.add_argument(
        '--fail-fast',
        action='store_true',
        help='Cancel remaining legs when one leg fails'
    )
    run_parser.add_argument(
        '--leg-workspaces',
        choices=['shared', 'isolated'],
        help='Run legs in the workspace itself or in per-leg copies '
             '(default: isolated when --parallel > 1)'
    )
    run_parser.add_argument(
        '--sandbox',
        choices=['docker', 'local'],
        default='docker',
        help='Sandbox back-end for steps'
    )
    run_parser.add_argument(
        '--docker-arg',
        action='append',
        default=[],
        metavar='ARG',
        help='Extra argument passed to docker run (can be specified multiple times)'
    )
    run_parser.add_argument(
        '--timeout',
        type=int,
        metavar='SEC',
        help='Timeout for each step command list'
    )
    run_parser.add_argument(
        '--secrets-file',
        type=str,
        help='YAML file mapping secret names to values (default: read from environment)'
    )
    run_parser.add_argument(
        '--secret-prefix',
        type=str,
        default='',
        help='Prefix applied to secret names looked up in the environment'
    )
    run_parser.add_argument(
        '--artifact-dir',
        type=str,
        help='Publish objects into this directory instead of S3'
    )
    run_parser.add_argument(
        '--s3-endpoint',
        type=str,
        help='Endpoint URL for S3-compatible object storage'
    )
    run_parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Validate and plan without execution'
    )

    # Plan command
    plan_parser = subparsers.add_parser('plan', help='Show the legs and steps a run would execute')
    _add_common_arguments(plan_parser)

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point for the CLI."""
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return 1

    if parsed_args.command == 'run':
        return run_pipeline(parsed_args)
    elif parsed_args.command == 'plan':
        return plan_pipeline(parsed_args)
    else:
        parser.print_help()
        return 1


if __name__ == '__main__':
    sys.exit(main())
