"""
appdeploy command line.

Usage:
    appdeploy compose check              # Validate docker-compose.yaml
    appdeploy compose up                 # Start the local stack and wait for health
    appdeploy infra --input environment=development --input apply_changes=true
    appdeploy infra --event push --changed terraform/main.tf
    appdeploy deploy --input deploy=true
    appdeploy run --event github         # Inside GitHub Actions: react to the current event
    appdeploy artifacts list | prune
"""

import argparse
import logging
import os
import sys

from appdeploy.artifacts import ArtifactStore
from appdeploy.commands import CommandRunner, DryRunRunner
from appdeploy.composition import load_compose, startup_order
from appdeploy.config import Secrets, load_settings
from appdeploy.errors import ConfigError, DeployError
from appdeploy.jobs import FAILURE
from appdeploy.log import setup_logging
from appdeploy.pipeline import Pipeline
from appdeploy.registry import DockerCli
from appdeploy.triggers import DISPATCH, PULL_REQUEST, PUSH, WORKFLOW_RUN, TriggerEvent

logger = logging.getLogger("appdeploy")

EVENTS = [PUSH, PULL_REQUEST, DISPATCH, WORKFLOW_RUN, "github"]


def parse_inputs(pairs):
    inputs = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep:
            raise ConfigError(f"Input '{pair}' must look like key=value")
        inputs[key] = value
    return inputs


def build_event(args, settings) -> TriggerEvent:
    if args.event == "github":
        return TriggerEvent.from_github_env(os.environ)
    if args.event == PUSH:
        return TriggerEvent.push(args.branch, args.changed)
    if args.event == PULL_REQUEST:
        return TriggerEvent.pull_request(args.branch, args.changed)
    if args.event == WORKFLOW_RUN:
        return TriggerEvent.upstream(settings.delivery.upstream, args.conclusion)
    return TriggerEvent.dispatch(args.branch, **parse_inputs(args.input))


def print_runs(runs) -> None:
    for run in runs:
        print(f"{run.workflow} [{run.run_id}] ({run.event}): {run.conclusion}")
        for job in run.jobs:
            reason = f" - {job.reason}" if job.reason else ""
            print(f"  {job.name}: {job.status}{reason}")
            for step in job.steps:
                detail = f" - {step.detail}" if step.detail else ""
                print(f"    {step.name}: {step.status}{detail}")


def cmd_compose(args, settings) -> int:
    path = args.file or str(settings.path(settings.compose_file))
    compose = load_compose(path)
    order = startup_order(compose)
    if args.action == "check":
        print(f"{path}: {len(compose.services)} services, {len(compose.volumes)} volumes")
        print("startup order: " + " -> ".join(order))
        return 0

    runner = DryRunRunner() if args.dry_run else CommandRunner()
    DockerCli(runner).compose_up(path)
    return 0


def cmd_artifacts(args, settings) -> int:
    store = ArtifactStore(settings.artifacts_dir)
    if args.action == "prune":
        removed = store.prune()
        print(f"Pruned {len(removed)} expired artifacts")
        return 0

    for record in store.list():
        print(f"{record.workflow}\t{record.run_id}\t{record.name}\t{record.created_at.isoformat()}")
    return 0


def cmd_workflow(args, settings) -> int:
    runner = DryRunRunner() if args.dry_run else CommandRunner()
    secrets = Secrets.from_env(settings.secrets)
    pipeline = Pipeline(settings, runner, secrets)
    event = build_event(args, settings)

    chain = not args.no_chain
    if chain and args.dry_run:
        logger.info("Dry run: not starting the deploy workflow afterwards")
        chain = False

    if args.command == "infra":
        runs = pipeline.run_infrastructure(event, chain=chain)
    elif args.command == "deploy":
        runs = pipeline.run_delivery(event)
    else:
        runs = pipeline.handle(event, chain=chain)

    print_runs(runs)
    return 1 if any(run.conclusion == FAILURE for run in runs) else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="appdeploy", description="Provision Azure and deploy the app container")
    parser.add_argument("--config", default="deploy.yaml", help="Pipeline settings file")
    parser.add_argument("--verbose", "-v", action="store_true")
    parser.add_argument("--log-file", help="Also write logs to this file")
    parser.add_argument("--dry-run", action="store_true", help="Print commands instead of running them")
    sub = parser.add_subparsers(dest="command", required=True)

    compose = sub.add_parser("compose", help="Local composition file")
    compose.add_argument("action", choices=["check", "up"])
    compose.add_argument("--file", help="Compose file (default from settings)")

    for name, default_event, help_text in [
        ("infra", DISPATCH, "Run the infrastructure workflow"),
        ("deploy", DISPATCH, "Run the build-and-deploy workflow"),
        ("run", "github", "Run every workflow the event triggers"),
    ]:
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--event", choices=EVENTS, default=default_event)
        p.add_argument("--branch", default="main")
        p.add_argument("--changed", nargs="*", default=[], help="Changed paths for push/pull_request")
        p.add_argument("--input", action="append", help="Dispatch input as key=value")
        p.add_argument("--conclusion", default="success", help="Upstream conclusion for workflow_run")
        p.add_argument("--no-chain", action="store_true", help="Do not start the deploy workflow afterwards")

    artifacts = sub.add_parser("artifacts", help="Stored workflow artifacts")
    artifacts.add_argument("action", choices=["list", "prune"])
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO, args.log_file)

    try:
        settings = load_settings(args.config)
        if args.command == "compose":
            return cmd_compose(args, settings)
        if args.command == "artifacts":
            return cmd_artifacts(args, settings)
        return cmd_workflow(args, settings)
    except DeployError as e:
        logger.error(str(e))
        return 2


if __name__ == "__main__":
    sys.exit(main())
