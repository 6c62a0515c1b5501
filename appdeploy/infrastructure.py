"""
Infrastructure workflow.

``bootstrap`` creates the state resource group, but only when it does not
exist yet. ``infrastructure`` then plans the main stack, applies it on a push
to the main branch (or a dispatch with ``apply_changes``), and publishes the
stack outputs as an artifact for the deploy workflow.
"""

import logging
from typing import Optional

from appdeploy.artifacts import ArtifactStore, write_outputs
from appdeploy.commands import CommandRunner
from appdeploy.config import DeploySettings, Secrets
from appdeploy.context import RunContext, azure_login
from appdeploy.gate import ProvisioningGate
from appdeploy.iac import BOOTSTRAP, MAIN, make_backend
from appdeploy.jobs import Job, Step, WorkflowRun, new_run_id, run_jobs
from appdeploy.triggers import (
    DISPATCH,
    PULL_REQUEST,
    PUSH,
    DispatchInput,
    TriggerEvent,
    TriggerFilter,
    resolve_inputs,
    should_apply,
)

logger = logging.getLogger(__name__)


def _iac_env(ctx: RunContext) -> dict:
    if ctx.settings.iac.backend == "pulumi":
        return ctx.credentials.pulumi_env()
    return ctx.credentials.terraform_env()


# bootstrap

def check_resource_group(ctx: RunContext) -> str:
    gate = ProvisioningGate(ctx.azure, ctx.settings.infrastructure.bootstrap_resource_group)
    decision = gate.decide(ctx.event, ctx.settings.main_branch)
    ctx.state["gate"] = decision
    return f"rg_exists={str(decision.exists).lower()}"


def bootstrap_init(ctx: RunContext) -> None:
    backend = make_backend(
        ctx.settings, BOOTSTRAP, ctx.runner, _iac_env(ctx),
        environment=ctx.environment, plan_dir=ctx.workspace,
    )
    backend.init(upgrade=True)
    ctx.state["bootstrap"] = backend


def bootstrap_format(ctx: RunContext) -> None:
    ctx.state["bootstrap"].format_check()


def bootstrap_plan(ctx: RunContext) -> None:
    ctx.state["bootstrap"].plan()


def bootstrap_apply(ctx: RunContext) -> None:
    ctx.state["bootstrap"].apply()


def skip_message(ctx: RunContext) -> str:
    message = ctx.state["gate"].message
    logger.info(message)
    return message


# main infrastructure

def infrastructure_init(ctx: RunContext) -> None:
    variables = {
        "mysql_admin_username": ctx.secrets.require("mysql_admin_username"),
        "mysql_admin_password": ctx.secrets.require("mysql_admin_password"),
    }
    backend = make_backend(
        ctx.settings, MAIN, ctx.runner, _iac_env(ctx), variables,
        environment=ctx.environment, plan_dir=ctx.workspace,
    )
    backend.init(migrate_state=True)
    ctx.state["main"] = backend


def infrastructure_plan(ctx: RunContext) -> None:
    ctx.state["plan_path"] = ctx.state["main"].plan(out=ctx.settings.iac.plan_file)


def infrastructure_apply(ctx: RunContext) -> None:
    ctx.state["main"].apply()


def save_outputs(ctx: RunContext) -> str:
    path = ctx.workspace / ctx.settings.infrastructure.outputs_file
    outputs = ctx.state["main"].outputs()
    ctx.state["outputs_path"] = write_outputs(outputs, path)
    return f"{len(outputs)} outputs saved to {path.name}"


def upload_outputs(ctx: RunContext) -> None:
    infra = ctx.settings.infrastructure
    ctx.store.upload(infra.name, ctx.run_id, infra.outputs_artifact, [ctx.state["outputs_path"]])


def upload_plan(ctx: RunContext) -> None:
    infra = ctx.settings.infrastructure
    ctx.store.upload(
        infra.name,
        ctx.run_id,
        infra.plan_artifact,
        [ctx.state["plan_path"]],
        retention_days=infra.plan_retention_days,
    )


class InfrastructureWorkflow:
    def __init__(self, settings: DeploySettings, runner: CommandRunner, store: ArtifactStore, secrets: Secrets):
        self.settings = settings
        self.runner = runner
        self.store = store
        self.secrets = secrets

    @property
    def name(self) -> str:
        return self.settings.infrastructure.name

    @property
    def inputs(self):
        return [
            DispatchInput(
                "environment",
                type="choice",
                required=True,
                options=list(self.settings.infrastructure.environments),
                description="Environment to deploy infrastructure to",
            ),
            DispatchInput(
                "apply_changes",
                type="boolean",
                required=True,
                default=False,
                description="Apply changes to the infrastructure configuration",
            ),
        ]

    @property
    def trigger(self) -> TriggerFilter:
        infra = self.settings.infrastructure
        return TriggerFilter(
            branches=list(infra.branches),
            paths=list(infra.paths),
            events=[PUSH, PULL_REQUEST, DISPATCH],
        )

    def jobs(self):
        main_branch = self.settings.main_branch
        gate = lambda ctx: ctx.state["gate"]
        apply_main = lambda ctx: should_apply(ctx.event, main_branch)

        bootstrap = Job("bootstrap", [
            Step("Login to Azure", azure_login),
            Step("Check if Resource Group Exists", check_resource_group),
            Step("Init", bootstrap_init),
            Step("Format Check", bootstrap_format),
            Step("Plan", bootstrap_plan, lambda ctx: gate(ctx).plan),
            Step("Apply", bootstrap_apply, lambda ctx: gate(ctx).apply),
            Step("Skip Message", skip_message, lambda ctx: gate(ctx).exists),
        ])
        infrastructure = Job("infrastructure", [
            Step("Login to Azure", azure_login),
            Step("Init", infrastructure_init),
            Step("Plan", infrastructure_plan),
            Step("Apply", infrastructure_apply, apply_main),
            Step("Save Outputs", save_outputs),
            Step("Upload Outputs", upload_outputs),
            Step("Upload Plan", upload_plan, lambda ctx: ctx.event.name == PULL_REQUEST and ctx.state.get("plan_path")),
        ], needs=["bootstrap"])
        return [bootstrap, infrastructure]

    def run(self, event: TriggerEvent, run_id: Optional[str] = None) -> Optional[WorkflowRun]:
        if not self.trigger.matches(event):
            logger.info(f"Workflow '{self.name}' not triggered by {event.name}")
            return None
        if event.name == DISPATCH:
            event.inputs = resolve_inputs(self.inputs, event.inputs)

        ctx = RunContext(self.settings, event, self.runner, self.store, self.secrets, run_id or new_run_id())
        return run_jobs(self.name, event.name, self.jobs(), ctx, ctx.run_id)
