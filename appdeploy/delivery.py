"""
Build-and-deploy workflow.

``verify`` fetches the outputs artifact published by the infrastructure
workflow and reads it. ``build-deploy`` then lets the web app pull from the
registry, pushes a freshly built image and points the web app at it. Every
step is a single external call; nothing is retried and nothing is rolled back.
"""

import logging
from typing import Optional

from appdeploy.artifacts import ArtifactStore, InfrastructureOutputs, outputs_summary
from appdeploy.commands import CommandRunner
from appdeploy.config import DeploySettings, Secrets
from appdeploy.context import RunContext, azure_login
from appdeploy.jobs import Job, Step, WorkflowRun, new_run_id, run_jobs
from appdeploy.registry import DockerCli, ImageReference
from appdeploy.triggers import (
    DISPATCH,
    PUSH,
    WORKFLOW_RUN,
    DispatchInput,
    TriggerEvent,
    TriggerFilter,
    resolve_inputs,
)

logger = logging.getLogger(__name__)


def image_for(settings: DeploySettings, outputs: InfrastructureOutputs) -> ImageReference:
    delivery = settings.delivery
    return ImageReference(outputs.acr_login_server, delivery.image_name, delivery.image_tag)


def upstream_succeeded(ctx: RunContext) -> bool:
    run = ctx.event.workflow_run
    return (
        ctx.event.name == WORKFLOW_RUN
        and run is not None
        and run.workflow == ctx.settings.delivery.upstream
        and run.conclusion == "success"
    )


def should_verify(ctx: RunContext) -> bool:
    return ctx.event.name == DISPATCH or upstream_succeeded(ctx)


def should_deploy(ctx: RunContext) -> bool:
    if ctx.event.name == DISPATCH:
        return ctx.event.inputs.get("deploy") is True
    return True


def download_outputs(ctx: RunContext) -> str:
    delivery = ctx.settings.delivery
    dest = ctx.workspace / delivery.outputs_artifact
    ctx.store.download(delivery.outputs_artifact, delivery.upstream, dest)
    ctx.state["outputs_path"] = dest / delivery.outputs_file
    return str(dest)


def parse_outputs(ctx: RunContext) -> None:
    outputs = InfrastructureOutputs.from_file(ctx.state["outputs_path"])
    ctx.state["outputs"] = outputs
    ctx.state["image"] = image_for(ctx.settings, outputs)


def grant_pull(ctx: RunContext) -> None:
    outputs = ctx.state["outputs"]
    ctx.azure.assign_role(
        outputs.app_service_principal_id,
        ctx.settings.delivery.acr_role,
        outputs.acr_id,
    )


def registry_login(ctx: RunContext) -> None:
    DockerCli(ctx.runner).login(
        ctx.state["outputs"].acr_login_server,
        ctx.secrets.require("client_id"),
        ctx.secrets.require("client_secret"),
    )


def build_and_push(ctx: RunContext) -> str:
    delivery = ctx.settings.delivery
    image = ctx.state["image"]
    DockerCli(ctx.runner).build_and_push(
        image,
        context=str(ctx.settings.path(delivery.context)),
        dockerfile=str(ctx.settings.path(delivery.dockerfile)),
    )
    return str(image)


def configure_app_service(ctx: RunContext) -> str:
    outputs = ctx.state["outputs"]
    image = ctx.state["image"]
    ctx.azure.set_webapp_container(
        outputs.app_service_name,
        outputs.resource_group_name,
        str(image),
        image.registry_url,
    )
    return f"{outputs.app_service_name} now runs {image}"


class DeliveryWorkflow:
    def __init__(self, settings: DeploySettings, runner: CommandRunner, store: ArtifactStore, secrets: Secrets):
        self.settings = settings
        self.runner = runner
        self.store = store
        self.secrets = secrets

    @property
    def name(self) -> str:
        return self.settings.delivery.name

    @property
    def inputs(self):
        return [
            DispatchInput(
                "deploy",
                type="boolean",
                required=True,
                default=False,
                description="Build and deploy the application image",
            ),
        ]

    @property
    def trigger(self) -> TriggerFilter:
        delivery = self.settings.delivery
        return TriggerFilter(
            branches=list(delivery.branches),
            paths=list(delivery.paths),
            upstream=[delivery.upstream],
            events=[WORKFLOW_RUN, PUSH, DISPATCH],
        )

    def jobs(self):
        verify = Job("verify", [
            Step("Download Artifact", download_outputs),
            Step("Parse Outputs", parse_outputs),
        ], condition=should_verify, outputs=lambda ctx: outputs_summary(ctx.state["outputs"]))
        build_deploy = Job("build-deploy", [
            Step("Login to Azure", azure_login),
            Step("Grant Registry Pull Role", grant_pull),
            Step("Login to Registry", registry_login),
            Step("Build and Push Image", build_and_push),
            Step("Configure App Service", configure_app_service),
        ], needs=["verify"], condition=should_deploy)
        return [verify, build_deploy]

    def run(self, event: TriggerEvent, run_id: Optional[str] = None) -> Optional[WorkflowRun]:
        if not self.trigger.matches(event):
            logger.info(f"Workflow '{self.name}' not triggered by {event.name}")
            return None
        if event.name == DISPATCH:
            event.inputs = resolve_inputs(self.inputs, event.inputs)

        ctx = RunContext(self.settings, event, self.runner, self.store, self.secrets, run_id or new_run_id())
        return run_jobs(self.name, event.name, self.jobs(), ctx, ctx.run_id)
