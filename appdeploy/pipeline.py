import logging
from typing import List, Optional

from appdeploy.artifacts import ArtifactStore
from appdeploy.commands import CommandRunner
from appdeploy.config import DeploySettings, Secrets
from appdeploy.delivery import DeliveryWorkflow
from appdeploy.errors import ConfigError
from appdeploy.infrastructure import InfrastructureWorkflow
from appdeploy.jobs import RunLock, WorkflowRun
from appdeploy.triggers import DISPATCH, TriggerEvent

logger = logging.getLogger(__name__)


class Pipeline:
    """
    The two workflows wired together.

    A finished infrastructure run starts the deploy workflow with a
    ``workflow_run`` event carrying its conclusion. Runs of one project are
    serialized through a lock file in the state directory.
    """

    def __init__(
        self,
        settings: DeploySettings,
        runner: CommandRunner,
        secrets: Secrets,
        store: Optional[ArtifactStore] = None,
    ):
        self.settings = settings
        self.store = store or ArtifactStore(settings.artifacts_dir)
        self.infrastructure = InfrastructureWorkflow(settings, runner, self.store, secrets)
        self.delivery = DeliveryWorkflow(settings, runner, self.store, secrets)

    def lock(self) -> RunLock:
        return RunLock(self.settings.path(self.settings.state_dir) / "locks", self.settings.project)

    def run_infrastructure(self, event: TriggerEvent, chain: bool = True) -> List[WorkflowRun]:
        runs = []
        with self.lock():
            infra_run = self.infrastructure.run(event)
            if infra_run is None:
                return runs
            runs.append(infra_run)

            if chain:
                upstream = TriggerEvent.upstream(self.infrastructure.name, infra_run.conclusion)
                deploy_run = self.delivery.run(upstream)
                if deploy_run is not None:
                    runs.append(deploy_run)
        return runs

    def run_delivery(self, event: TriggerEvent) -> List[WorkflowRun]:
        with self.lock():
            run = self.delivery.run(event)
        return [run] if run is not None else []

    def handle(self, event: TriggerEvent, chain: bool = True) -> List[WorkflowRun]:
        """Run every workflow whose triggers match a push, pull request or upstream event."""
        if event.name == DISPATCH:
            raise ConfigError("A dispatch event must name its workflow; use 'infra' or 'deploy'")

        runs = []
        if self.infrastructure.trigger.matches(event):
            runs.extend(self.run_infrastructure(event, chain=chain))
        if self.delivery.trigger.matches(event):
            runs.extend(self.run_delivery(event))
        if not runs:
            logger.info(f"No workflow is triggered by {event.name} on {event.ref}")
        return runs
