from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from appdeploy.artifacts import ArtifactStore
from appdeploy.azure_cli import AzureCli, AzureCredentials
from appdeploy.commands import CommandRunner
from appdeploy.config import DeploySettings, Secrets
from appdeploy.triggers import TriggerEvent


@dataclass
class RunContext:
    """Everything the steps of one workflow run share."""

    settings: DeploySettings
    event: TriggerEvent
    runner: CommandRunner
    store: ArtifactStore
    secrets: Secrets
    run_id: str
    state: Dict[str, Any] = field(default_factory=dict)
    credentials: Optional[AzureCredentials] = None

    @property
    def azure(self) -> AzureCli:
        return AzureCli(self.runner)

    @property
    def workspace(self) -> Path:
        path = self.settings.path(self.settings.state_dir) / "runs" / self.run_id
        path.mkdir(parents=True, exist_ok=True)
        return path

    @property
    def environment(self) -> Optional[str]:
        return self.event.inputs.get("environment")


def azure_login(ctx: RunContext) -> None:
    ctx.credentials = AzureCredentials.parse(ctx.secrets.require("azure_credentials"))
    ctx.azure.login(ctx.credentials)
