import json
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from types import SimpleNamespace
from typing import Dict, List, Optional

import pytest
from pulumi import automation as auto
from pulumi.automation._cmd import CommandResult as PulumiCommandResult

from appdeploy.artifacts import ArtifactStore
from appdeploy.commands import CommandResult, CommandRunner
from appdeploy.config import DeploySettings, IacSettings, Secrets, SecretNames
from appdeploy.errors import CommandError
from appdeploy.log import secret_filter

REPO_ROOT = Path(__file__).resolve().parents[1]

CREDENTIALS = {
    "clientId": "00000000-aaaa-bbbb-cccc-000000000001",
    "clientSecret": "client-secret-value",
    "subscriptionId": "00000000-aaaa-bbbb-cccc-000000000002",
    "tenantId": "00000000-aaaa-bbbb-cccc-000000000003",
}

ACR_ID = (
    "/subscriptions/00000000-aaaa-bbbb-cccc-000000000002/resourceGroups/app-rg"
    "/providers/Microsoft.ContainerRegistry/registries/onpremacr"
)

OUTPUT_VALUES = {
    "acr_name": "onpremacr",
    "acr_login_server": "onpremacr.azurecr.io",
    "acr_id": ACR_ID,
    "resource_group_name": "app-rg",
    "app_service_principal_id": "11111111-2222-3333-4444-555555555555",
    "app_service_name": "onprem-webapp",
}

TERRAFORM_OUTPUTS = {
    key: {"sensitive": False, "type": "string", "value": value}
    for key, value in OUTPUT_VALUES.items()
}


@dataclass
class Call:
    argv: List[str]
    cwd: Optional[str]
    env: Dict[str, str] = field(default_factory=dict)
    input: Optional[str] = None

    @property
    def line(self) -> str:
        return " ".join(self.argv)


class FakeRunner(CommandRunner):
    """Records commands; answers by command prefix and fails on request."""

    def __init__(self, responses=None, fail=None):
        super().__init__()
        self.calls: List[Call] = []
        self.responses = dict(responses or {})
        self.fail = dict(fail or {})

    def run(self, argv, cwd=None, env=None, input=None):
        argv = [str(arg) for arg in argv]
        call = Call(argv, str(cwd) if cwd else None, dict(env or {}), input)
        self.calls.append(call)
        for prefix, stderr in self.fail.items():
            if call.line.startswith(prefix):
                raise CommandError(argv, 1, stderr)
        for prefix, stdout in self.responses.items():
            if call.line.startswith(prefix):
                return CommandResult(argv, 0, stdout)
        return CommandResult(argv, 0, "")

    @property
    def lines(self) -> List[str]:
        return [c.line for c in self.calls]

    def find(self, prefix: str, cwd=None) -> List[Call]:
        return [
            c for c in self.calls
            if c.line.startswith(prefix) and (cwd is None or c.cwd == str(cwd))
        ]

    def ran(self, prefix: str, cwd=None) -> bool:
        return bool(self.find(prefix, cwd))


def make_runner(rg_exists=False, outputs=None, fail=None) -> FakeRunner:
    return FakeRunner(
        responses={
            "az group exists": "true\n" if rg_exists else "false\n",
            "terraform output -json": json.dumps(TERRAFORM_OUTPUTS if outputs is None else outputs),
        },
        fail=fail,
    )


@pytest.fixture
def settings(tmp_path) -> DeploySettings:
    return DeploySettings(project="test-app", base_dir=tmp_path, iac=IacSettings(backend="terraform"))


@pytest.fixture
def environ() -> Dict[str, str]:
    return {
        "AZURE_CREDENTIALS": json.dumps(CREDENTIALS),
        "AZURE_CLIENT_ID": CREDENTIALS["clientId"],
        "AZURE_CLIENT_SECRET": CREDENTIALS["clientSecret"],
        "MYSQL_ADMIN_USERNAME": "mysqladmin",
        "MYSQL_ADMIN_PASSWORD": "mysql-password-value",
    }


@pytest.fixture
def secrets(environ) -> Secrets:
    return Secrets(SecretNames(), environ)


@pytest.fixture
def store(settings) -> ArtifactStore:
    return ArtifactStore(settings.artifacts_dir)


@pytest.fixture
def published_outputs(settings, store, tmp_path):
    """An outputs artifact as the infrastructure workflow would have left it."""
    source = tmp_path / "upload" / settings.infrastructure.outputs_file
    source.parent.mkdir(parents=True)
    source.write_text(json.dumps(TERRAFORM_OUTPUTS))
    return store.upload(
        settings.infrastructure.name,
        "run-1",
        settings.infrastructure.outputs_artifact,
        [source],
    )


@pytest.fixture(autouse=True)
def forget_secrets():
    secret_filter.clear()
    yield
    secret_filter.clear()


def pulumi_error(stderr: str) -> auto.CommandError:
    return auto.CommandError(PulumiCommandResult("", stderr, 1))


class FakeStack:
    """Answers like a pulumi.automation.Stack and records what was asked of it."""

    def __init__(self, name: str, pulumi):
        self.name = name
        self.pulumi = pulumi
        self.config: Dict[str, str] = {}

    def _record(self, action: str) -> None:
        self.pulumi.calls.append((action, self.name))
        if action in self.pulumi.fail:
            raise self.pulumi.fail[action]

    def set_config(self, key, value):
        self._record("set_config")
        self.config[key] = value.value

    def preview(self, on_output=None):
        self._record("preview")
        return SimpleNamespace(change_summary={"create": 5})

    def up(self, on_output=None):
        self._record("up")
        return SimpleNamespace(summary=SimpleNamespace(result="succeeded"))

    def outputs(self):
        self._record("outputs")
        return {key: SimpleNamespace(value=value, secret=False) for key, value in self.pulumi.outputs.items()}


class FakePulumi:
    def __init__(self):
        self.calls = []
        self.fail = {}
        self.stacks: Dict[str, FakeStack] = {}
        self.opts = {}
        self.outputs = dict(OUTPUT_VALUES)

    def create_or_select_stack(self, stack_name, project_name, program, opts):
        self.calls.append(("select", stack_name))
        if "select" in self.fail:
            raise self.fail["select"]
        self.opts[stack_name] = opts
        self.stacks[stack_name] = FakeStack(stack_name, self)
        return self.stacks[stack_name]

    @property
    def actions(self) -> List[str]:
        return [action for action, _ in self.calls]


@pytest.fixture
def fake_pulumi(monkeypatch) -> FakePulumi:
    fake = FakePulumi()
    monkeypatch.setattr(auto, "create_or_select_stack", fake.create_or_select_stack)
    return fake


@pytest.fixture
def pulumi_settings(settings) -> DeploySettings:
    settings.iac.backend = "pulumi"
    for name in (settings.iac.bootstrap_config, settings.iac.main_config):
        shutil.copy(REPO_ROOT / name, settings.path(name))
    return settings
