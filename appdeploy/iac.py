"""
Infrastructure-as-code backends.

Both backends expose the same five operations the workflows need: init,
format check, plan, apply and outputs. Outputs always come back in the shape
of ``terraform output -json``: ``{name: {"value": ..., "sensitive": bool}}``.
"""

import json
import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Protocol

import yaml
from pulumi import automation as auto

from appdeploy.azurenative import lint_config
from appdeploy.commands import CommandRunner
from appdeploy.config import DeploySettings, load_config, parse_config
from appdeploy.errors import ConfigError, DeployError
from appdeploy.program import make_program

logger = logging.getLogger(__name__)

BOOTSTRAP = "bootstrap"
MAIN = "main"


class IacBackend(Protocol):
    def init(self, upgrade: bool = False, migrate_state: bool = False) -> None:
        ...

    def format_check(self) -> None:
        ...

    def plan(self, out: Optional[str] = None) -> Optional[Path]:
        ...

    def apply(self) -> None:
        ...

    def outputs(self) -> Dict[str, Any]:
        ...


class TerraformCli:
    def __init__(
        self,
        working_dir: Path,
        runner: CommandRunner,
        env: Optional[Mapping[str, str]] = None,
        variables: Optional[Mapping[str, str]] = None,
    ):
        self.working_dir = Path(working_dir)
        self.runner = runner
        self.env = dict(env or {})
        self.variables = dict(variables or {})

    def _run(self, *args: str):
        return self.runner.run(["terraform", *args], cwd=self.working_dir, env=self.env)

    def _var_args(self):
        args = []
        for key, value in self.variables.items():
            args.append(f"-var={key}={value}")
        return args

    def init(self, upgrade: bool = False, migrate_state: bool = False) -> None:
        args = ["init"]
        if upgrade:
            args.append("-upgrade")
        if migrate_state:
            args.append("-migrate-state")
        self._run(*args)

    def format_check(self) -> None:
        self._run("fmt", "-check")

    def plan(self, out: Optional[str] = None) -> Optional[Path]:
        args = ["plan", "-input=false"]
        if out:
            args.append(f"-out={out}")
        self._run(*args, *self._var_args())
        return self.working_dir / out if out else None

    def apply(self) -> None:
        self._run("apply", "-auto-approve", "-input=false", *self._var_args())

    def outputs(self) -> Dict[str, Any]:
        result = self._run("output", "-json")
        if not result.stdout.strip():
            return {}
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise DeployError(f"terraform output -json returned invalid JSON: {e}")


class PulumiStack:
    """
    Pulumi Automation API stack running the inline program from appdeploy.program.

    With ``dry_run`` nothing touches the Pulumi backend or Azure: each
    operation logs what it would do and ``outputs`` is empty, the same as the
    Terraform backend behind a DryRunRunner.
    """

    def __init__(
        self,
        config_path: Path,
        project_name: str,
        stack_name: str,
        env: Optional[Mapping[str, str]] = None,
        backend_url: Optional[str] = None,
        secrets: Optional[Mapping[str, str]] = None,
        environment: Optional[str] = None,
        plan_dir: Optional[Path] = None,
        dry_run: bool = False,
    ):
        self.config_path = Path(config_path)
        self.project_name = project_name
        self.stack_name = stack_name
        self.env = dict(env or {})
        self.secrets = dict(secrets or {})
        self.environment = environment
        self.backend_url = backend_url
        self.plan_dir = Path(plan_dir) if plan_dir else self.config_path.parent
        self.dry_run = dry_run
        self._stack = None

    @property
    def stack(self):
        if self._stack is None:
            raise DeployError(f"Pulumi stack '{self.stack_name}' used before init()")
        return self._stack

    @contextmanager
    def _automation(self, action: str):
        try:
            yield
        except auto.CommandError as e:
            raise DeployError(f"pulumi {action} failed for stack '{self.stack_name}': {e}") from e

    def _skip(self, action: str) -> bool:
        if self.dry_run:
            logger.info(f"[dry-run] pulumi {action} (stack {self.stack_name}, {self.config_path.name})")
        return self.dry_run

    def _config(self):
        try:
            return parse_config(load_config(str(self.config_path)))
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot read infrastructure definition {self.config_path}: {e}") from e

    def init(self, upgrade: bool = False, migrate_state: bool = False) -> None:
        location = self._config().location
        if self._skip("stack select --create"):
            return

        settings = auto.ProjectSettings(
            name=self.project_name,
            runtime="python",
            backend=auto.ProjectBackend(self.backend_url) if self.backend_url else None,
        )
        opts = auto.LocalWorkspaceOptions(
            project_settings=settings,
            env_vars=self.env,
        )
        environ = dict(os.environ)
        environ.update(self.secrets)
        program = make_program(str(self.config_path), self.environment, environ)
        with self._automation("stack select"):
            self._stack = auto.create_or_select_stack(
                stack_name=self.stack_name,
                project_name=self.project_name,
                program=program,
                opts=opts,
            )
            self._stack.set_config("azure-native:location", auto.ConfigValue(location))
        # Plugin upgrades and state migration are handled by the pulumi CLI itself

    def format_check(self) -> None:
        problems = lint_config(self._config())
        if problems:
            raise ConfigError(f"{self.config_path}: " + "; ".join(problems))

    def plan(self, out: Optional[str] = None) -> Optional[Path]:
        """Preview the stack; with ``out``, save the change summary as ``<out>.json`` in plan_dir."""
        if self._skip("preview"):
            return None
        with self._automation("preview"):
            result = self.stack.preview(on_output=logger.info)
        logger.info(f"Planned changes for {self.stack_name}: {result.change_summary}")
        if not out:
            return None

        self.plan_dir.mkdir(parents=True, exist_ok=True)
        plan_path = self.plan_dir / f"{Path(out).stem}.json"
        with open(plan_path, "w") as file:
            json.dump({str(k): v for k, v in result.change_summary.items()}, file, indent=2)
        return plan_path

    def apply(self) -> None:
        if self._skip("up"):
            return
        with self._automation("up"):
            result = self.stack.up(on_output=logger.info)
        logger.info(f"Applied {self.stack_name}: {result.summary.result}")

    def outputs(self) -> Dict[str, Any]:
        if self._skip("stack output"):
            return {}
        with self._automation("stack output"):
            outputs = self.stack.outputs()
        return {
            key: {"value": output.value, "sensitive": output.secret}
            for key, output in outputs.items()
        }


def make_backend(
    settings: DeploySettings,
    stage: str,
    runner: CommandRunner,
    env: Optional[Mapping[str, str]] = None,
    variables: Optional[Mapping[str, str]] = None,
    environment: Optional[str] = None,
    plan_dir: Optional[Path] = None,
) -> IacBackend:
    """Backend for the bootstrap or main stage, per ``iac.backend``."""
    iac = settings.iac
    if stage not in (BOOTSTRAP, MAIN):
        raise ConfigError(f"Unknown infrastructure stage: {stage}")

    if iac.backend == "terraform":
        working_dir = iac.bootstrap_dir if stage == BOOTSTRAP else iac.main_dir
        return TerraformCli(settings.path(working_dir), runner, env, variables)

    if iac.backend == "pulumi":
        config_file = iac.bootstrap_config if stage == BOOTSTRAP else iac.main_config
        stack_name = f"{stage}-{environment}" if environment else stage
        # Program secrets are read from the environment as "secret:<VAR>"
        secrets = {key.upper(): value for key, value in (variables or {}).items()}
        return PulumiStack(
            settings.path(config_file),
            iac.project_name,
            stack_name,
            env=env,
            backend_url=iac.backend_url,
            secrets=secrets,
            environment=environment,
            plan_dir=plan_dir,
            dry_run=runner.dry_run,
        )

    raise ConfigError(f"Unsupported IaC backend: {iac.backend}")
