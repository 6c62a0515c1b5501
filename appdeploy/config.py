# config.py
"""
Configuration for both halves of the deployment.

The infrastructure definition (``config.yaml``/``bootstrap.yaml``) describes
Azure resources for the Pulumi program. The pipeline settings
(``deploy.yaml``) describe how the two workflows run: trigger filters,
artifact names, image naming and which environment variables hold secrets.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from dotenv import load_dotenv

from appdeploy.errors import ConfigError
from appdeploy.log import register_secrets

REQUIRED_KEYS = ["team", "service", "environment", "location"]


@dataclass
class AzureResource:
    name: str
    type: str
    args: Dict


@dataclass
class Config:
    team: str
    service: str
    environment: str
    location: str
    tags: Dict[str, str]
    azure_resources: List[AzureResource]
    outputs: Dict[str, str]


def load_config(file_path: str) -> Dict[str, Any]:
    """Load and validate YAML configuration from the given file path."""
    with open(file_path, "r") as file:
        config_data = yaml.safe_load(file)

    if not isinstance(config_data, dict):
        raise ConfigError(f"Configuration file {file_path} must contain a mapping")

    for key in REQUIRED_KEYS:
        if key not in config_data:
            raise ConfigError(f"Missing required configuration key: {key}")

    return config_data


def parse_config(config_data: Dict[str, Any]) -> Config:
    resources = []
    for index, entry in enumerate(config_data.get("azure_resources") or []):
        if "name" not in entry or "type" not in entry:
            raise ConfigError(f"azure_resources[{index}] needs both 'name' and 'type'")
        resources.append(AzureResource(entry["name"], entry["type"], entry.get("args") or {}))

    return Config(
        team=config_data["team"],
        service=config_data["service"],
        environment=config_data["environment"],
        location=config_data["location"],
        tags=config_data.get("tags") or {},
        azure_resources=resources,
        outputs=config_data.get("outputs") or {},
    )


@dataclass
class SecretNames:
    azure_credentials: str = "AZURE_CREDENTIALS"
    client_id: str = "AZURE_CLIENT_ID"
    client_secret: str = "AZURE_CLIENT_SECRET"
    mysql_admin_username: str = "MYSQL_ADMIN_USERNAME"
    mysql_admin_password: str = "MYSQL_ADMIN_PASSWORD"


@dataclass
class IacSettings:
    backend: str = "terraform"
    bootstrap_dir: str = "terraform/bootstrap"
    main_dir: str = "terraform"
    plan_file: str = "tfplan"
    bootstrap_config: str = "bootstrap.yaml"
    main_config: str = "config.yaml"
    project_name: str = "appdeploy-infra"
    backend_url: Optional[str] = None


@dataclass
class InfrastructureSettings:
    name: str = "Infrastructure"
    branches: List[str] = field(default_factory=lambda: ["main"])
    paths: List[str] = field(default_factory=lambda: ["terraform/*.tf"])
    environments: List[str] = field(
        default_factory=lambda: ["development", "staging", "production"]
    )
    bootstrap_resource_group: str = "tfstate-rg"
    outputs_artifact: str = "infrastructure-outputs"
    outputs_file: str = "infrastructure-outputs.json"
    plan_artifact: str = "infrastructure-plan"
    plan_retention_days: int = 5


@dataclass
class DeliverySettings:
    name: str = "Build and Deploy"
    branches: List[str] = field(default_factory=lambda: ["main"])
    paths: List[str] = field(default_factory=lambda: ["app.py", "Dockerfile"])
    upstream: str = "Infrastructure"
    outputs_artifact: str = "infrastructure-outputs"
    outputs_file: str = "infrastructure-outputs.json"
    image_name: str = "mysql_flask_app"
    image_tag: str = "v1"
    context: str = "."
    dockerfile: str = "Dockerfile"
    acr_role: str = "AcrPull"


@dataclass
class DeploySettings:
    project: str
    base_dir: Path
    main_branch: str = "main"
    state_dir: str = ".appdeploy"
    compose_file: str = "docker-compose.yaml"
    iac: IacSettings = field(default_factory=IacSettings)
    infrastructure: InfrastructureSettings = field(default_factory=InfrastructureSettings)
    delivery: DeliverySettings = field(default_factory=DeliverySettings)
    secrets: SecretNames = field(default_factory=SecretNames)

    def path(self, relative: str) -> Path:
        return self.base_dir / relative

    @property
    def artifacts_dir(self) -> Path:
        return self.path(self.state_dir) / "artifacts"


def _section(cls, data: Optional[Mapping[str, Any]], where: str):
    data = data or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Section '{where}' must be a mapping")
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ConfigError(f"Unknown keys in '{where}': {', '.join(sorted(unknown))}")
    return cls(**data)


def check_settings(settings: DeploySettings) -> None:
    """Reject settings whose two workflows would not line up."""
    infra, delivery = settings.infrastructure, settings.delivery
    if infra.outputs_artifact != delivery.outputs_artifact:
        raise ConfigError(
            f"Deploy workflow reads artifact '{delivery.outputs_artifact}' but the "
            f"infrastructure workflow publishes '{infra.outputs_artifact}'"
        )
    if infra.outputs_file != delivery.outputs_file:
        raise ConfigError(
            f"Deploy workflow reads '{delivery.outputs_file}' but the infrastructure "
            f"workflow writes '{infra.outputs_file}'"
        )
    if delivery.upstream != infra.name:
        raise ConfigError(
            f"Deploy upstream '{delivery.upstream}' is not the infrastructure "
            f"workflow '{infra.name}'"
        )
    if settings.iac.backend not in ("terraform", "pulumi"):
        raise ConfigError(f"Unsupported IaC backend: {settings.iac.backend}")
    if not delivery.image_tag:
        raise ConfigError("delivery.image_tag must not be empty")


def load_settings(file_path: str) -> DeploySettings:
    with open(file_path, "r") as file:
        data = yaml.safe_load(file) or {}

    if not isinstance(data, dict):
        raise ConfigError(f"Settings file {file_path} must contain a mapping")
    if "project" not in data:
        raise ConfigError("Missing required configuration key: project")

    settings = DeploySettings(
        project=data["project"],
        base_dir=Path(file_path).resolve().parent,
        main_branch=data.get("main_branch", "main"),
        state_dir=data.get("state_dir", ".appdeploy"),
        compose_file=data.get("compose_file", "docker-compose.yaml"),
        iac=_section(IacSettings, data.get("iac"), "iac"),
        infrastructure=_section(InfrastructureSettings, data.get("infrastructure"), "infrastructure"),
        delivery=_section(DeliverySettings, data.get("delivery"), "delivery"),
        secrets=_section(SecretNames, data.get("secrets"), "secrets"),
    )
    check_settings(settings)
    return settings


class Secrets:
    """Secret values looked up by their role, read from the environment."""

    def __init__(self, names: SecretNames, environ: Optional[Mapping[str, str]] = None):
        self.names = names
        self._environ = os.environ if environ is None else environ
        register_secrets(self._environ.get(getattr(names, f.name)) for f in fields(names))

    @classmethod
    def from_env(cls, names: SecretNames, dotenv_path: Optional[str] = None) -> "Secrets":
        load_dotenv(dotenv_path)  # take environment variables from .env
        return cls(names)

    def get(self, role: str) -> Optional[str]:
        return self._environ.get(getattr(self.names, role))

    def require(self, role: str) -> str:
        value = self.get(role)
        if not value:
            raise ConfigError(f"Secret {getattr(self.names, role)} is not set")
        return value
