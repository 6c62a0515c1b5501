"""Thin wrapper over the ``az`` command line used by both workflows."""

import json
import logging
from dataclasses import dataclass

from appdeploy.commands import CommandRunner
from appdeploy.errors import ConfigError
from appdeploy.log import register_secrets

logger = logging.getLogger(__name__)


@dataclass
class AzureCredentials:
    """The service principal JSON printed by ``az ad sp create-for-rbac --sdk-auth``."""

    client_id: str
    client_secret: str
    subscription_id: str
    tenant_id: str

    @classmethod
    def parse(cls, raw: str) -> "AzureCredentials":
        try:
            data = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as e:
            raise ConfigError(f"Azure credentials are not valid JSON: {e}")

        try:
            credentials = cls(
                client_id=data["clientId"],
                client_secret=data["clientSecret"],
                subscription_id=data["subscriptionId"],
                tenant_id=data["tenantId"],
            )
        except (TypeError, KeyError) as e:
            raise ConfigError(f"Azure credentials are missing {e}")

        # The whole JSON is masked, but the secret also travels on its own
        register_secrets([credentials.client_secret])
        return credentials

    def terraform_env(self) -> dict:
        return {"ARM_SUBSCRIPTION_ID": self.subscription_id}

    def pulumi_env(self) -> dict:
        return {
            "ARM_CLIENT_ID": self.client_id,
            "ARM_CLIENT_SECRET": self.client_secret,
            "ARM_SUBSCRIPTION_ID": self.subscription_id,
            "ARM_TENANT_ID": self.tenant_id,
        }


class AzureCli:
    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def login(self, credentials: AzureCredentials) -> None:
        self.runner.run([
            "az", "login", "--service-principal",
            "--username", credentials.client_id,
            "--password", credentials.client_secret,
            "--tenant", credentials.tenant_id,
            "--output", "none",
        ])
        self.runner.run(["az", "account", "set", "--subscription", credentials.subscription_id])

    def group_exists(self, name: str) -> bool:
        result = self.runner.run(["az", "group", "exists", "--name", name])
        exists = result.stdout.strip().lower() == "true"
        logger.info(f"Resource group '{name}' exists: {exists}")
        return exists

    def assign_role(self, assignee: str, role: str, scope: str) -> None:
        self.runner.run([
            "az", "role", "assignment", "create",
            "--assignee", assignee,
            "--role", role,
            "--scope", scope,
        ])

    def set_webapp_container(self, name: str, resource_group: str, image: str, registry_url: str) -> None:
        self.runner.run([
            "az", "webapp", "config", "container", "set",
            "--name", name,
            "--resource-group", resource_group,
            "--docker-custom-image-name", image,
            "--docker-registry-server-url", registry_url,
        ])
