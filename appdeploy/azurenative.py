import inspect
import os
import re
from typing import Any, Dict, List

import pulumi
import pulumi_azure_native as azure_native

from appdeploy.config import Config
from appdeploy.errors import ConfigError

AZURE_LOCATION_ABBREVIATIONS = {
    "eastus": "eus",
    "eastus2": "eus2",
    "westus": "wus",
    "westus2": "wus2",
    "westus3": "wus3",
    "centralus": "cus",
    "northcentralus": "ncus",
    "southcentralus": "scus",
    "canadacentral": "ccc",
    "northeurope": "ne",
    "westeurope": "we",
    "uksouth": "uks",
    "ukwest": "ukw",
    "francecentral": "frc",
    "germanywestcentral": "gwc",
    "swedencentral": "swc",
    "switzerlandnorth": "swn",
    "australiaeast": "aue",
    "japaneast": "jpe",
    "koreacentral": "kc",
    "southeastasia": "sea",
    "eastasia": "ea",
    "centralindia": "ci",
}

REF_PREFIX = "ref:"
ENV_PREFIX = "env:"
SECRET_PREFIX = "secret:"


def to_snake_case(name: str) -> str:
    return re.sub(r'(?<!^)(?=[A-Z])', '_', name).lower()


def split_type(resource_type: str):
    """``"web.WebApp"`` -> ``("web", "WebApp")``."""
    if resource_type.count(".") != 1:
        raise ConfigError(f"Resource type '{resource_type}' must look like 'module.Class'")
    return resource_type.split(".", 1)


def references(value: Any) -> List[str]:
    """Names of the resources a config value points at through ``ref:``."""
    if isinstance(value, dict):
        return [r for v in value.values() for r in references(v)]
    if isinstance(value, list):
        return [r for v in value for r in references(v)]
    if isinstance(value, str) and value.startswith(REF_PREFIX):
        return [value[len(REF_PREFIX):].split(".", 1)[0]]
    return []


def lint_config(config: Config) -> List[str]:
    """Structural problems in an infrastructure definition, without touching Azure."""
    problems = []
    declared = set()
    for resource in config.azure_resources:
        if resource.name in declared:
            problems.append(f"Resource '{resource.name}' is declared twice")
        try:
            split_type(resource.type)
        except ConfigError as e:
            problems.append(str(e))
        for ref in references(resource.args):
            if ref not in declared:
                problems.append(f"Resource '{resource.name}' references '{ref}' before it is declared")
        declared.add(resource.name)

    for output, value in config.outputs.items():
        for ref in references(value):
            if ref not in declared:
                problems.append(f"Output '{output}' references unknown resource '{ref}'")
    return problems


class AzureResourceBuilder:
    def __init__(self, config: Config, environ=None):
        self.config = config
        self.environ = os.environ if environ is None else environ
        self.resources = {}

    def get_abbreviation(self, location: str) -> str:
        # Unknown locations fall back to their first 3 letters
        return AZURE_LOCATION_ABBREVIATIONS.get(location.lower(), location[:3].lower())

    def generate_resource_name(self, base_name: str) -> str:
        parts = [
            self.config.team,
            self.config.service,
            self.config.environment,
            self.get_abbreviation(self.config.location),
            base_name,
        ]
        return "-".join(parts).lower()

    def resolve_reference(self, ref_text: str) -> Any:
        # "ref:webapp.identity.principal_id" walks attributes; a bare name means ".id"
        ref_res, _, ref_path = ref_text.partition(".")
        if ref_res not in self.resources:
            raise ConfigError(f"Referenced resource '{ref_res}' not found.")

        value = self.resources[ref_res]
        for attr in (ref_path or "id").split("."):
            value = getattr(value, attr, None)
            if value is None:
                raise ConfigError(f"Attribute '{ref_path}' not found on resource '{ref_res}'")
        return value

    def resolve_value(self, value: Any) -> Any:
        if isinstance(value, dict):
            return self.resolve_args(value)
        if isinstance(value, list):
            return [self.resolve_value(item) for item in value]
        if not isinstance(value, str):
            return value

        if value.startswith(REF_PREFIX):
            return self.resolve_reference(value[len(REF_PREFIX):])
        if value.startswith(ENV_PREFIX) or value.startswith(SECRET_PREFIX):
            secret = value.startswith(SECRET_PREFIX)
            var = value.split(":", 1)[1]
            if var not in self.environ:
                raise ConfigError(f"Environment variable '{var}' is not set")
            return pulumi.Output.secret(self.environ[var]) if secret else self.environ[var]
        return value

    def resolve_args(self, args: dict) -> dict:
        return {key: self.resolve_value(value) for key, value in args.items()}

    def lookup_existing(self, name: str, module, class_name: str, resolved_args: dict):
        get_func_name = f"get_{to_snake_case(class_name)}"
        get_func = getattr(module, get_func_name, None)
        if get_func is None:
            pulumi.log.warn(
                f"Function '{get_func_name}' not found. Proceeding to create new resource '{name}'."
            )
            return None

        params = inspect.signature(get_func).parameters
        get_params = {k: v for k, v in resolved_args.items() if k in params and k != "opts"}
        required = {
            p for p, spec in params.items()
            if p != "opts" and spec.default is inspect.Parameter.empty
        }
        missing = required - set(get_params)
        if missing:
            pulumi.log.warn(
                f"Missing required params {missing} for existing resource '{name}'. "
                f"Skipping the lookup attempt."
            )
            return None

        pulumi.log.info(f"Fetched existing resource '{name}' via '{get_func_name}'")
        return get_func(**get_params)

    def build(self):
        for resource_cfg in self.config.azure_resources:
            name = resource_cfg.name
            args = dict(resource_cfg.args)
            is_existing = args.pop("existing", False)
            resolved_args = self.resolve_args(args)

            module_name, class_name = split_type(resource_cfg.type)
            module = getattr(azure_native, module_name, None)
            ResourceClass = getattr(module, class_name, None) if module else None
            if ResourceClass is None:
                raise ConfigError(f"Unknown Azure resource type '{resource_cfg.type}' for '{name}'")

            if is_existing:
                existing = self.lookup_existing(name, module, class_name, resolved_args)
                if existing is not None:
                    self.resources[name] = existing
                    continue

            init_params = inspect.signature(ResourceClass.__init__).parameters

            if "tags" in init_params and self.config.tags:
                resolved_args.setdefault("tags", dict(self.config.tags))
            elif "tags" not in init_params:
                resolved_args.pop("tags", None)

            if "location" in init_params:
                resolved_args.setdefault("location", self.config.location)
            else:
                resolved_args.pop("location", None)

            pulumi_name = self.generate_resource_name(name)
            self.resources[name] = ResourceClass(pulumi_name, **resolved_args)
            pulumi.log.info(f"Created resource: {pulumi_name} ({resource_cfg.type})")

        return self.resources

    def resolve_outputs(self) -> Dict[str, Any]:
        return {key: self.resolve_value(value) for key, value in self.config.outputs.items()}

    def export_outputs(self) -> None:
        for key, value in self.resolve_outputs().items():
            pulumi.export(key, value)
