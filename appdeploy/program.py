from typing import Callable, Mapping, Optional

import pulumi

from appdeploy.azurenative import AzureResourceBuilder
from appdeploy.config import load_config, parse_config


def run_program(
    config_path: str,
    environment: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> AzureResourceBuilder:
    """Declare the resources of ``config_path`` and export its outputs."""
    config_data = load_config(config_path)
    if environment:
        config_data["environment"] = environment

    try:
        builder = AzureResourceBuilder(parse_config(config_data), environ)
    except Exception as e:
        pulumi.log.error(f"Failed to initialize AzureResourceBuilder: {e}")
        raise

    try:
        builder.build()
    except Exception as e:
        pulumi.log.error(f"Failed during resource build: {e}")
        raise

    builder.export_outputs()
    return builder


def make_program(
    config_path: str,
    environment: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Callable[[], None]:
    def program():
        run_program(config_path, environment, environ)

    return program
