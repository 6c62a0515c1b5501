import logging
from dataclasses import dataclass
from typing import Protocol

from appdeploy.triggers import TriggerEvent, should_apply

logger = logging.getLogger(__name__)

SKIP_MESSAGE = "Bootstrap infrastructure already exists, skipping deployment"


class ResourceGroupLookup(Protocol):
    def group_exists(self, name: str) -> bool:
        ...


@dataclass
class GateDecision:
    exists: bool
    plan: bool
    apply: bool

    @property
    def message(self) -> str:
        if self.exists:
            return SKIP_MESSAGE
        if self.apply:
            return "Resource group is absent, planning and applying"
        return "Resource group is absent, planning only"


class ProvisioningGate:
    """
    Decide whether bootstrap provisioning runs at all.

    The resource group is looked up when ``decide`` is called, never cached.
    Only presence is checked: drift and half-applied state go unnoticed.
    """

    def __init__(self, lookup: ResourceGroupLookup, resource_group: str):
        self.lookup = lookup
        self.resource_group = resource_group

    def decide(self, event: TriggerEvent, main_branch: str) -> GateDecision:
        exists = self.lookup.group_exists(self.resource_group)
        if exists:
            decision = GateDecision(exists=True, plan=False, apply=False)
        else:
            decision = GateDecision(exists=False, plan=True, apply=should_apply(event, main_branch))
        logger.info(f"Provisioning gate for '{self.resource_group}': {decision.message}")
        return decision
