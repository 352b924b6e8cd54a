"""
Integrations package initialization.
Exports the collaborator clients and the factory choosing between real and simulated ones.
"""
from dataclasses import dataclass
from typing import Optional

from .base import GatewayLookup, BatchNotifier, StatusTrigger
from .search_index import SearchIndexGatewayLookup
from .notify_facade import NotifyFacadeClient
from .status_gateway import StatusGatewayClient
from .simulated import SimulatedGatewayServices


@dataclass(frozen=True)
class Collaborators:
    lookup: GatewayLookup
    notifier: BatchNotifier
    trigger: StatusTrigger


def build_collaborators(use_simulated: Optional[bool] = None) -> Collaborators:
    """Build the collaborator set from configuration."""
    from payment_check.config import USE_SIMULATED_GATEWAYS

    if USE_SIMULATED_GATEWAYS if use_simulated is None else use_simulated:
        services = SimulatedGatewayServices()
        return Collaborators(lookup=services, notifier=services, trigger=services)
    return Collaborators(
        lookup=SearchIndexGatewayLookup(),
        notifier=NotifyFacadeClient(),
        trigger=StatusGatewayClient(),
    )


__all__ = [
    "GatewayLookup",
    "BatchNotifier",
    "StatusTrigger",
    "SearchIndexGatewayLookup",
    "NotifyFacadeClient",
    "StatusGatewayClient",
    "SimulatedGatewayServices",
    "Collaborators",
    "build_collaborators",
]
