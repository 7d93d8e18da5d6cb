"""
mdsha - Metadata Server High Availability

Master/shadow role management for replicated filesystem metadata servers
"""

__version__ = "1.0.0"

from .cluster import NodeStatus, PromotionClient, RpcStatusProber, PorcelainStatusProber
from .failover import ConfigOverlay, RoleController, RoleState

__all__ = [
    "NodeStatus", "PromotionClient", "RpcStatusProber", "PorcelainStatusProber",
    "ConfigOverlay", "RoleController", "RoleState",
]
