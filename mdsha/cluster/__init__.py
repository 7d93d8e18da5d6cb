"""Control-endpoint clients: status probing, admin authentication, promotion"""

from .auth import AuthChannel, AuthSession
from .prober import PorcelainStatusProber, RpcStatusProber, StatusProber
from .promotion import PromotionClient
from .schemas import ConnectionState, NodeStatus, Personality
