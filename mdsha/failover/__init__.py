"""Role state machine and the coordinator boundary"""

from .controller import MonitorResult, RetryPolicy, RoleController, RoleState
from .overlay import ConfigOverlay
