"""
Error taxonomy for the metadata-server HA agent.

Every error carries the OCF exit code the resource agent answers with, so
the coordinator boundary can resolve any failure into a result code without
guessing. ``retryable`` tells the operator-facing paths whether trying the
same call again can succeed without intervention.
"""

from typing import Optional


class OcfExitCode:
    """Exit codes expected by the cluster resource manager"""
    SUCCESS = 0
    ERR_GENERIC = 1
    ERR_ARGS = 2
    ERR_UNIMPLEMENTED = 3
    ERR_PERM = 4
    ERR_INSTALLED = 5
    ERR_CONFIGURED = 6
    NOT_RUNNING = 7
    RUNNING_MASTER = 8
    FAILED_MASTER = 9


class MdshaError(Exception):
    """Base exception for the HA agent"""
    exit_code = OcfExitCode.ERR_GENERIC
    retryable = False


class UnreachableError(MdshaError):
    """Node process absent or network failure"""
    retryable = True


class MalformedResponseError(MdshaError):
    """The node answered something that does not follow the protocol"""
    pass


class WrongSecretError(MdshaError):
    """The node rejected the challenge digest"""
    exit_code = OcfExitCode.ERR_PERM


# Promotion client errors

class PromotionError(MdshaError):
    """Base class for failures of the promotion RPC"""
    pass


class UnauthorizedError(PromotionError):
    """Wrong secret, never retried with the same credential"""
    exit_code = OcfExitCode.ERR_PERM


class RejectedError(PromotionError):
    """Node refused the become-master command"""
    retryable = True

    def __init__(self, status: int, message: Optional[str] = None):
        super().__init__(message or f"node rejected promotion with status {status}")
        self.status = status


class VerificationFailedError(PromotionError):
    """Node claimed success but a follow-up probe disagrees"""
    pass


# Configuration overlay errors

class ConfigError(MdshaError):
    """Overlay could not be read or rewritten"""
    pass


class LockTimeoutError(ConfigError):
    """Overlay lock was not acquired within its bounded wait"""
    retryable = True


# Role controller errors

class RoleError(MdshaError):
    """Base class for state machine failures"""
    pass


class UnexpectedStatusError(RoleError):
    """Probe returned a personality/connection pair outside the known table"""

    def __init__(self, personality: str, connection: str):
        super().__init__(f"unexpected node status: personality={personality} connection={connection}")
        self.personality = personality
        self.connection = connection


class InvalidTransitionError(RoleError):
    """Requested action is not valid from the current role state"""

    def __init__(self, action: str, state: str):
        super().__init__(f"cannot {action} from state {state}")
        self.action = action
        self.state = state


class PromotionFailedError(RoleError):
    """Node did not reach the master role after promotion"""
    pass


class StartFailedError(RoleError):
    """Process did not come up in a running role"""
    pass


# Agent configuration errors

class ConfigurationError(MdshaError):
    """Agent parameters are invalid"""
    exit_code = OcfExitCode.ERR_CONFIGURED


class NotInstalledError(MdshaError):
    """A required binary or file is missing on this host"""
    exit_code = OcfExitCode.ERR_INSTALLED
