"""
Cluster coordinator boundary

The coordinator calls the agent with one of a fixed set of actions and reads
back an OCF exit code. ``dispatch`` is the only place where controller
outcomes and errors become exit codes; nothing escapes it as an exception.
"""

import grp
import logging
import os
import pwd
import shutil
import time
from dataclasses import dataclass
from typing import Mapping, Optional, Union
from xml.sax.saxutils import escape

from ..core.config import AgentConfig
from ..core.errors import (
    ConfigurationError,
    InvalidTransitionError,
    MdshaError,
    NotInstalledError,
    OcfExitCode,
    VerificationFailedError,
)
from ..core.metrics import AGENT_ACTIONS
from .controller import RoleController, RoleState

logger = logging.getLogger(__name__)

STATE_EXIT_CODES = {
    RoleState.RUNNING_SHADOW: OcfExitCode.SUCCESS,
    RoleState.RUNNING_MASTER: OcfExitCode.RUNNING_MASTER,
    RoleState.NOT_RUNNING: OcfExitCode.NOT_RUNNING,
    RoleState.FAILED_MASTER: OcfExitCode.FAILED_MASTER,
}


@dataclass(frozen=True)
class Start:
    name = "start"


@dataclass(frozen=True)
class Stop:
    name = "stop"


@dataclass(frozen=True)
class Monitor:
    name = "monitor"


@dataclass(frozen=True)
class Promote:
    name = "promote"


@dataclass(frozen=True)
class Demote:
    name = "demote"


@dataclass(frozen=True)
class Notify:
    event: str
    hint: Optional[str] = None
    name = "notify"


@dataclass(frozen=True)
class Reload:
    name = "reload"


@dataclass(frozen=True)
class Validate:
    name = "validate-all"


@dataclass(frozen=True)
class MetaData:
    name = "meta-data"


Action = Union[Start, Stop, Monitor, Promote, Demote, Notify, Reload, Validate, MetaData]

_SIMPLE_ACTIONS = {
    cls.name: cls for cls in (Start, Stop, Monitor, Promote, Demote, Reload, Validate, MetaData)
}


def parse_action(name: str, environ: Optional[Mapping[str, str]] = None) -> Action:
    """Build an action from the agent's argument and the coordinator's environment"""
    environ = os.environ if environ is None else environ
    if name == "notify":
        notify_type = environ.get("OCF_RESKEY_CRM_meta_notify_type", "")
        operation = environ.get("OCF_RESKEY_CRM_meta_notify_operation", "")
        promoted = environ.get("OCF_RESKEY_CRM_meta_notify_promote_uname", "").split()
        return Notify(event=f"{notify_type}-{operation}", hint=promoted[0] if promoted else None)
    if name == "status":
        return Monitor()
    try:
        return _SIMPLE_ACTIONS[name]()
    except KeyError:
        raise ValueError(f"unknown action {name!r}") from None


def validate_config(config: AgentConfig):
    """Checks behind ``validate-all``"""
    if not config.config_file.is_file():
        raise ConfigurationError(f"base configuration {config.config_file} does not exist")
    if not os.access(config.config_file, os.R_OK):
        raise ConfigurationError(f"base configuration {config.config_file} is not readable")
    if config.data_dir.exists() and not config.data_dir.is_dir():
        raise ConfigurationError(f"data directory {config.data_dir} is not a directory")
    if shutil.which(config.master_binary) is None:
        raise NotInstalledError(f"{config.master_binary} not found")
    if config.probe_mode == "porcelain" and shutil.which(config.admin_binary) is None:
        raise NotInstalledError(f"{config.admin_binary} not found")
    try:
        if config.user:
            pwd.getpwnam(config.user)
        if config.group:
            grp.getgrnam(config.group)
    except KeyError as e:
        raise ConfigurationError(f"unknown user or group: {e}") from None


async def dispatch(controller: Optional[RoleController], action: Action,
                   config: Optional[AgentConfig] = None) -> int:
    """Run one action and map its outcome to an OCF exit code"""
    started = time.monotonic()
    try:
        exit_code = await _run_action(controller, action, config)
    except (InvalidTransitionError, VerificationFailedError) as e:
        logger.error(f"{action.name} refused: {e}")
        exit_code = e.exit_code
    except MdshaError as e:
        logger.error(f"{action.name} failed: {e}")
        exit_code = e.exit_code
    except Exception as e:
        logger.exception(f"{action.name} failed unexpectedly: {e}")
        exit_code = OcfExitCode.ERR_GENERIC

    AGENT_ACTIONS.labels(action=action.name, exit_code=str(exit_code)).inc()
    logger.debug(f"{action.name} finished with {exit_code} in {time.monotonic() - started:.2f}s")
    return exit_code


async def _run_action(controller: Optional[RoleController], action: Action,
                      config: Optional[AgentConfig]) -> int:
    if isinstance(action, MetaData):
        print(metadata_xml())
        return OcfExitCode.SUCCESS
    if isinstance(action, Validate):
        if config is None:
            raise ConfigurationError("no configuration to validate")
        validate_config(config)
        return OcfExitCode.SUCCESS

    if controller is None:
        raise ConfigurationError(f"{action.name} needs a configured controller")

    if isinstance(action, Monitor):
        result = await controller.monitor()
        return STATE_EXIT_CODES[result.state]
    if isinstance(action, Start):
        await controller.start()
    elif isinstance(action, Stop):
        await controller.stop()
    elif isinstance(action, Promote):
        await controller.promote()
    elif isinstance(action, Demote):
        await controller.demote()
    elif isinstance(action, Notify):
        await controller.notify(action.event, action.hint)
    elif isinstance(action, Reload):
        await controller.reload()
    else:
        return OcfExitCode.ERR_UNIMPLEMENTED
    return OcfExitCode.SUCCESS


def metadata_xml() -> str:
    """Static OCF descriptor of parameters and actions"""
    parameters = []
    for name, field in AgentConfig.model_fields.items():
        default = field.default if field.default is not None else ""
        parameters.append(
            f'    <parameter name="{name}" unique="0" required="0">\n'
            f'      <longdesc lang="en">{escape(field.description or name)}</longdesc>\n'
            f'      <shortdesc lang="en">{escape(name)}</shortdesc>\n'
            f'      <content type="string" default="{escape(str(default))}"/>\n'
            f'    </parameter>'
        )

    return "\n".join([
        '<?xml version="1.0"?>',
        '<!DOCTYPE resource-agent SYSTEM "ra-api-1.dtd">',
        '<resource-agent name="metadataserver">',
        '  <version>1.0</version>',
        '  <longdesc lang="en">Manages a metadata server as a master/shadow multi-state resource.</longdesc>',
        '  <shortdesc lang="en">Metadata server master/shadow agent</shortdesc>',
        '  <parameters>',
        *parameters,
        '  </parameters>',
        '  <actions>',
        '    <action name="start" timeout="1800s"/>',
        '    <action name="stop" timeout="1800s"/>',
        '    <action name="monitor" depth="0" timeout="30s" interval="20s" role="Slave"/>',
        '    <action name="monitor" depth="0" timeout="30s" interval="10s" role="Master"/>',
        '    <action name="promote" timeout="1800s"/>',
        '    <action name="demote" timeout="1800s"/>',
        '    <action name="notify" timeout="30s"/>',
        '    <action name="reload" timeout="30s"/>',
        '    <action name="validate-all" timeout="10s"/>',
        '    <action name="meta-data" timeout="5s"/>',
        '  </actions>',
        '</resource-agent>',
    ])
