#!/usr/bin/env python3
"""
Metadata server resource agent

Entry point called by the cluster resource manager:

    mdsha-agent start|stop|monitor|promote|demote|notify|reload|validate-all|meta-data

Parameters arrive as ``OCF_RESKEY_*`` environment variables; the exit code is
the OCF result of the action.
"""

import argparse
import asyncio
import logging
import os
import socket
import sys
from typing import List, Optional

from ..core.config import load_config
from ..core.errors import ConfigurationError, OcfExitCode
from ..core.logs import setup_logging
from ..core.metrics import write_metrics
from ..failover.controller import RoleController
from ..failover.coordinator import MetaData, Validate, dispatch, parse_action

logger = logging.getLogger(__name__)

ACTIONS = ["start", "stop", "monitor", "status", "promote", "demote", "notify",
           "reload", "validate-all", "meta-data"]


def parse_arguments(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(
        description="Metadata server master/shadow resource agent",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    parser.add_argument(
        'action',
        type=str,
        help=f"Agent action ({', '.join(ACTIONS)})"
    )
    return parser.parse_args(argv)


def node_name() -> str:
    return os.environ.get("OCF_RESKEY_CRM_meta_on_node") or socket.gethostname()


def run(action_name: str) -> int:
    try:
        action = parse_action(action_name)
    except ValueError as e:
        logger.error(str(e))
        return OcfExitCode.ERR_UNIMPLEMENTED

    if isinstance(action, MetaData):
        return asyncio.run(dispatch(None, action))

    try:
        config = load_config()
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return e.exit_code

    setup_logging(config.log_level, config.log_file)
    logger.debug(f"Running {action.name} on {node_name()}")

    controller = None
    if not isinstance(action, Validate):
        try:
            controller = RoleController.from_config(config, node_name())
        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return e.exit_code
    exit_code = asyncio.run(dispatch(controller, action, config))
    write_metrics(config.metrics_file)
    return exit_code


def main(argv: Optional[List[str]] = None):
    setup_logging(os.environ.get("OCF_RESKEY_log_level", "INFO"))
    args = parse_arguments(argv)
    sys.exit(run(args.action))


if __name__ == "__main__":
    main()
