"""Prometheus metrics for agent actions, written to a textfile collector."""

import logging
from pathlib import Path
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, write_to_textfile

logger = logging.getLogger(__name__)

REGISTRY = CollectorRegistry()

AGENT_ACTIONS = Counter(
    'mdsha_agent_actions', 'Resource agent actions by outcome',
    ['action', 'exit_code'], registry=REGISTRY
)
AGENT_PROMOTIONS = Counter(
    'mdsha_agent_promotions', 'Promotion attempts by outcome',
    ['outcome'], registry=REGISTRY
)
AGENT_PROBE_FAILURES = Counter(
    'mdsha_agent_probe_failures', 'Status probe failures by kind',
    ['kind'], registry=REGISTRY
)
AGENT_SCORE = Gauge(
    'mdsha_agent_score', 'Last promotion score reported to the coordinator',
    registry=REGISTRY
)


def write_metrics(path: Optional[Path]):
    """Dump the registry for node_exporter; failures only cost observability"""
    if path is None:
        return
    try:
        write_to_textfile(str(path), REGISTRY)
    except OSError as e:
        logger.warning(f"Failed to write metrics to {path}: {e}")
