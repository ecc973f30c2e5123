"""Prometheus counters for policy decisions, intent lifecycle, executions and alerts."""

from __future__ import annotations
import logging

from prometheus_client import Counter, start_http_server

logger = logging.getLogger(__name__)

policy_decisions_total = Counter(
    "treasury_policy_decisions_total", "Treasury spend policy decisions", ["decision"]
)
intents_created_total = Counter(
    "treasury_intents_created_total", "Transfer intents created", ["status"]
)
executions_total = Counter(
    "treasury_executions_total", "Transfer intent execution attempts", ["backend", "status"]
)
alerts_total = Counter(
    "treasury_alerts_total", "Treasury alert dispatch outcomes", ["result"]
)


def start_metrics_server(port: int | None) -> bool:
    if not port:
        return False
    try:
        start_http_server(port)
        return True
    except OSError:
        logger.exception("failed to start metrics server on port %s", port)
        return False
