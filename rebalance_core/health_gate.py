"""Strict cluster health gate."""

import logging
import time
from typing import Dict, Optional, Sequence

from .broker import BrokerControlClient
from .errors import BrokerCommandError, NodeHealthError
from .hooks import HookManager, RebalanceEvents

logger = logging.getLogger(__name__)


class HealthGate:
    """
    Probes every known node and refuses to continue if any one fails.

    A policy change while the cluster is partially healthy can strand a queue
    without enough mirrors, so there is no tolerance threshold: one failed
    probe is fatal.
    """

    def __init__(
        self,
        client: BrokerControlClient,
        nodes: Sequence[str],
        hook_manager: Optional[HookManager] = None,
    ):
        self._client = client
        self._nodes = tuple(nodes)
        self._hooks = hook_manager or HookManager(name="HealthGate")

        self._checks = 0
        self._failure_counts: Dict[str, int] = {}
        self._last_check_time: Optional[float] = None

    def check(self) -> None:
        """Probe all nodes; raise NodeHealthError naming every node that failed."""
        self._checks += 1
        self._last_check_time = time.time()
        failures: Dict[str, str] = {}

        for node in self._nodes:
            try:
                self._client.health_check(node)
            except BrokerCommandError as exc:
                failures[node] = exc.detail
                self._failure_counts[node] = self._failure_counts.get(node, 0) + 1
                logger.error("Node %s failed health check: %s", node, exc.detail)
                self._hooks.trigger_hook(
                    RebalanceEvents.NODE_UNHEALTHY,
                    node=node,
                    reason=exc.detail,
                )

        if failures:
            raise NodeHealthError(failures)
        logger.debug("All %d nodes healthy (check #%d)", len(self._nodes), self._checks)

    def snapshot(self) -> Dict:
        return {
            "nodes": list(self._nodes),
            "checks": self._checks,
            "failure_counts": dict(self._failure_counts),
            "last_check_time": self._last_check_time,
        }
