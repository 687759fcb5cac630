"""Cluster discovery and queue selection."""

import logging
import re
from typing import List, Tuple

from .broker import BrokerControlClient, QueueInfo
from .errors import ClusterTopologyError, InvalidSelectionError

logger = logging.getLogger(__name__)

MIN_NODES = 2


def discover_nodes(client: BrokerControlClient) -> Tuple[str, ...]:
    """Return the running nodes in broker order; the order fixes the round-robin cycle."""
    nodes = tuple(client.list_running_nodes())
    if len(nodes) < MIN_NODES:
        raise ClusterTopologyError(
            f"Found {len(nodes)} running node(s) {list(nodes)}; at least {MIN_NODES} are required."
        )
    logger.info("Discovered %d running nodes: %s", len(nodes), ", ".join(nodes))
    return nodes


class QueueEnumerator:
    """Lists the queues of one vhost whose whole name matches a regex."""

    def __init__(self, client: BrokerControlClient, vhost: str, pattern: str = ".*"):
        self._client = client
        self.vhost = vhost
        try:
            self._pattern = re.compile(pattern)
        except re.error as exc:
            raise InvalidSelectionError(f"Invalid queue pattern {pattern!r}: {exc}") from exc

    @property
    def pattern(self) -> str:
        return self._pattern.pattern

    def matches(self, name: str) -> bool:
        # fullmatch, so "orders" never selects "orders2"
        return self._pattern.fullmatch(name) is not None

    def queues(self) -> List[QueueInfo]:
        selected = [q for q in self._client.list_queues(self.vhost) if self.matches(q.name)]
        logger.info(
            "Selected %d queue(s) in vhost %s matching %r", len(selected), self.vhost, self.pattern
        )
        return selected
