"""Round-robin master assignment."""

from collections import Counter
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from .broker import QueueInfo


def target_for(nodes: Sequence[str], position: int) -> str:
    """Target node for the queue at zero-based ``position`` of the selection."""
    if not nodes:
        raise ValueError("Cannot assign a target from an empty node list.")
    if position < 0:
        raise ValueError(f"Position must be non-negative, got {position}.")
    return nodes[position % len(nodes)]


@dataclass(frozen=True)
class Assignment:
    position: int
    queue: str
    current_master: Optional[str]
    target: str

    @property
    def needs_move(self) -> bool:
        return self.current_master != self.target


class RoundRobinAssignor:
    """
    Assigns targets by cycling over an immutable node list.

    Nothing is remembered between runs: every run starts the cycle at the
    first node again.
    """

    def __init__(self, nodes: Sequence[str]):
        if not nodes:
            raise ValueError("RoundRobinAssignor needs at least one node.")
        self._nodes = tuple(nodes)

    @property
    def nodes(self):
        return self._nodes

    def assign(self, position: int, queue: QueueInfo) -> Assignment:
        return Assignment(
            position=position,
            queue=queue.name,
            current_master=queue.master,
            target=target_for(self._nodes, position),
        )

    def plan(self, queues: Iterable[QueueInfo]) -> List[Assignment]:
        return [self.assign(position, queue) for position, queue in enumerate(queues)]


def distribution(nodes: Sequence[str], masters: Iterable[Optional[str]]) -> Dict[str, int]:
    """Count queue masters per node; every node in ``nodes`` appears, even with zero."""
    counts = Counter(m for m in masters if m is not None)
    result = {node: counts.get(node, 0) for node in nodes}
    for node, count in counts.items():
        if node not in result:
            result[node] = count
    return result
