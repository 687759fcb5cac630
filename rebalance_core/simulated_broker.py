"""
In-memory broker for tests and local experiments.
Models policies, delayed master moves, unhealthy nodes and injected failures.
"""

import re
from collections import OrderedDict
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .broker import BrokerControlClient, QueueInfo
from .errors import BrokerCommandError, PreflightError


class SimulatedBroker(BrokerControlClient):
    """
    Fake control plane.

    A policy pinning a queue to one node (``ha-mode: nodes``) moves the
    queue's master there after ``move_delay`` master reads. Every mutating
    call is appended to ``calls`` as a tuple so tests can assert ordering.
    """

    def __init__(
        self,
        nodes: Iterable[str],
        queues: Iterable[Tuple[str, str]] = (),
        vhost: str = "/",
        move_delay: int = 0,
    ):
        self.nodes: List[str] = list(nodes)
        self.vhost = vhost
        self.move_delay = move_delay
        self._queues: "OrderedDict[str, Optional[str]]" = OrderedDict(queues)
        self.policies: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple] = []

        self.unhealthy: Set[str] = set()
        self.stuck_queues: Set[str] = set()  # never converge
        self.failures: Dict[Tuple[str, str], str] = {}  # (operation, subject) -> message
        self.available = True

        self._pending_moves: Dict[str, Tuple[str, int]] = {}  # queue -> (target, reads left)
        self._probe_counts: Dict[str, int] = {}
        self._probe_allowance: Dict[str, int] = {}

    # Test helpers

    def fail_on(self, operation: str, subject: str, message: str = "injected failure") -> None:
        """Make ``operation`` ("set_policy", "clear_policy", "sync_queue") fail for ``subject``."""
        self.failures[(operation, subject)] = message

    def degrade_after(self, node: str, healthy_probes: int) -> None:
        """Let ``node`` pass ``healthy_probes`` health checks, then fail every later one."""
        self._probe_allowance[node] = healthy_probes

    def masters(self) -> Dict[str, Optional[str]]:
        return dict(self._queues)

    def mutations(self) -> List[Tuple]:
        return [c for c in self.calls if c[0] in ("set_policy", "clear_policy")]

    def temporary_policies(self, suffix: str = "-ha-temp") -> List[str]:
        return [name for name in self.policies if name.endswith(suffix)]

    def _maybe_fail(self, operation: str, subject: str) -> None:
        message = self.failures.get((operation, subject))
        if message is not None:
            raise BrokerCommandError(f"{operation} {subject}", message)

    def _check_vhost(self, vhost: str) -> None:
        if vhost != self.vhost:
            raise BrokerCommandError("vhost lookup", f"no such vhost '{vhost}'")

    # BrokerControlClient

    def ensure_available(self) -> None:
        if not self.available:
            raise PreflightError("simulated broker is unavailable")

    def list_running_nodes(self) -> List[str]:
        return list(self.nodes)

    def health_check(self, node: str) -> None:
        self._probe_counts[node] = self._probe_counts.get(node, 0) + 1
        self.calls.append(("health_check", node))
        allowance = self._probe_allowance.get(node)
        if allowance is not None and self._probe_counts[node] > allowance:
            self.unhealthy.add(node)
        if node in self.unhealthy:
            raise BrokerCommandError(f"health check {node}", "node reported alarms")

    def list_queues(self, vhost: str) -> List[QueueInfo]:
        self._check_vhost(vhost)
        return [QueueInfo(name, master) for name, master in self._queues.items()]

    def queue_master(self, vhost: str, queue: str) -> Optional[str]:
        self._check_vhost(vhost)
        pending = self._pending_moves.get(queue)
        if pending is not None:
            target, reads_left = pending
            if reads_left <= 0:
                self._queues[queue] = target
                del self._pending_moves[queue]
            else:
                self._pending_moves[queue] = (target, reads_left - 1)
        return self._queues.get(queue)

    def set_policy(self, vhost, name, pattern, definition, priority, apply_to="queues"):
        self._check_vhost(vhost)
        self.calls.append(("set_policy", name, priority, dict(definition)))
        self._maybe_fail("set_policy", name)
        self.policies[name] = {
            "pattern": pattern,
            "definition": dict(definition),
            "priority": priority,
            "apply-to": apply_to,
        }
        if definition.get("ha-mode") != "nodes":
            return
        targets = definition.get("ha-params") or []
        if len(targets) != 1:
            return
        for queue in self._queues:
            if re.fullmatch(pattern, queue) and queue not in self.stuck_queues:
                if self._queues[queue] != targets[0]:
                    self._pending_moves[queue] = (targets[0], self.move_delay)

    def clear_policy(self, vhost, name):
        self._check_vhost(vhost)
        self.calls.append(("clear_policy", name))
        self._maybe_fail("clear_policy", name)
        if name not in self.policies:
            raise BrokerCommandError(f"clear policy {name}", "policy not found")
        del self.policies[name]

    def sync_queue(self, vhost, queue):
        self._check_vhost(vhost)
        self.calls.append(("sync_queue", queue))
        self._maybe_fail("sync_queue", queue)
