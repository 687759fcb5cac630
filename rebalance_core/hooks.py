"""Hook system for observing a rebalancing run without coupling to it."""

import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Tuple

logger = logging.getLogger(__name__)


class HookManager:
    """
    Manages callbacks for run events.

    Callbacks run synchronously, in priority order, on the caller's thread:
    the run itself is strictly sequential and observers must see events in
    the order the broker was touched.
    """

    def __init__(self, name: str = "HookManager"):
        self._name = name
        self._hooks: Dict[str, List[Tuple[int, Callable]]] = defaultdict(list)
        self._hook_stats: Dict[str, Dict[str, int]] = defaultdict(
            lambda: {"triggered": 0, "errors": 0}
        )

    def register_hook(self, event: str, callback: Callable, priority: int = 0):
        """
        Register a callback for an event.

        Args:
            event: Event name (see RebalanceEvents)
            callback: Called with the event's keyword arguments
            priority: Higher priority callbacks execute first (0 = default)
        """
        self._hooks[event].append((priority, callback))
        # sort is stable, so equal priorities keep registration order
        self._hooks[event].sort(key=lambda x: x[0], reverse=True)

    def unregister_hook(self, event: str, callback: Callable):
        """Unregister a callback from an event."""
        if event in self._hooks:
            self._hooks[event] = [
                (p, cb) for p, cb in self._hooks[event] if cb != callback
            ]
            if not self._hooks[event]:
                del self._hooks[event]

    def trigger_hook(self, event: str, **kwargs) -> List[Any]:
        """
        Trigger all callbacks for an event.

        Returns:
            List of callback results (None for callbacks that raised)
        """
        callbacks = list(self._hooks.get(event, []))
        self._hook_stats[event]["triggered"] += len(callbacks)

        results = []
        for _, callback in callbacks:
            try:
                results.append(callback(**kwargs))
            except Exception as e:
                logger.warning("[%s] hook '%s' callback error: %s", self._name, event, e)
                self._hook_stats[event]["errors"] += 1
                results.append(None)
        return results

    def get_registered_events(self) -> List[str]:
        return list(self._hooks.keys())

    def get_hook_count(self, event: str) -> int:
        return len(self._hooks.get(event, []))

    def get_stats(self) -> Dict[str, Dict[str, int]]:
        return {event: dict(stats) for event, stats in self._hook_stats.items()}


class RebalanceEvents:
    """Standard hook event names."""
    RUN_STARTED = "run_started"
    RUN_COMPLETED = "run_completed"
    NODE_UNHEALTHY = "node_unhealthy"
    QUEUE_SKIPPED = "queue_skipped"
    MIGRATION_STARTED = "migration_started"
    MIGRATION_COMPLETED = "migration_completed"
    MIGRATION_FAILED = "migration_failed"
    POLICY_APPLIED = "policy_applied"
    POLICY_CLEARED = "policy_cleared"
    CONVERGENCE_PENDING = "convergence_pending"
