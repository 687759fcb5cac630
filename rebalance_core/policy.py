"""Temporary-policy sequence that forces a queue master onto a target node.

For a queue whose master is on the wrong node:

1. shed: ``<queue>-ha-temp`` at the lower priority keeps exactly one mirror,
   so the following pin is a single-hop move rather than a reshuffle;
2. pin: the same-named policy at the higher priority restricts the replica
   set to the target node;
3. wait until the broker reports the target as master;
4. clear the temporary policy.

Every step is followed by an explicit sync. Steps are remote and
non-transactional; a failure is never rolled back, but the temporary policy
is always cleared on a best-effort basis before the error propagates.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .assignor import Assignment
from .broker import BrokerControlClient
from .config import RebalanceSettings
from .convergence import ConvergenceWatcher
from .errors import BrokerCommandError, PolicyApplyError
from .hooks import HookManager, RebalanceEvents

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TemporaryPolicy:
    name: str
    pattern: str
    priority: int
    definition: Dict[str, Any] = field(default_factory=dict)


def temporary_policy_name(queue: str, suffix: str = "-ha-temp") -> str:
    return f"{queue}{suffix}"


def exact_match_pattern(queue: str) -> str:
    return f"^{re.escape(queue)}$"


def shed_policy(queue: str, priority: int = 990, suffix: str = "-ha-temp") -> TemporaryPolicy:
    return TemporaryPolicy(
        name=temporary_policy_name(queue, suffix),
        pattern=exact_match_pattern(queue),
        priority=priority,
        definition={"ha-mode": "exactly", "ha-params": 1, "ha-sync-mode": "automatic"},
    )


def pin_policy(queue: str, target: str, priority: int = 992, suffix: str = "-ha-temp") -> TemporaryPolicy:
    return TemporaryPolicy(
        name=temporary_policy_name(queue, suffix),
        pattern=exact_match_pattern(queue),
        priority=priority,
        definition={"ha-mode": "nodes", "ha-params": [target], "ha-sync-mode": "automatic"},
    )


class SyncTrigger:
    """Asks the broker to synchronise a queue's mirrors now instead of eventually."""

    def __init__(self, client: BrokerControlClient):
        self._client = client
        self.failures = 0

    def sync(self, vhost: str, queue: str) -> bool:
        # Sync only speeds convergence up; the watcher still verifies the move.
        try:
            self._client.sync_queue(vhost, queue)
        except BrokerCommandError as exc:
            self.failures += 1
            logger.warning("Sync of queue %s failed, continuing: %s", queue, exc.detail)
            return False
        logger.debug("Sync requested for queue %s", queue)
        return True


class PolicyOrchestrator:
    """Runs the shed, pin, wait, clear sequence for one queue at a time."""

    def __init__(
        self,
        client: BrokerControlClient,
        watcher: ConvergenceWatcher,
        settings: RebalanceSettings,
        sync_trigger: Optional[SyncTrigger] = None,
        hook_manager: Optional[HookManager] = None,
    ):
        self._client = client
        self._watcher = watcher
        self._settings = settings
        self._sync = sync_trigger or SyncTrigger(client)
        self._hooks = hook_manager or HookManager(name="PolicyOrchestrator")

    def migrate(self, assignment: Assignment) -> int:
        """
        Move ``assignment.queue``'s master to ``assignment.target``.

        Returns the number of convergence polls, or 0 when the queue is
        already on its target and nothing was touched.
        """
        if not assignment.needs_move:
            return 0

        vhost = self._settings.vhost
        queue = assignment.queue
        target = assignment.target
        suffix = self._settings.policy_suffix
        shed = shed_policy(queue, self._settings.shed_priority, suffix)
        pin = pin_policy(queue, target, self._settings.pin_priority, suffix)

        logger.info(
            "Moving queue %s master %s -> %s (position %d)",
            queue, assignment.current_master, target, assignment.position,
        )
        self._hooks.trigger_hook(
            RebalanceEvents.MIGRATION_STARTED,
            queue=queue,
            source=assignment.current_master,
            target=target,
        )

        started = time.time()
        completed = False
        try:
            self._apply(vhost, queue, shed, phase="shed")
            self._sync.sync(vhost, queue)

            self._apply(vhost, queue, pin, phase="pin")
            self._sync.sync(vhost, queue)

            attempts = self._watcher.wait(vhost, queue, target)

            self._clear(vhost, queue, shed.name)
            completed = True
            self._sync.sync(vhost, queue)
        except Exception as exc:
            self._hooks.trigger_hook(
                RebalanceEvents.MIGRATION_FAILED,
                queue=queue,
                target=target,
                error=exc,
            )
            raise
        finally:
            if not completed:
                self._release(vhost, queue, shed.name)

        duration_ms = (time.time() - started) * 1000
        logger.info("Queue %s moved to %s in %.0fms (%d polls)", queue, target, duration_ms, attempts)
        self._hooks.trigger_hook(
            RebalanceEvents.MIGRATION_COMPLETED,
            queue=queue,
            source=assignment.current_master,
            target=target,
            attempts=attempts,
            duration_ms=duration_ms,
        )
        return attempts

    def _apply(self, vhost: str, queue: str, policy: TemporaryPolicy, phase: str) -> None:
        try:
            self._client.set_policy(
                vhost,
                policy.name,
                policy.pattern,
                policy.definition,
                policy.priority,
                apply_to="queues",
            )
        except BrokerCommandError as exc:
            raise PolicyApplyError(queue, policy.name, exc) from exc
        logger.debug("Applied %s policy %s (priority %d)", phase, policy.name, policy.priority)
        self._hooks.trigger_hook(
            RebalanceEvents.POLICY_APPLIED,
            queue=queue,
            policy=policy.name,
            phase=phase,
            priority=policy.priority,
        )

    def _clear(self, vhost: str, queue: str, name: str) -> None:
        try:
            self._client.clear_policy(vhost, name)
        except BrokerCommandError as exc:
            raise PolicyApplyError(queue, name, exc) from exc
        logger.debug("Cleared policy %s", name)
        self._hooks.trigger_hook(RebalanceEvents.POLICY_CLEARED, queue=queue, policy=name)

    def _release(self, vhost: str, queue: str, name: str) -> None:
        """Best-effort removal of the temporary policy after an interrupted sequence."""
        try:
            self._client.clear_policy(vhost, name)
        except BrokerCommandError as exc:
            logger.error(
                "Could not clear temporary policy %s in vhost %s: %s. Remove it manually.",
                name, vhost, exc.detail,
            )
            return
        logger.warning("Cleared temporary policy %s after interrupted move of queue %s", name, queue)
        self._hooks.trigger_hook(RebalanceEvents.POLICY_CLEARED, queue=queue, policy=name)
