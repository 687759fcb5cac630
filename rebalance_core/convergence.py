"""Polling until a queue master lands on its target node."""

import logging
import threading
import time
from typing import Callable, Optional

from .broker import BrokerControlClient
from .errors import ConvergenceTimeout, RebalanceCancelled
from .hooks import HookManager, RebalanceEvents
from .resilience import PollPolicy

logger = logging.getLogger(__name__)


class ConvergenceWatcher:
    """Polls the broker-reported master at a fixed interval within a bounded budget."""

    def __init__(
        self,
        client: BrokerControlClient,
        poll_policy: PollPolicy,
        cancel_event: Optional[threading.Event] = None,
        hook_manager: Optional[HookManager] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._client = client
        self._policy = poll_policy
        self._cancel = cancel_event or threading.Event()
        self._hooks = hook_manager or HookManager(name="ConvergenceWatcher")
        self._clock = clock

    @property
    def poll_policy(self) -> PollPolicy:
        return self._policy

    def wait(self, vhost: str, queue: str, target: str) -> int:
        """
        Block until ``queue``'s master is ``target``.

        Returns:
            Number of polls it took.

        Raises:
            ConvergenceTimeout: the poll budget ran out first.
            RebalanceCancelled: the cancel event was set while waiting.
        """
        started = self._clock()
        attempts = 0

        while True:
            if self._cancel.is_set():
                raise RebalanceCancelled(f"Cancelled while waiting for queue '{queue}' to move to {target}")

            attempts += 1
            master = self._client.queue_master(vhost, queue)
            if master == target:
                logger.info("Queue %s master is now %s (attempt %d)", queue, target, attempts)
                return attempts

            logger.warning(
                "Queue %s master is %s, waiting for %s (attempt %d)", queue, master, target, attempts
            )
            self._hooks.trigger_hook(
                RebalanceEvents.CONVERGENCE_PENDING,
                queue=queue,
                target=target,
                master=master,
                attempt=attempts,
            )

            if self._policy.exhausted(attempts, self._clock() - started):
                raise ConvergenceTimeout(queue, target, attempts, master)

            if self._cancel.wait(self._policy.interval):
                raise RebalanceCancelled(f"Cancelled while waiting for queue '{queue}' to move to {target}")
