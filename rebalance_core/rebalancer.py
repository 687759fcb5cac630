import logging
import threading
from typing import Dict, Optional

from .assignor import RoundRobinAssignor, distribution
from .broker import BrokerControlClient
from .config import RebalanceSettings
from .convergence import ConvergenceWatcher
from .errors import RebalanceCancelled
from .health_gate import HealthGate
from .hooks import HookManager, RebalanceEvents
from .metrics import RunMetrics
from .policy import PolicyOrchestrator, SyncTrigger
from .resilience import PollPolicy
from .topology import QueueEnumerator, discover_nodes

logger = logging.getLogger(__name__)


class QueueMasterRebalancer:
    """
    Spreads queue masters of one vhost round-robin across the running nodes.
    Coordinates discovery, the health gate, target assignment and the
    per-queue policy sequence. Queues are processed strictly one at a time.
    """

    def __init__(
        self,
        client: BrokerControlClient,
        settings: RebalanceSettings,
        hook_manager: Optional[HookManager] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self._client = client
        self._settings = settings
        self._hooks = hook_manager or HookManager(name="Rebalancer")
        self._cancel = cancel_event or threading.Event()
        self._metrics = RunMetrics()

        # Validates the queue pattern before the broker is touched.
        self._enumerator = QueueEnumerator(client, settings.vhost, settings.queue_pattern)

        poll_policy = PollPolicy(
            interval=settings.poll_interval,
            max_attempts=settings.max_attempts,
            deadline=settings.deadline,
        )
        self._watcher = ConvergenceWatcher(
            client,
            poll_policy,
            cancel_event=self._cancel,
            hook_manager=self._hooks,
        )
        self._orchestrator = PolicyOrchestrator(
            client,
            self._watcher,
            settings,
            sync_trigger=SyncTrigger(client),
            hook_manager=self._hooks,
        )

        self._hooks.register_hook(
            RebalanceEvents.MIGRATION_COMPLETED,
            self._on_migration_completed,
            priority=10,
        )

    @property
    def metrics(self) -> RunMetrics:
        return self._metrics

    def run(self) -> RunMetrics:
        """Execute one pass over the selected queues. Fatal errors propagate unchanged."""
        settings = self._settings
        self._client.ensure_available()

        nodes = discover_nodes(self._client)
        gate = HealthGate(self._client, nodes, hook_manager=self._hooks)
        gate.check()

        queues = self._enumerator.queues()
        assignor = RoundRobinAssignor(nodes)
        self._metrics.distribution_before = distribution(nodes, [q.master for q in queues])

        mode = "dry run" if settings.dry_run else "rebalance"
        logger.info(
            "Starting %s of %d queue(s) in vhost %s across %d nodes",
            mode, len(queues), settings.vhost, len(nodes),
        )
        self._hooks.trigger_hook(
            RebalanceEvents.RUN_STARTED,
            vhost=settings.vhost,
            nodes=nodes,
            queue_count=len(queues),
            dry_run=settings.dry_run,
        )

        final_masters: Dict[str, Optional[str]] = {}
        for position, queue in enumerate(queues):
            self._raise_if_cancelled(queue.name)
            gate.check()
            assignment = assignor.assign(position, queue)

            if not assignment.needs_move:
                logger.info("Queue %s already on %s, skipping", queue.name, assignment.target)
                self._metrics.record_skip()
                self._hooks.trigger_hook(
                    RebalanceEvents.QUEUE_SKIPPED,
                    queue=queue.name,
                    target=assignment.target,
                )
            elif settings.dry_run:
                logger.info(
                    "[dry run] would move queue %s master %s -> %s",
                    queue.name, assignment.current_master, assignment.target,
                )
                self._metrics.record_planned()
            else:
                self._orchestrator.migrate(assignment)
            final_masters[queue.name] = assignment.target

        self._raise_if_cancelled(None)
        self._metrics.distribution_after = distribution(nodes, final_masters.values())
        self._metrics.finish()
        logger.info(
            "Finished %s: %d examined, %d skipped, %d migrated",
            mode, self._metrics.examined, self._metrics.skipped, self._metrics.migrated,
        )
        self._hooks.trigger_hook(RebalanceEvents.RUN_COMPLETED, metrics=self._metrics.snapshot())
        return self._metrics

    def _raise_if_cancelled(self, next_queue: Optional[str]) -> None:
        if not self._cancel.is_set():
            return
        self._metrics.finish()
        if next_queue is None:
            raise RebalanceCancelled(f"Cancelled after {self._metrics.examined} queue(s)")
        raise RebalanceCancelled(
            f"Cancelled before queue '{next_queue}' after {self._metrics.examined} queue(s)"
        )

    def _on_migration_completed(self, queue: str, source: Optional[str], target: str, attempts: int, duration_ms: float, **kwargs):
        self._metrics.record_migration(queue, source, target, duration_ms, attempts)
