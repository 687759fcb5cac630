"""Error taxonomy for a rebalancing run."""

from typing import Dict, Optional


class RebalanceError(Exception):
    """Base class for every fatal rebalancing error."""


class PreflightError(RebalanceError):
    """The broker control plane cannot be reached or is not installed."""


class BrokerCommandError(RebalanceError):
    """A single control-plane call failed."""

    def __init__(self, operation: str, detail: str):
        super().__init__(f"{operation} failed: {detail}")
        self.operation = operation
        self.detail = detail


class ClusterTopologyError(RebalanceError):
    """Fewer than two running nodes were discovered."""


class InvalidSelectionError(RebalanceError):
    """The queue name filter is not a valid regular expression."""


class NodeHealthError(RebalanceError):
    """One or more nodes failed their health probe."""

    def __init__(self, failures: Dict[str, str]):
        self.failures = dict(failures)
        summary = ", ".join(f"{node} ({reason})" for node, reason in self.failures.items())
        super().__init__(f"Unhealthy cluster nodes: {summary}")


class PolicyApplyError(RebalanceError):
    """Setting or clearing a temporary policy failed."""

    def __init__(self, queue: str, policy_name: str, cause: Exception):
        super().__init__(
            f"Policy change for queue '{queue}' failed: {cause}. "
            f"Policy '{policy_name}' may still be applied and need manual cleanup."
        )
        self.queue = queue
        self.policy_name = policy_name
        self.cause = cause


class ConvergenceTimeout(RebalanceError):
    """A queue master did not reach its target within the poll budget."""

    def __init__(self, queue: str, target: str, attempts: int, last_master: Optional[str]):
        super().__init__(
            f"Queue '{queue}' master is still {last_master!r} after {attempts} attempts "
            f"(target {target})"
        )
        self.queue = queue
        self.target = target
        self.attempts = attempts
        self.last_master = last_master


class RebalanceCancelled(RebalanceError):
    """The run was cancelled while waiting on the broker."""
