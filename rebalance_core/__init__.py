"""Round-robin rebalancing of classic mirrored queue masters across a RabbitMQ cluster."""

from .config import BrokerSpec, RebalanceSettings, RebalanceConfig
from .errors import (
    RebalanceError,
    PreflightError,
    BrokerCommandError,
    ClusterTopologyError,
    InvalidSelectionError,
    NodeHealthError,
    PolicyApplyError,
    ConvergenceTimeout,
    RebalanceCancelled,
)
from .broker import (
    BrokerControlClient,
    QueueInfo,
    ManagementApiClient,
    CtlClient,
    build_client,
)
from .simulated_broker import SimulatedBroker
from .topology import discover_nodes, QueueEnumerator
from .health_gate import HealthGate
from .assignor import Assignment, RoundRobinAssignor, target_for, distribution
from .convergence import ConvergenceWatcher
from .policy import PolicyOrchestrator, SyncTrigger, TemporaryPolicy, shed_policy, pin_policy
from .resilience import PollPolicy, retry
from .hooks import HookManager, RebalanceEvents
from .metrics import RunMetrics
from .rebalancer import QueueMasterRebalancer

__all__ = [
    "BrokerSpec",
    "RebalanceSettings",
    "RebalanceConfig",
    "RebalanceError",
    "PreflightError",
    "BrokerCommandError",
    "ClusterTopologyError",
    "InvalidSelectionError",
    "NodeHealthError",
    "PolicyApplyError",
    "ConvergenceTimeout",
    "RebalanceCancelled",
    "BrokerControlClient",
    "QueueInfo",
    "ManagementApiClient",
    "CtlClient",
    "build_client",
    "SimulatedBroker",
    "discover_nodes",
    "QueueEnumerator",
    "HealthGate",
    "Assignment",
    "RoundRobinAssignor",
    "target_for",
    "distribution",
    "ConvergenceWatcher",
    "PolicyOrchestrator",
    "SyncTrigger",
    "TemporaryPolicy",
    "shed_policy",
    "pin_policy",
    "PollPolicy",
    "retry",
    "HookManager",
    "RebalanceEvents",
    "RunMetrics",
    "QueueMasterRebalancer",
]
