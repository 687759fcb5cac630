import json
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional

TRANSPORTS = ("http", "ctl")


@dataclass(frozen=True)
class BrokerSpec:
    """Immutable description of how to reach the broker control plane."""

    transport: str = "http"
    url: str = "http://localhost:15672"
    username: str = "guest"
    password: str = "guest"
    timeout: float = 10.0
    ctl_path: str = "rabbitmqctl"
    diagnostics_path: str = "rabbitmq-diagnostics"

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "BrokerSpec":
        """Create BrokerSpec from dictionary, using defaults if None or missing keys."""
        if not data:
            return cls()
        defaults = cls()
        spec = cls(
            transport=str(data.get("transport", defaults.transport)).lower(),
            url=str(data.get("url", defaults.url)).rstrip("/"),
            username=str(data.get("username", defaults.username)),
            password=str(data.get("password", defaults.password)),
            timeout=float(data.get("timeout", defaults.timeout)),
            ctl_path=str(data.get("ctl_path", defaults.ctl_path)),
            diagnostics_path=str(data.get("diagnostics_path", defaults.diagnostics_path)),
        )
        spec.validate()
        return spec

    def validate(self) -> None:
        if self.transport not in TRANSPORTS:
            raise ValueError(f"Unknown transport '{self.transport}', expected one of {TRANSPORTS}.")
        if self.timeout <= 0:
            raise ValueError("Broker timeout must be positive.")


@dataclass(frozen=True)
class RebalanceSettings:
    """Run-wide settings for a rebalancing pass."""

    vhost: str = "/"
    queue_pattern: str = ".*"
    poll_interval: float = 2.0
    max_attempts: int = 300
    deadline: Optional[float] = None  # seconds per queue, None = no wall-clock bound
    shed_priority: int = 990
    pin_priority: int = 992
    policy_suffix: str = "-ha-temp"
    dry_run: bool = False

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RebalanceSettings":
        if not data:
            return cls()
        defaults = cls()
        deadline = data.get("deadline", defaults.deadline)
        settings = cls(
            vhost=str(data.get("vhost", defaults.vhost)),
            queue_pattern=str(data.get("queue_pattern", defaults.queue_pattern)),
            poll_interval=float(data.get("poll_interval", defaults.poll_interval)),
            max_attempts=int(data.get("max_attempts", defaults.max_attempts)),
            deadline=float(deadline) if deadline is not None else None,
            shed_priority=int(data.get("shed_priority", defaults.shed_priority)),
            pin_priority=int(data.get("pin_priority", defaults.pin_priority)),
            policy_suffix=str(data.get("policy_suffix", defaults.policy_suffix)),
            dry_run=bool(data.get("dry_run", defaults.dry_run)),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if not self.vhost:
            raise ValueError("vhost must not be empty.")
        if self.poll_interval < 0:
            raise ValueError("poll_interval must not be negative.")
        if self.max_attempts < 0:
            raise ValueError("max_attempts must not be negative (0 = unbounded).")
        if self.deadline is not None and self.deadline <= 0:
            raise ValueError("deadline must be positive when set.")
        # The pin policy has to win over the shed policy it replaces.
        if self.pin_priority <= self.shed_priority:
            raise ValueError(
                f"pin_priority ({self.pin_priority}) must be greater than "
                f"shed_priority ({self.shed_priority})."
            )
        if not self.policy_suffix:
            raise ValueError("policy_suffix must not be empty.")


class RebalanceConfig:
    """Config facade that hides JSON parsing and override semantics."""

    def __init__(self, config_path: Optional[str] = None):
        payload: Dict[str, Any] = {}
        if config_path is not None:
            path = Path(config_path)
            if not path.exists():
                raise FileNotFoundError(f"Config file not found: {config_path}")

            with path.open("r", encoding="utf-8") as stream:
                try:
                    payload = json.load(stream)
                except json.JSONDecodeError as exc:
                    raise ValueError(f"Config file {config_path} is not valid JSON: {exc}") from exc

            if not isinstance(payload, dict):
                raise ValueError("Configuration must be a JSON object.")

        self._broker = BrokerSpec.from_dict(payload.get("broker"))
        self._settings = RebalanceSettings.from_dict(payload.get("rebalance"))

    @property
    def broker(self) -> BrokerSpec:
        return self._broker

    @property
    def settings(self) -> RebalanceSettings:
        return self._settings

    def with_overrides(self, broker: Optional[Dict[str, Any]] = None, settings: Optional[Dict[str, Any]] = None) -> "RebalanceConfig":
        """Return a copy with non-None override values applied (CLI flags win over the file)."""
        broker_changes = {k: v for k, v in (broker or {}).items() if v is not None}
        settings_changes = {k: v for k, v in (settings or {}).items() if v is not None}

        clone = RebalanceConfig.__new__(RebalanceConfig)
        clone._broker = replace(self._broker, **broker_changes)
        clone._settings = replace(self._settings, **settings_changes)
        clone._broker.validate()
        clone._settings.validate()
        return clone
