"""Broker control-plane clients.

``BrokerControlClient`` is the only seam between the rebalancer and the
cluster. Two adapters talk to a real RabbitMQ cluster: the management HTTP
API and the ``rabbitmqctl`` command line tools.
"""

import json
import logging
import shutil
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from .config import BrokerSpec
from .errors import BrokerCommandError, PreflightError
from .resilience import retry

logger = logging.getLogger(__name__)

_TRANSIENT_HTTP_ERRORS = (requests.ConnectionError, requests.Timeout)


@dataclass(frozen=True)
class QueueInfo:
    """A queue in a vhost and the node currently hosting its master."""

    name: str
    master: Optional[str]


class BrokerControlClient(ABC):
    """Blocking control-plane operations needed for a rebalancing run."""

    def ensure_available(self) -> None:
        """Raise PreflightError if the control plane cannot be used at all."""

    @abstractmethod
    def list_running_nodes(self) -> List[str]:
        """Running cluster members, in broker order."""

    @abstractmethod
    def health_check(self, node: str) -> None:
        """Raise BrokerCommandError if ``node`` is unhealthy."""

    @abstractmethod
    def list_queues(self, vhost: str) -> List[QueueInfo]:
        """Queues in ``vhost`` in broker-reported order."""

    @abstractmethod
    def set_policy(
        self,
        vhost: str,
        name: str,
        pattern: str,
        definition: Dict[str, Any],
        priority: int,
        apply_to: str = "queues",
    ) -> None:
        ...

    @abstractmethod
    def clear_policy(self, vhost: str, name: str) -> None:
        ...

    @abstractmethod
    def sync_queue(self, vhost: str, queue: str) -> None:
        ...

    def queue_master(self, vhost: str, queue: str) -> Optional[str]:
        """Current master of one queue, or None if the broker does not report it."""
        for info in self.list_queues(vhost):
            if info.name == queue:
                return info.master
        return None

    def close(self) -> None:
        """Release transport resources."""


class ManagementApiClient(BrokerControlClient):
    """Client for the RabbitMQ management HTTP API."""

    def __init__(self, spec: BrokerSpec, session: Optional[requests.Session] = None):
        self.spec = spec
        self._base_url = spec.url.rstrip("/")
        self._timeout = spec.timeout
        self._session = session or requests.Session()
        self._session.auth = (spec.username, spec.password)
        self._session.headers.update({"content-type": "application/json"})

    def _url(self, *segments: str) -> str:
        # vhost "/" must travel as %2F, so nothing is treated as safe
        return "/".join([self._base_url, "api"] + [quote(s, safe="") for s in segments])

    @retry(max_retries=3, initial_delay=0.2, exceptions=_TRANSIENT_HTTP_ERRORS)
    def _fetch(self, url: str, params: Optional[Dict[str, str]] = None) -> requests.Response:
        return self._session.get(url, params=params, timeout=self._timeout)

    def _get_json(self, operation: str, url: str, params: Optional[Dict[str, str]] = None) -> Any:
        try:
            response = self._fetch(url, params)
        except requests.RequestException as exc:
            raise BrokerCommandError(operation, str(exc)) from exc
        self._raise_for_status(operation, response)
        try:
            return response.json()
        except ValueError as exc:
            # a proxy error page can come back as 200 text/html
            raise BrokerCommandError(operation, f"unparseable response: {exc}") from exc

    @staticmethod
    def _expect(operation: str, payload: Any, kind: type) -> Any:
        if not isinstance(payload, kind):
            raise BrokerCommandError(
                operation, f"expected a JSON {kind.__name__}, got {type(payload).__name__}"
            )
        return payload

    def _send(self, operation: str, method: str, url: str, payload: Optional[Dict[str, Any]] = None) -> None:
        try:
            response = self._session.request(method, url, json=payload, timeout=self._timeout)
        except requests.RequestException as exc:
            raise BrokerCommandError(operation, str(exc)) from exc
        self._raise_for_status(operation, response)

    @staticmethod
    def _raise_for_status(operation: str, response: requests.Response) -> None:
        if response.status_code >= 400:
            body = (response.text or "").strip()
            raise BrokerCommandError(operation, f"HTTP {response.status_code}: {body[:200]}")

    def ensure_available(self) -> None:
        try:
            self._get_json("overview", self._url("overview"))
        except BrokerCommandError as exc:
            raise PreflightError(f"Management API at {self._base_url} is unavailable: {exc.detail}") from exc

    def list_running_nodes(self) -> List[str]:
        operation = "list nodes"
        nodes = self._expect(operation, self._get_json(operation, self._url("nodes"), {"columns": "name,running"}), list)
        return [n["name"] for n in nodes if n.get("running")]

    def health_check(self, node: str) -> None:
        operation = f"health check {node}"
        result = self._expect(operation, self._get_json(operation, self._url("healthchecks", "node", node)), dict)
        if result.get("status") != "ok":
            raise BrokerCommandError(operation, result.get("reason") or str(result))

    def list_queues(self, vhost: str) -> List[QueueInfo]:
        operation = f"list queues in {vhost}"
        queues = self._expect(operation, self._get_json(operation, self._url("queues", vhost), {"columns": "name,node"}), list)
        return [QueueInfo(name=q["name"], master=q.get("node")) for q in queues]

    def queue_master(self, vhost: str, queue: str) -> Optional[str]:
        try:
            info = self._get_json(f"get queue {queue}", self._url("queues", vhost, queue), {"columns": "name,node"})
        except BrokerCommandError as exc:
            if exc.detail.startswith("HTTP 404"):
                return None
            raise
        return self._expect(f"get queue {queue}", info, dict).get("node")

    def set_policy(self, vhost, name, pattern, definition, priority, apply_to="queues"):
        payload = {
            "pattern": pattern,
            "definition": definition,
            "priority": priority,
            "apply-to": apply_to,
        }
        self._send(f"set policy {name}", "PUT", self._url("policies", vhost, name), payload)

    def clear_policy(self, vhost, name):
        self._send(f"clear policy {name}", "DELETE", self._url("policies", vhost, name))

    def sync_queue(self, vhost, queue):
        self._send(f"sync queue {queue}", "POST", self._url("queues", vhost, queue, "actions"), {"action": "sync"})

    def close(self) -> None:
        self._session.close()


def node_from_pid(pid: Optional[str]) -> Optional[str]:
    """Extract the node name from an Erlang pid such as ``<rabbit@host.3.456.0>``."""
    if not pid:
        return None
    text = pid.strip().lstrip("<").rstrip(">")
    parts = text.rsplit(".", 3)
    if len(parts) != 4:
        return text or None
    return parts[0]


class CtlClient(BrokerControlClient):
    """Client that shells out to ``rabbitmqctl`` and ``rabbitmq-diagnostics``."""

    def __init__(self, spec: BrokerSpec, runner=subprocess.run):
        self.spec = spec
        self._runner = runner

    def _run(self, operation: str, argv: List[str]) -> str:
        logger.debug("running %s", " ".join(argv))
        try:
            completed = self._runner(
                argv,
                capture_output=True,
                text=True,
                timeout=self.spec.timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise BrokerCommandError(operation, str(exc)) from exc
        if completed.returncode != 0:
            detail = (completed.stderr or completed.stdout or "").strip()
            raise BrokerCommandError(operation, f"exit {completed.returncode}: {detail}")
        return completed.stdout

    def _ctl(self, operation: str, *args: str) -> str:
        return self._run(operation, [self.spec.ctl_path, *args])

    def _ctl_json(self, operation: str, *args: str) -> Any:
        output = self._ctl(operation, *args, "--formatter", "json")
        try:
            return json.loads(output) if output.strip() else []
        except ValueError as exc:
            raise BrokerCommandError(operation, f"unparseable output: {exc}") from exc

    def ensure_available(self) -> None:
        for tool in (self.spec.ctl_path, self.spec.diagnostics_path):
            if shutil.which(tool) is None:
                raise PreflightError(f"Required control tool '{tool}' was not found on PATH.")

    def list_running_nodes(self) -> List[str]:
        status = self._ctl_json("cluster status", "cluster_status")
        if not isinstance(status, dict):
            raise BrokerCommandError("cluster status", f"expected a JSON object, got {type(status).__name__}")
        return list(status.get("running_nodes", []))

    def health_check(self, node: str) -> None:
        self._run(f"health check {node}", [self.spec.diagnostics_path, "-q", "-n", node, "check_running"])

    def list_queues(self, vhost: str) -> List[QueueInfo]:
        rows = self._ctl_json(f"list queues in {vhost}", "list_queues", "-q", "-p", vhost, "name", "pid")
        return [QueueInfo(name=row["name"], master=node_from_pid(row.get("pid"))) for row in rows]

    def set_policy(self, vhost, name, pattern, definition, priority, apply_to="queues"):
        self._ctl(
            f"set policy {name}",
            "set_policy", "-p", vhost,
            "--priority", str(priority),
            "--apply-to", apply_to,
            name, pattern, json.dumps(definition),
        )

    def clear_policy(self, vhost, name):
        self._ctl(f"clear policy {name}", "clear_policy", "-p", vhost, name)

    def sync_queue(self, vhost, queue):
        self._ctl(f"sync queue {queue}", "sync_queue", "-p", vhost, queue)


def build_client(spec: BrokerSpec) -> BrokerControlClient:
    """Create the adapter selected by ``spec.transport``."""
    if spec.transport == "http":
        return ManagementApiClient(spec)
    if spec.transport == "ctl":
        return CtlClient(spec)
    raise ValueError(f"Unknown transport '{spec.transport}'.")
