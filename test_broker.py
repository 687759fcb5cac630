import json
import subprocess
import unittest
from unittest.mock import MagicMock, patch

import requests

from rebalance_core.broker import CtlClient, ManagementApiClient, build_client, node_from_pid
from rebalance_core.config import BrokerSpec
from rebalance_core.errors import BrokerCommandError, NodeHealthError, PreflightError
from rebalance_core.health_gate import HealthGate


def response(status=200, payload=None, text=""):
    resp = MagicMock(spec=requests.Response)
    resp.status_code = status
    resp.text = text
    resp.json.return_value = payload
    return resp


class TestManagementApiClient(unittest.TestCase):
    def setUp(self):
        self.session = MagicMock()
        self.session.headers = {}
        self.client = ManagementApiClient(BrokerSpec(url="http://mq:15672/", timeout=3.0), session=self.session)

    def test_running_nodes_in_broker_order(self):
        self.session.get.return_value = response(payload=[
            {"name": "rabbit@b", "running": True},
            {"name": "rabbit@a", "running": True},
            {"name": "rabbit@c", "running": False},
        ])

        self.assertEqual(self.client.list_running_nodes(), ["rabbit@b", "rabbit@a"])
        url = self.session.get.call_args.args[0]
        self.assertEqual(url, "http://mq:15672/api/nodes")
        self.assertEqual(self.session.get.call_args.kwargs["timeout"], 3.0)

    def test_list_queues_encodes_default_vhost(self):
        self.session.get.return_value = response(payload=[
            {"name": "orders", "node": "rabbit@a"},
            {"name": "billing", "node": "rabbit@b"},
        ])

        queues = self.client.list_queues("/")

        self.assertEqual([(q.name, q.master) for q in queues], [("orders", "rabbit@a"), ("billing", "rabbit@b")])
        self.assertEqual(self.session.get.call_args.args[0], "http://mq:15672/api/queues/%2F")

    def test_health_check_failure(self):
        self.session.get.return_value = response(payload={"status": "failed", "reason": "disk alarm"})
        with self.assertRaises(BrokerCommandError) as cm:
            self.client.health_check("rabbit@a")
        self.assertEqual(cm.exception.detail, "disk alarm")
        self.assertEqual(self.session.get.call_args.args[0], "http://mq:15672/api/healthchecks/node/rabbit%40a")

    def test_health_check_ok(self):
        self.session.get.return_value = response(payload={"status": "ok"})
        self.client.health_check("rabbit@a")

    def test_non_json_reply_becomes_broker_command_error(self):
        print("\nTesting Management API: HTML error page with status 200")
        reply = response(text="<html>502 Bad Gateway</html>")
        reply.json.side_effect = ValueError("Expecting value: line 1 column 1 (char 0)")
        self.session.get.return_value = reply

        with self.assertRaises(BrokerCommandError) as cm:
            self.client.health_check("rabbit@a")
        self.assertIn("unparseable response", cm.exception.detail)

    def test_non_json_health_reply_fails_the_gate(self):
        reply = response(text="<html>maintenance</html>")
        reply.json.side_effect = ValueError("Expecting value")
        self.session.get.return_value = reply

        with self.assertRaises(NodeHealthError) as cm:
            HealthGate(self.client, ["rabbit@a", "rabbit@b"]).check()
        self.assertEqual(sorted(cm.exception.failures), ["rabbit@a", "rabbit@b"])

    def test_health_reply_of_wrong_shape(self):
        self.session.get.return_value = response(payload=["ok"])
        with self.assertRaises(BrokerCommandError) as cm:
            self.client.health_check("rabbit@a")
        self.assertIn("expected a JSON dict", cm.exception.detail)

    def test_node_list_of_wrong_shape(self):
        self.session.get.return_value = response(payload={"error": "not_authorised"})
        with self.assertRaises(BrokerCommandError):
            self.client.list_running_nodes()

    def test_set_policy_payload(self):
        self.session.request.return_value = response(status=204)

        self.client.set_policy("/", "orders-ha-temp", "^orders$", {"ha-mode": "exactly", "ha-params": 1}, 990)

        method, url = self.session.request.call_args.args
        self.assertEqual(method, "PUT")
        self.assertEqual(url, "http://mq:15672/api/policies/%2F/orders-ha-temp")
        self.assertEqual(
            self.session.request.call_args.kwargs["json"],
            {
                "pattern": "^orders$",
                "definition": {"ha-mode": "exactly", "ha-params": 1},
                "priority": 990,
                "apply-to": "queues",
            },
        )

    def test_clear_policy_and_sync(self):
        self.session.request.return_value = response(status=204)

        self.client.clear_policy("prod", "orders-ha-temp")
        self.assertEqual(self.session.request.call_args.args, ("DELETE", "http://mq:15672/api/policies/prod/orders-ha-temp"))

        self.client.sync_queue("prod", "orders")
        self.assertEqual(self.session.request.call_args.args, ("POST", "http://mq:15672/api/queues/prod/orders/actions"))
        self.assertEqual(self.session.request.call_args.kwargs["json"], {"action": "sync"})

    def test_http_error_becomes_broker_command_error(self):
        self.session.request.return_value = response(status=400, text="bad policy definition")
        with self.assertRaises(BrokerCommandError) as cm:
            self.client.set_policy("/", "p", "^q$", {}, 1)
        self.assertIn("HTTP 400", str(cm.exception))

    def test_mutations_are_not_retried(self):
        self.session.request.side_effect = requests.ConnectionError("reset")
        with self.assertRaises(BrokerCommandError):
            self.client.clear_policy("/", "p")
        self.assertEqual(self.session.request.call_count, 1)

    def test_reads_retry_transient_errors(self):
        print("\nTesting Management API: read retried after connection error")
        self.session.get.side_effect = [requests.ConnectionError("reset"), response(payload={"node": "rabbit@b"})]
        self.assertEqual(self.client.queue_master("/", "orders"), "rabbit@b")
        self.assertEqual(self.session.get.call_count, 2)

    def test_missing_queue_has_no_master(self):
        self.session.get.return_value = response(status=404, text="Not Found")
        self.assertIsNone(self.client.queue_master("/", "gone"))

    def test_preflight(self):
        self.session.get.return_value = response(status=401, text="unauthorized")
        with self.assertRaises(PreflightError):
            self.client.ensure_available()


def completed(stdout="", returncode=0, stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class TestCtlClient(unittest.TestCase):
    def setUp(self):
        self.runner = MagicMock(return_value=completed())
        self.client = CtlClient(BrokerSpec(transport="ctl", timeout=5.0), runner=self.runner)

    def test_node_from_pid(self):
        self.assertEqual(node_from_pid("<rabbit@host1.3.456.0>"), "rabbit@host1")
        self.assertEqual(node_from_pid("<rabbit@mq.example.com.1.2.3>"), "rabbit@mq.example.com")
        self.assertIsNone(node_from_pid(""))
        self.assertIsNone(node_from_pid(None))

    def test_running_nodes(self):
        self.runner.return_value = completed(json.dumps({"running_nodes": ["rabbit@a", "rabbit@b"]}))
        self.assertEqual(self.client.list_running_nodes(), ["rabbit@a", "rabbit@b"])
        self.assertEqual(self.runner.call_args.args[0], ["rabbitmqctl", "cluster_status", "--formatter", "json"])

    def test_unreadable_cluster_status(self):
        self.runner.return_value = completed("Cluster status of node rabbit@a ...")
        with self.assertRaises(BrokerCommandError):
            self.client.list_running_nodes()

        self.runner.return_value = completed(json.dumps(["rabbit@a"]))
        with self.assertRaises(BrokerCommandError):
            self.client.list_running_nodes()

    def test_list_queues_parses_master_from_pid(self):
        self.runner.return_value = completed(json.dumps([
            {"name": "orders", "pid": "<rabbit@a.1.2.3>"},
            {"name": "billing", "pid": "<rabbit@b.4.5.6>"},
        ]))

        queues = self.client.list_queues("/")

        self.assertEqual([(q.name, q.master) for q in queues], [("orders", "rabbit@a"), ("billing", "rabbit@b")])
        self.assertEqual(
            self.runner.call_args.args[0],
            ["rabbitmqctl", "list_queues", "-q", "-p", "/", "name", "pid", "--formatter", "json"],
        )

    def test_set_policy_command(self):
        self.client.set_policy("/", "orders-ha-temp", "^orders$", {"ha-mode": "nodes", "ha-params": ["rabbit@b"]}, 992)
        argv = self.runner.call_args.args[0]
        self.assertEqual(argv[:8], ["rabbitmqctl", "set_policy", "-p", "/", "--priority", "992", "--apply-to", "queues"])
        self.assertEqual(argv[8:10], ["orders-ha-temp", "^orders$"])
        self.assertEqual(json.loads(argv[10]), {"ha-mode": "nodes", "ha-params": ["rabbit@b"]})
        self.assertEqual(self.runner.call_args.kwargs["timeout"], 5.0)

    def test_health_check_uses_diagnostics(self):
        self.client.health_check("rabbit@a")
        self.assertEqual(
            self.runner.call_args.args[0],
            ["rabbitmq-diagnostics", "-q", "-n", "rabbit@a", "check_running"],
        )

    def test_non_zero_exit_raises(self):
        self.runner.return_value = completed(returncode=69, stderr="Error: unable to perform an operation on node")
        with self.assertRaises(BrokerCommandError) as cm:
            self.client.sync_queue("/", "orders")
        self.assertIn("exit 69", str(cm.exception))

    def test_timeout_raises(self):
        self.runner.side_effect = subprocess.TimeoutExpired(cmd="rabbitmqctl", timeout=5.0)
        with self.assertRaises(BrokerCommandError):
            self.client.clear_policy("/", "orders-ha-temp")

    def test_preflight_requires_tools(self):
        with patch("rebalance_core.broker.shutil.which", return_value=None):
            with self.assertRaises(PreflightError):
                self.client.ensure_available()


class TestBuildClient(unittest.TestCase):
    def test_transport_selection(self):
        self.assertIsInstance(build_client(BrokerSpec(transport="http")), ManagementApiClient)
        self.assertIsInstance(build_client(BrokerSpec(transport="ctl")), CtlClient)


if __name__ == '__main__':
    unittest.main()
