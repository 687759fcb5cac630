import json
import os
import tempfile
import unittest

from rebalance_core.config import BrokerSpec, RebalanceConfig, RebalanceSettings


class TestRebalanceConfig(unittest.TestCase):
    def _write(self, payload) -> str:
        handle = tempfile.NamedTemporaryFile("w", suffix=".json", delete=False, encoding="utf-8")
        with handle:
            if isinstance(payload, str):
                handle.write(payload)
            else:
                json.dump(payload, handle)
        self.addCleanup(os.unlink, handle.name)
        return handle.name

    def test_defaults_without_file(self):
        config = RebalanceConfig()
        self.assertEqual(config.settings.vhost, "/")
        self.assertEqual(config.settings.queue_pattern, ".*")
        self.assertEqual(config.settings.shed_priority, 990)
        self.assertEqual(config.settings.pin_priority, 992)
        self.assertEqual(config.settings.policy_suffix, "-ha-temp")
        self.assertEqual(config.broker.transport, "http")

    def test_loads_sections(self):
        path = self._write({
            "broker": {"transport": "CTL", "url": "http://mq:15672/", "timeout": 4},
            "rebalance": {"vhost": "prod", "queue_pattern": "orders", "max_attempts": 0, "deadline": 120},
        })

        config = RebalanceConfig(path)

        self.assertEqual(config.broker.transport, "ctl")
        self.assertEqual(config.broker.url, "http://mq:15672")
        self.assertEqual(config.broker.timeout, 4.0)
        self.assertEqual(config.settings.vhost, "prod")
        self.assertEqual(config.settings.max_attempts, 0)
        self.assertEqual(config.settings.deadline, 120.0)
        self.assertEqual(config.settings.poll_interval, RebalanceSettings().poll_interval)

    def test_missing_file(self):
        with self.assertRaises(FileNotFoundError):
            RebalanceConfig("/nonexistent/rebalance.json")

    def test_invalid_json(self):
        with self.assertRaises(ValueError):
            RebalanceConfig(self._write("{not json"))

    def test_pin_priority_must_outrank_shed(self):
        with self.assertRaises(ValueError):
            RebalanceSettings.from_dict({"shed_priority": 992, "pin_priority": 990})

    def test_unknown_transport(self):
        with self.assertRaises(ValueError):
            BrokerSpec.from_dict({"transport": "amqp"})

    def test_overrides_ignore_none(self):
        config = RebalanceConfig(self._write({"rebalance": {"vhost": "prod", "poll_interval": 5}}))

        updated = config.with_overrides(
            broker={"username": "admin", "password": None},
            settings={"vhost": None, "queue_pattern": "orders", "dry_run": True},
        )

        self.assertEqual(updated.settings.vhost, "prod")
        self.assertEqual(updated.settings.queue_pattern, "orders")
        self.assertTrue(updated.settings.dry_run)
        self.assertEqual(updated.settings.poll_interval, 5.0)
        self.assertEqual(updated.broker.username, "admin")
        self.assertEqual(updated.broker.password, "guest")
        # original untouched
        self.assertFalse(config.settings.dry_run)

    def test_overrides_are_validated(self):
        with self.assertRaises(ValueError):
            RebalanceConfig().with_overrides(settings={"max_attempts": -1})


if __name__ == '__main__':
    unittest.main()
