import unittest
from unittest.mock import MagicMock

from rebalance_core.resilience import PollPolicy, RetryWithBackoff, retry


class TestRetry(unittest.TestCase):
    def test_retry_eventually_succeeds(self):
        print("\nTesting Retry: Eventually Succeeds")
        mock_func = MagicMock(side_effect=[ValueError("Fail 1"), ValueError("Fail 2"), "Success"])

        @retry(max_retries=3, initial_delay=0.01, exceptions=(ValueError,))
        def decorated_func():
            return mock_func()

        result = decorated_func()
        self.assertEqual(result, "Success")
        self.assertEqual(mock_func.call_count, 3)
        print("  -> Function called 3 times as expected (2 fails + 1 success)")

    def test_retry_max_retries_exceeded(self):
        print("\nTesting Retry: Max Retries Exceeded")
        mock_func = MagicMock(side_effect=ValueError("Fail"))

        @retry(max_retries=2, initial_delay=0.01, exceptions=(ValueError,))
        def decorated_func():
            return mock_func()

        with self.assertRaises(ValueError):
            decorated_func()

        # Initial call + 2 retries = 3 calls
        self.assertEqual(mock_func.call_count, 3)

    def test_retry_ignores_unlisted_exceptions(self):
        mock_func = MagicMock(side_effect=KeyError("not transient"))

        @retry(max_retries=3, initial_delay=0.01, exceptions=(ValueError,))
        def decorated_func():
            return mock_func()

        with self.assertRaises(KeyError):
            decorated_func()
        self.assertEqual(mock_func.call_count, 1)

    def test_backoff_delays_grow_and_cap(self):
        print("\nTesting Retry: Backoff Delays")
        sleeps = []
        mock_func = MagicMock(side_effect=ValueError("Fail"))
        decorator = RetryWithBackoff(
            max_retries=4,
            initial_delay=0.5,
            max_delay=1.5,
            backoff_factor=2.0,
            jitter=False,
            exceptions=(ValueError,),
            sleep=sleeps.append,
        )

        with self.assertRaises(ValueError):
            decorator(mock_func)()

        self.assertEqual(sleeps, [0.5, 1.0, 1.5, 1.5])
        print(f"  -> Slept {sleeps}")


class TestPollPolicy(unittest.TestCase):
    def test_attempt_budget(self):
        policy = PollPolicy(interval=0.0, max_attempts=3)
        self.assertFalse(policy.exhausted(2, elapsed=100.0))
        self.assertTrue(policy.exhausted(3, elapsed=0.0))

    def test_deadline_budget(self):
        policy = PollPolicy(interval=0.0, max_attempts=0, deadline=5.0)
        self.assertFalse(policy.exhausted(1000, elapsed=4.9))
        self.assertTrue(policy.exhausted(1, elapsed=5.0))

    def test_unbounded_policy_never_exhausts(self):
        policy = PollPolicy(interval=1.0, max_attempts=0, deadline=None)
        self.assertTrue(policy.unbounded)
        self.assertFalse(policy.exhausted(10 ** 6, elapsed=10 ** 6))


if __name__ == '__main__':
    unittest.main()
