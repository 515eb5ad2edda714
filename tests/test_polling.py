"""Tests for PollingPolicy."""

from n8n_backup.polling import PollingPolicy


class TestPollingPolicy:
    def test_ready_immediately(self, sleeps):
        policy = PollingPolicy(max_attempts=5, interval=2, sleep=sleeps.append)
        assert policy.wait_until(lambda: True, "db") is True
        assert sleeps == []

    def test_ready_after_retries(self, sleeps):
        answers = iter([False, False, True])
        policy = PollingPolicy(max_attempts=5, interval=2, sleep=sleeps.append)

        assert policy.wait_until(lambda: next(answers), "db") is True
        assert sleeps == [2, 2]

    def test_gives_up(self, sleeps):
        """Exhausting the attempts returns False without a trailing sleep."""
        policy = PollingPolicy(max_attempts=4, interval=5, sleep=sleeps.append)

        assert policy.wait_until(lambda: False, "db") is False
        assert sleeps == [5, 5, 5]

    def test_predicate_errors_count_as_not_ready(self, sleeps):
        calls = []

        def check():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("connection refused")
            return True

        policy = PollingPolicy(max_attempts=3, interval=1, sleep=sleeps.append)
        assert policy.wait_until(check) is True
        assert len(calls) == 2

    def test_budget(self):
        assert PollingPolicy().budget == 115
        assert PollingPolicy(max_attempts=1, interval=5).budget == 0
