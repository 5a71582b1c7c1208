"""
Tests for reliability — retry backoff.
"""

from provisioner.core.reliability.backoff import backoff_delay


class TestBackoff:
    def test_doubles(self):
        assert [backoff_delay(n, 2.0) for n in (1, 2, 3, 4)] == [2.0, 4.0, 8.0, 16.0]

    def test_capped(self):
        assert backoff_delay(20, 1.0, max_delay=60.0) == 60.0

    def test_zero_base(self):
        assert backoff_delay(3, 0.0) == 0.0

    def test_invalid_retry(self):
        assert backoff_delay(0, 5.0) == 0.0

    def test_jitter_bounds(self):
        for _ in range(20):
            delay = backoff_delay(2, 1.0, jitter=0.5)
            assert 2.0 <= delay <= 3.0
