"""Tests for the round-robin provider pool."""
import pytest

from subscription_supervisor.errors import InvalidConfig, NotConfigured
from subscription_supervisor.providers import ProviderPool


class TestProviderPool:
    def test_rotation_wraps_around(self):
        pool = ProviderPool(["A", "B", "C"])

        seen = [pool.current()]
        for _ in range(3):
            seen.append(pool.rotate())

        assert seen == ["A", "B", "C", "A"]

    @pytest.mark.parametrize("size", [1, 2, 3, 7])
    def test_full_cycle_returns_to_start(self, size):
        pool = ProviderPool([f"wss://node-{i}" for i in range(size)])
        pool.rotate()
        start = pool.cursor

        for _ in range(size):
            pool.rotate()

        assert pool.cursor == start

    def test_empty_list_rejected_and_prior_pool_kept(self):
        pool = ProviderPool(["A", "B"])
        pool.rotate()

        with pytest.raises(InvalidConfig):
            pool.set_providers([])

        assert pool.endpoints == ["A", "B"]
        assert pool.current() == "B"

    def test_set_providers_resets_cursor(self):
        pool = ProviderPool(["A", "B"])
        pool.rotate()

        pool.set_providers(["X", "Y", "Z"])

        assert pool.cursor == 0
        assert pool.current() == "X"

    def test_unconfigured_pool(self):
        pool = ProviderPool()

        with pytest.raises(NotConfigured):
            pool.current()
        with pytest.raises(NotConfigured):
            pool.rotate()
        assert len(pool) == 0
