"""Tests for the join-all fan-out primitive."""
import threading

from teradata_xport.fanout import join_all


def test_outcomes_follow_input_order():
    outcomes = join_all(lambda n: n * 2, [3, 1, 2])
    assert [(o.item, o.value, o.error) for o in outcomes] == [(3, 6, None), (1, 2, None), (2, 4, None)]


def test_failure_does_not_cancel_siblings():
    def fn(n):
        if n == 2:
            raise RuntimeError("boom")
        return n

    outcomes = join_all(fn, [1, 2, 3])
    assert [o.value for o in outcomes] == [1, None, 3]
    assert isinstance(outcomes[1].error, RuntimeError)


def test_branches_run_concurrently():
    barrier = threading.Barrier(3, timeout=5)
    outcomes = join_all(lambda n: barrier.wait() is not None, [1, 2, 3])
    assert all(o.error is None for o in outcomes)


def test_empty_input():
    assert join_all(lambda n: n, []) == []
