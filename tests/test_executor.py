"""Tests for bounded-concurrency execution in archive_digest/executor.py."""

import threading
import time

import pytest

from archive_digest.errors import Cancelled
from archive_digest.executor import (
    iter_batches,
    normalize_concurrency,
    run_collect_errors,
    run_first_error,
)


class TestHelpers:
    """Tests for normalize_concurrency and iter_batches."""

    @pytest.mark.parametrize("raw,expected", [(None, 1), (0, 1), (-4, 1), (1, 1), (8, 8)])
    def test_normalize_concurrency(self, raw, expected):
        assert normalize_concurrency(raw) == expected

    def test_batches(self):
        assert list(iter_batches(list(range(5)), 2)) == [[0, 1], [2, 3], [4]]

    def test_single_batch(self):
        assert list(iter_batches([1, 2, 3], 0)) == [[1, 2, 3]]

    def test_empty(self):
        assert list(iter_batches([], 3)) == []


class TestRunFirstError:
    """Tests for run_first_error."""

    def test_results_in_input_order(self):
        def work(item, cancel):
            time.sleep(0.001 * (5 - item))
            return item * 10

        assert run_first_error(list(range(5)), work, 3) == [0, 10, 20, 30, 40]

    def test_concurrency_bound(self):
        """Never more than N items run at once."""
        lock = threading.Lock()
        state = {"active": 0, "peak": 0}

        def work(item, cancel):
            with lock:
                state["active"] += 1
                state["peak"] = max(state["peak"], state["active"])
            time.sleep(0.01)
            with lock:
                state["active"] -= 1
            return item

        run_first_error(list(range(20)), work, 3)
        assert 1 <= state["peak"] <= 3

    def test_first_error_cancels_remaining(self):
        """Queued items never start once an item has failed."""
        started = []

        def work(item, cancel):
            started.append(item)
            if item == 0:
                raise ValueError("first failure")
            if cancel.wait(2.0):
                raise Cancelled("stopped")
            return item

        with pytest.raises(ValueError, match="first failure"):
            run_first_error(list(range(10)), work, 1)
        assert set(started) <= {0, 1}

    def test_external_cancel(self):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(Cancelled):
            run_first_error([1, 2], lambda item, ev: item, 2, cancel)


class TestRunCollectErrors:
    """Tests for run_collect_errors."""

    def test_collects_successes_and_failures(self):
        def work(item, cancel):
            if item % 2:
                raise RuntimeError(f"odd {item}")
            return item

        outcome = run_collect_errors(list(range(6)), work, 3)
        assert not outcome.ok
        assert [item for item, _ in outcome.results] == [0, 2, 4]
        assert [err.item for err in outcome.errors] == [1, 3, 5]
        assert "odd 3" in str(outcome.errors[1])

    def test_every_item_runs(self):
        seen = []
        lock = threading.Lock()

        def work(item, cancel):
            with lock:
                seen.append(item)
            if item == 0:
                raise RuntimeError("boom")
            return item

        run_collect_errors(list(range(8)), work, 2)
        assert sorted(seen) == list(range(8))

    def test_all_ok(self):
        outcome = run_collect_errors(["a", "b"], lambda item, ev: item.upper(), 2)
        assert outcome.ok
        assert outcome.results == [("a", "A"), ("b", "B")]
