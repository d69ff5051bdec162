#!/usr/bin/env python3
"""
Unit tests for parallel per-subject fan-out.
"""

import threading
import time

import pytest

from neurotbss.utils.fanout import FanoutError, FanoutTask, run_fanout


def _square(x):
    return x * x


def _fail_on(x, bad):
    if x == bad:
        raise RuntimeError(f"cannot process {x}")
    return x


class TestRunFanout:

    def test_all_succeed(self):
        tasks = [FanoutTask('square', f'sub-{i}', _square, (i,)) for i in range(6)]
        result = run_fanout(tasks, stage='square', max_workers=3)
        assert result.succeeded
        assert sorted(result.results) == [0, 1, 4, 9, 16, 25]
        result.raise_for_failures()

    def test_empty(self):
        result = run_fanout([], stage='nothing')
        assert result.succeeded
        assert result.n_tasks == 0

    @pytest.mark.parametrize('workers', [1, 2, None, 50])
    def test_worker_count_does_not_change_outcome(self, workers):
        tasks = [FanoutTask('square', f'sub-{i}', _square, (i,)) for i in range(5)]
        result = run_fanout(tasks, max_workers=workers)
        assert sorted(result.results) == [0, 1, 4, 9, 16]

    def test_failure_does_not_abort_siblings(self):
        done = []
        lock = threading.Lock()

        def work(i):
            if i == 0:
                raise OSError("disk full")
            time.sleep(0.01)
            with lock:
                done.append(i)

        tasks = [FanoutTask('copy', f'sub-{i}', work, (i,)) for i in range(4)]
        result = run_fanout(tasks, stage='copy FA', max_workers=4)

        assert sorted(done) == [1, 2, 3]
        assert not result.succeeded
        assert [f.subject for f in result.failures] == ['sub-0']
        assert 'disk full' in result.failures[0].error

    def test_raise_for_failures(self):
        tasks = [FanoutTask('copy', f'sub-{i}', _fail_on, (i, 2)) for i in range(3)]
        result = run_fanout(tasks, stage='copy AD')
        with pytest.raises(FanoutError, match="1 task\\(s\\) failed in copy AD") as exc_info:
            result.raise_for_failures()
        assert exc_info.value.failures[0].subject == 'sub-2'
        assert 'cannot process 2' in str(exc_info.value)
