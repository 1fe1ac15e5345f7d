#!/usr/bin/env python3
"""
Tests for Noxwatch shared utilities: target locks, periodic ticks, state files.
"""

import asyncio

import pytest

from noxwatch.utils import JsonLinesLog, PeriodicTask, TargetLocks, read_json, write_json_atomic


class TestTargetLocks:
    """Tests for per-target serialization."""

    @pytest.mark.asyncio
    async def test_same_target_serialized(self):
        locks = TargetLocks()
        order = []

        async def worker(tag, delay):
            async with locks.hold('nginx', holder=tag):
                order.append(f'{tag}-in')
                await asyncio.sleep(delay)
                order.append(f'{tag}-out')

        await asyncio.gather(worker('a', 0.05), worker('b', 0))
        assert order == ['a-in', 'a-out', 'b-in', 'b-out']

    @pytest.mark.asyncio
    async def test_different_targets_independent(self):
        locks = TargetLocks()
        async with locks.hold('nginx', holder='self-heal'):
            assert locks.is_held('nginx')
            assert locks.holder('nginx') == 'self-heal'
            async with locks.hold('core', holder='supervisor'):
                assert locks.held_targets() == ['core', 'nginx']
        assert locks.held_targets() == []
        assert locks.holder('nginx') == ''

    @pytest.mark.asyncio
    async def test_released_on_error(self):
        locks = TargetLocks()
        with pytest.raises(RuntimeError):
            async with locks.hold('core'):
                raise RuntimeError('boom')
        assert not locks.is_held('core')


class TestPeriodicTask:
    """Tests for the fixed-interval ticker."""

    @pytest.mark.asyncio
    async def test_overlapping_tick_skipped(self):
        release = asyncio.Event()
        calls = []

        async def slow():
            calls.append(1)
            await release.wait()

        task = PeriodicTask('slow', 10, slow)
        assert task.fire() is True
        await asyncio.sleep(0)
        assert task.busy
        assert task.fire() is False

        release.set()
        await asyncio.sleep(0.01)
        assert calls == [1]
        stats = task.get_stats()
        assert stats['ticks_skipped'] == 1
        assert stats['ticks_completed'] == 1

    @pytest.mark.asyncio
    async def test_failed_tick_does_not_stop_loop(self, caplog):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError('probe exploded')

        stop = asyncio.Event()
        task = PeriodicTask('flaky', 0.02, flaky)
        runner = asyncio.ensure_future(task.run(stop))
        await asyncio.sleep(0.15)
        stop.set()
        await asyncio.wait_for(runner, timeout=1)

        assert len(calls) >= 2
        assert task.get_stats()['ticks_failed'] == 1
        assert 'probe exploded' in caplog.text

    @pytest.mark.asyncio
    async def test_stop_waits_for_inflight_tick(self):
        finished = []

        async def work():
            await asyncio.sleep(0.1)
            finished.append(1)

        stop = asyncio.Event()
        task = PeriodicTask('work', 10, work)
        runner = asyncio.ensure_future(task.run(stop))
        await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(runner, timeout=1)
        assert finished == [1]

    @pytest.mark.asyncio
    async def test_delayed_first_tick(self):
        calls = []

        async def tick():
            calls.append(1)

        stop = asyncio.Event()
        task = PeriodicTask('later', 10, tick, run_immediately=False)
        runner = asyncio.ensure_future(task.run(stop))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(runner, timeout=1)
        assert calls == []


class TestStateFiles:
    """Tests for snapshot files and the JSON-lines log."""

    def test_write_and_read(self, tmp_path):
        path = tmp_path / 'nested' / 'state.json'
        write_json_atomic(path, {'status': 'alive'})
        assert read_json(path) == {'status': 'alive'}
        assert not (tmp_path / 'nested' / 'state.json.tmp').exists()

    def test_read_missing_or_corrupt(self, tmp_path):
        assert read_json(tmp_path / 'missing.json') is None
        bad = tmp_path / 'bad.json'
        bad.write_text('{not json')
        assert read_json(bad) is None

    def test_log_rotation(self, tmp_path):
        log = JsonLinesLog(tmp_path / 'self-healing.log', max_entries=3)
        for i in range(5):
            log.append({'n': i})

        assert log.backup_path.exists()
        assert len(log) == 2
        assert [e['n'] for e in log.tail(10)] == [0, 1, 2, 3, 4]
        assert [e['n'] for e in log.tail(2)] == [3, 4]

    def test_log_counts_existing_entries(self, tmp_path):
        path = tmp_path / 'self-healing.log'
        path.write_text('{"n": 1}\n{"n": 2}\n\n')
        log = JsonLinesLog(path, max_entries=2)
        assert len(log) == 2
        log.append({'n': 3})
        assert log.backup_path.exists()
        assert [e['n'] for e in log.tail()] == [1, 2, 3]

    def test_log_survives_deleted_file(self, tmp_path):
        path = tmp_path / 'self-healing.log'
        log = JsonLinesLog(path, max_entries=2)
        log.append({'n': 1})
        log.append({'n': 2})
        path.unlink()

        for i in range(3, 6):
            log.append({'n': i})

        assert [e['n'] for e in log.tail()] == [3, 4, 5]
        assert len(log) == 1

    def test_tail_skips_garbage_lines(self, tmp_path):
        path = tmp_path / 'self-healing.log'
        path.write_text('{"n": 1}\ngarbage\n{"n": 2}\n')
        assert [e['n'] for e in JsonLinesLog(path).tail()] == [1, 2]
