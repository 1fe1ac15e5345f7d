#!/usr/bin/env python3
"""
Tests for the Noxwatch Process Supervisor.

Supervised processes are real short-lived Python interpreters; resource
readings come from a scripted inspector.
"""

import asyncio
import logging
import os
import subprocess
import sys
import time
from dataclasses import FrozenInstanceError

import psutil
import pytest

from noxwatch.alerts import Severity
from noxwatch.supervisor import (
    ProcessInspector,
    ProcessSpec,
    ProcessStatus,
    ProcessSupervisor,
    RestartPolicy,
)
from noxwatch.utils import TargetLocks, read_json

from conftest import FakeInspector, wait_until

PY = sys.executable

CRASH = 'import sys; sys.exit(1)'
SLEEP = 'import time; time.sleep(30)'

# Exits 1 the first time (creating the marker), then stays up
CRASH_ONCE = (
    "import os, sys, time\n"
    "if not os.path.exists(sys.argv[1]):\n"
    "    open(sys.argv[1], 'w').close()\n"
    "    sys.exit(1)\n"
    "time.sleep(30)\n"
)

# Exits 1 while the flag file exists
CRASH_WHILE_FLAGGED = (
    "import os, sys, time\n"
    "if os.path.exists(sys.argv[1]):\n"
    "    sys.exit(1)\n"
    "time.sleep(30)\n"
)


def py_spec(name, code, *extra, **kwargs):
    return ProcessSpec(name=name, command=PY, args=('-c', code) + tuple(extra), **kwargs)


def fast_policy(max_restarts=3, window=300.0, delay=0.05):
    return RestartPolicy(max_restarts=max_restarts, restart_window=window, restart_delay=delay)


def make_supervisor(specs, sink, inspector=None, **kwargs):
    kwargs.setdefault('policy', fast_policy())
    kwargs.setdefault('grace_period', 2.0)
    return ProcessSupervisor(specs, sink, inspector=inspector or FakeInspector(), **kwargs)


# ============================================================
# RestartPolicy Tests
# ============================================================

class TestRestartPolicy:
    def test_defaults(self):
        policy = RestartPolicy()
        assert policy.max_restarts == 5
        assert policy.restart_window == 300.0
        assert policy.restart_delay == 5.0

    def test_first_restart_allowed(self):
        policy = RestartPolicy(max_restarts=3)
        assert policy.next_restart_count(0, None, now=100.0) == 1

    def test_increments_within_window(self):
        policy = RestartPolicy(max_restarts=3, restart_window=300)
        assert policy.next_restart_count(2, last_restart_at=100.0, now=150.0) == 3

    def test_exhausted_within_window(self):
        policy = RestartPolicy(max_restarts=3, restart_window=300)
        assert policy.next_restart_count(3, last_restart_at=100.0, now=150.0) is None

    def test_window_elapsed_resets_count(self):
        policy = RestartPolicy(max_restarts=3, restart_window=300)
        assert policy.next_restart_count(3, last_restart_at=100.0, now=401.0) == 1

    def test_window_boundary_is_exclusive(self):
        policy = RestartPolicy(max_restarts=3, restart_window=300)
        assert policy.next_restart_count(3, last_restart_at=100.0, now=400.0) is None

    def test_continuous_crashes_allow_max_plus_one_starts(self):
        policy = RestartPolicy(max_restarts=3, restart_window=300)
        count, last, starts, now = 0, None, 1, 0.0
        while True:
            now += 5
            nxt = policy.next_restart_count(count, last, now)
            if nxt is None:
                break
            count, last = nxt, now
            starts += 1
        assert starts == 4

    def test_from_dict_uses_base(self):
        base = RestartPolicy(max_restarts=7, restart_window=60, restart_delay=1)
        policy = RestartPolicy.from_dict({'restart_delay': 3}, base=base)
        assert policy == RestartPolicy(max_restarts=7, restart_window=60, restart_delay=3)


# ============================================================
# ProcessSpec Tests
# ============================================================

class TestProcessSpec:
    def test_string_command_is_split(self):
        spec = ProcessSpec.from_dict({'name': 'core', 'command': 'node dist/index.js --port 3000'})
        assert spec.command == 'node'
        assert spec.args == ('dist/index.js', '--port', '3000')
        assert spec.critical is True

    def test_list_command_and_args(self):
        spec = ProcessSpec.from_dict({
            'name': 'ssh-honeypot',
            'command': ['python3', 'honeypot.py'],
            'args': ['--port', 2222],
        })
        assert spec.argv == ('python3', 'honeypot.py', '--port', '2222')

    def test_memory_limit_in_mb(self):
        spec = ProcessSpec.from_dict({'name': 'core', 'command': 'x', 'max_memory_mb': 512})
        assert spec.max_memory_bytes == 512 * 1024 * 1024

    def test_policy_override_and_env(self):
        spec = ProcessSpec.from_dict({
            'name': 'bot',
            'command': 'node bot.js',
            'critical': False,
            'env': {'NODE_ENV': 'production'},
            'restart_policy': {'max_restarts': 2},
        })
        assert spec.critical is False
        assert spec.environment() == {'NODE_ENV': 'production'}
        assert spec.policy.max_restarts == 2

    def test_missing_fields_rejected(self):
        with pytest.raises(ValueError):
            ProcessSpec.from_dict({'command': 'x'})
        with pytest.raises(ValueError):
            ProcessSpec.from_dict({'name': 'core'})

    def test_spec_is_immutable(self):
        spec = ProcessSpec(name='core', command='x')
        with pytest.raises(FrozenInstanceError):
            spec.name = 'other'


# ============================================================
# Crash Restart Tests
# ============================================================

class TestCrashRestart:
    @pytest.mark.asyncio
    async def test_crash_loop_fails_after_budget(self, sink):
        """max_restarts 3 under continuous crashes: 4 starts, failed, one fatal alert."""
        supervisor = make_supervisor([py_spec('core', CRASH)], sink)
        try:
            await supervisor.start_all()
            await wait_until(lambda: supervisor.status_of('core') == ProcessStatus.FAILED)
            await asyncio.sleep(0.3)

            state = supervisor.snapshot()['core']
            assert state['status'] == 'failed'
            assert state['start_attempts'] == 4
            assert state['restart_count'] == 3

            fatal = [a for a in sink.alerts if a['severity'] == Severity.CRITICAL]
            assert len(fatal) == 1
            assert fatal[0]['category'] == 'PROCESS'
            assert 'core' in fatal[0]['title']
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_single_crash_respawns_once(self, sink, tmp_path):
        marker = tmp_path / 'crashed'
        supervisor = make_supervisor([py_spec('core', CRASH_ONCE, str(marker))], sink)
        try:
            await supervisor.start_all()
            await wait_until(lambda: supervisor.snapshot()['core']['start_attempts'] == 2
                             and supervisor.is_running('core'))
            await asyncio.sleep(0.2)

            state = supervisor.snapshot()['core']
            assert state['start_attempts'] == 2
            assert state['restart_count'] == 1
            assert state['status'] == 'running'
            assert sink.alerts == []
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_non_critical_exit_left_down(self, sink):
        supervisor = make_supervisor([py_spec('helper', CRASH, critical=False)], sink)
        try:
            await supervisor.start_all()
            await wait_until(lambda: supervisor.status_of('helper') == ProcessStatus.EXITED)
            await asyncio.sleep(0.2)

            state = supervisor.snapshot()['helper']
            assert state['start_attempts'] == 1
            assert state['exit_code'] == 1
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_spawn_failure_goes_through_budget(self, sink):
        spec = ProcessSpec(name='ghost', command='/nonexistent/noxwatch-test-binary')
        supervisor = make_supervisor([spec], sink, policy=fast_policy(max_restarts=2, delay=0.01))
        try:
            await supervisor.start_all()
            await wait_until(lambda: supervisor.status_of('ghost') == ProcessStatus.FAILED)

            assert supervisor.snapshot()['ghost']['start_attempts'] == 3
            assert supervisor.get_stats()['spawn_failures'] == 3
            assert len(sink.by_category('PROCESS')) == 1
        finally:
            await supervisor.stop()


# ============================================================
# Resource Policing Tests
# ============================================================

class TestResourcePolicing:
    @pytest.mark.asyncio
    async def test_memory_restarts_never_mark_failed(self, sink):
        inspector = FakeInspector(memory_bytes=50 * 1024 * 1024)
        spec = py_spec('core', SLEEP, max_memory_bytes=10 * 1024 * 1024)
        supervisor = make_supervisor([spec], sink, inspector=inspector,
                                     policy=fast_policy(max_restarts=1))
        try:
            await supervisor.start_all()
            pids = {supervisor.pid_of('core')}

            for _ in range(3):
                await supervisor.police()
                pids.add(supervisor.pid_of('core'))

            state = supervisor.snapshot()['core']
            assert state['status'] == 'running'
            assert state['resource_restarts'] == 3
            assert state['restart_count'] == 0
            assert len(pids) == 4
            assert not [a for a in sink.alerts if a['severity'] == Severity.CRITICAL]
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_cpu_over_limit_only_warns(self, sink, caplog):
        inspector = FakeInspector(cpu_percent=99.0)
        spec = py_spec('core', SLEEP, max_cpu_percent=50.0)
        supervisor = make_supervisor([spec], sink, inspector=inspector)
        try:
            await supervisor.start_all()
            pid = supervisor.pid_of('core')

            with caplog.at_level(logging.WARNING, logger='noxwatch.supervisor'):
                await supervisor.police()

            assert supervisor.pid_of('core') == pid
            assert supervisor.snapshot()['core']['resource_restarts'] == 0
            assert 'CPU 99.0%' in caplog.text
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_police_records_usage(self, sink):
        inspector = FakeInspector(memory_bytes=1234, cpu_percent=12.5)
        supervisor = make_supervisor([py_spec('core', SLEEP)], sink, inspector=inspector)
        try:
            await supervisor.start_all()
            await supervisor.police()
            state = supervisor.snapshot()['core']
            assert state['memory_bytes'] == 1234
            assert state['cpu_percent'] == 12.5
        finally:
            await supervisor.stop()


# ============================================================
# Restart Request Tests
# ============================================================

class TestRestartRequests:
    @pytest.mark.asyncio
    async def test_request_restart_noop_when_running(self, sink):
        supervisor = make_supervisor([py_spec('core', SLEEP)], sink)
        try:
            await supervisor.start_all()
            pid = supervisor.pid_of('core')
            assert await supervisor.request_restart('core') is False
            assert supervisor.pid_of('core') == pid
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_request_restart_unknown_name(self, sink):
        supervisor = make_supervisor([], sink)
        assert await supervisor.request_restart('nope') is False

    @pytest.mark.asyncio
    async def test_request_restart_ignored_when_failed(self, sink):
        supervisor = make_supervisor([py_spec('core', CRASH)], sink,
                                     policy=fast_policy(max_restarts=0))
        try:
            await supervisor.start_all()
            await wait_until(lambda: supervisor.status_of('core') == ProcessStatus.FAILED)
            assert await supervisor.request_restart('core') is False
            assert supervisor.snapshot()['core']['start_attempts'] == 1
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_overlapping_detection_restarts_once(self, sink, tmp_path):
        """Exit watcher and a health request racing on the same process: one restart."""
        marker = tmp_path / 'crashed'
        supervisor = make_supervisor(
            [py_spec('core', CRASH_ONCE, str(marker))], sink,
            policy=fast_policy(delay=0.3),
        )
        try:
            await supervisor.start_all()
            await wait_until(lambda: supervisor.status_of('core') == ProcessStatus.RESTARTING)

            requested = await supervisor.request_restart('core', reason='health check')
            await wait_until(lambda: supervisor.is_running('core'))
            await asyncio.sleep(0.2)

            assert requested is False
            assert supervisor.snapshot()['core']['start_attempts'] == 2
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_request_restart_brings_back_non_critical(self, sink):
        supervisor = make_supervisor([py_spec('helper', SLEEP, critical=False)], sink)
        try:
            await supervisor.start_all()
            psutil.Process(supervisor.pid_of('helper')).kill()
            await wait_until(lambda: supervisor.status_of('helper') == ProcessStatus.EXITED)

            assert await supervisor.request_restart('helper') is True
            assert supervisor.is_running('helper')
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_restart_waits_for_target_lock(self, sink):
        locks = TargetLocks()
        supervisor = make_supervisor([py_spec('helper', SLEEP, critical=False)], sink, locks=locks)
        try:
            await supervisor.start_all()
            async with locks.hold('helper', holder='test'):
                task = asyncio.ensure_future(supervisor.request_restart('helper'))
                await asyncio.sleep(0.05)
                assert not task.done()
            assert await task is False
        finally:
            await supervisor.stop()


# ============================================================
# Reset & Shutdown Tests
# ============================================================

class TestResetAndStop:
    @pytest.mark.asyncio
    async def test_reset_restarts_failed_process(self, sink, tmp_path):
        flag = tmp_path / 'broken'
        flag.touch()
        supervisor = make_supervisor(
            [py_spec('core', CRASH_WHILE_FLAGGED, str(flag))], sink,
            policy=fast_policy(max_restarts=1),
        )
        try:
            await supervisor.start_all()
            await wait_until(lambda: supervisor.status_of('core') == ProcessStatus.FAILED)

            flag.unlink()
            started = await supervisor.reset()

            assert started == ['core']
            assert supervisor.is_running('core')
            assert supervisor.snapshot()['core']['restart_count'] == 0
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_reset_unknown_name(self, sink):
        supervisor = make_supervisor([py_spec('core', SLEEP)], sink)
        assert await supervisor.reset('nope') == []

    @pytest.mark.asyncio
    async def test_stop_terminates_children(self, sink):
        supervisor = make_supervisor([py_spec('a', SLEEP), py_spec('b', SLEEP)], sink)
        await supervisor.start_all()
        pids = supervisor.managed_pids()
        assert len(pids) == 2

        await supervisor.stop()

        assert supervisor.managed_pids() == set()
        assert all(not psutil.pid_exists(pid) for pid in pids)
        assert supervisor.status_of('a') == ProcessStatus.STOPPED

    @pytest.mark.asyncio
    async def test_no_restart_after_stop(self, sink):
        supervisor = make_supervisor([py_spec('core', SLEEP)], sink)
        await supervisor.start_all()
        await supervisor.stop()
        await asyncio.sleep(0.2)
        assert supervisor.snapshot()['core']['start_attempts'] == 1
        assert sink.alerts == []


# ============================================================
# State & Output Tests
# ============================================================

class TestStateAndOutput:
    @pytest.mark.asyncio
    async def test_state_file_written(self, sink, tmp_path):
        path = tmp_path / 'supervisor-state.json'
        supervisor = make_supervisor([py_spec('core', SLEEP)], sink, state_path=path)
        try:
            await supervisor.start_all()
            data = read_json(path)
            assert data['processes']['core']['status'] == 'running'
            assert data['processes']['core']['pid'] == supervisor.pid_of('core')
            assert data['policy']['max_restarts'] == 3
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_child_output_logged(self, sink, caplog):
        code = "import time; print('hello from child', flush=True); time.sleep(30)"
        supervisor = make_supervisor([py_spec('talker', code)], sink)
        try:
            with caplog.at_level(logging.INFO, logger='noxwatch.proc.talker'):
                await supervisor.start_all()
                await wait_until(lambda: 'hello from child' in caplog.text)
            record = next(r for r in caplog.records if 'hello from child' in r.getMessage())
            assert record.name == 'noxwatch.proc.talker'
        finally:
            await supervisor.stop()

    def test_duplicate_names_rejected(self, sink):
        with pytest.raises(ValueError):
            ProcessSupervisor([py_spec('x', SLEEP), py_spec('x', SLEEP)], sink)

    @pytest.mark.asyncio
    async def test_views(self, sink):
        supervisor = make_supervisor(
            [py_spec('core', SLEEP), py_spec('helper', SLEEP, critical=False)], sink
        )
        try:
            await supervisor.start_all()
            assert supervisor.critical_names() == ['core']
            assert supervisor.is_running('helper')
            assert 'core' in supervisor
            stats = supervisor.get_stats()
            assert stats['processes'] == 2
            assert stats['running'] == 2
            assert stats['failed'] == []
        finally:
            await supervisor.stop()


# ============================================================
# Process Inspection Tests
# ============================================================

@pytest.fixture
def child():
    proc = subprocess.Popen([PY, '-c', SLEEP])
    # Wait for exec so the process name is the interpreter's
    handle = psutil.Process(proc.pid)
    for _ in range(200):
        if handle.cmdline()[-1:] == [SLEEP]:
            break
        time.sleep(0.01)
    yield proc
    proc.kill()
    proc.wait()


class TestProcessInspector:
    """Tests for psutil-backed inspection of real processes."""

    def test_inspect_self(self):
        usage = ProcessInspector().inspect(os.getpid())
        assert usage.pid == os.getpid()
        assert usage.memory_bytes > 0
        assert usage.cpu_percent >= 0
        assert usage.name

    def test_inspect_dead_pid(self):
        proc = subprocess.Popen([PY, '-c', 'pass'])
        proc.wait()
        inspector = ProcessInspector()
        assert inspector.inspect(proc.pid) is None
        assert inspector.pid_exists(proc.pid) is False

    def test_find_by_name(self, child):
        name = psutil.Process(child.pid).name()
        pids = ProcessInspector().find_by_name(name)
        assert child.pid in pids
        assert pids == sorted(pids)
        assert ProcessInspector().find_by_name('noxwatch-no-such-process') == []

    def test_top_cpu_honours_exclude(self, child):
        inspector = ProcessInspector()
        hot = inspector.top_cpu(-1, exclude=[os.getpid()])
        pids = [u.pid for u in hot]
        assert os.getpid() not in pids
        assert child.pid in pids
        assert [u.cpu_percent for u in hot] == sorted((u.cpu_percent for u in hot), reverse=True)

    def test_forget_drops_cached_process(self, child):
        inspector = ProcessInspector()
        assert inspector.inspect(child.pid) is not None
        assert child.pid in inspector._procs
        inspector.forget(child.pid)
        assert child.pid not in inspector._procs
