from __future__ import annotations

import asyncio
import os
import time
from typing import List

import pytest

from agent_gateway.init import ChildTracker, InitSupervisor, reap_once


def _spawn_exited_child() -> int:
    """启动一个立即退出的子进程，等它变成 zombie（不回收）。"""

    pid = os.posix_spawnp("true", ["true"], dict(os.environ))
    os.waitid(os.P_PID, pid, os.WEXITED | os.WNOWAIT)
    return pid


def _reap_until(tracker: ChildTracker, pid: int, timeout_sec: float = 5.0) -> List[int]:
    reaped: List[int] = []
    deadline = time.monotonic() + timeout_sec
    while pid not in reaped and time.monotonic() < deadline:
        reaped.extend(reap_once(tracker))
        time.sleep(0.01)
    return reaped


def test_untracked_zombie_is_reaped() -> None:
    pid = _spawn_exited_child()
    assert pid in _reap_until(ChildTracker(), pid)
    with pytest.raises(ChildProcessError):
        os.waitpid(pid, os.WNOHANG)


def test_tracked_child_is_left_for_its_owner() -> None:
    tracker = ChildTracker()
    pid = _spawn_exited_child()
    tracker.track(pid)

    assert pid not in reap_once(tracker)
    # 退出状态仍然保留给真正的等待者
    wpid, status = os.waitpid(pid, 0)
    assert wpid == pid
    assert os.waitstatus_to_exitcode(status) == 0
    tracker.untrack(pid)


def test_spawn_in_progress_pauses_reaping() -> None:
    tracker = ChildTracker()
    pid = _spawn_exited_child()

    with tracker.spawning():
        assert tracker.is_protected(pid)
        assert reap_once(tracker) == []

    assert not tracker.is_protected(pid)
    assert pid in _reap_until(tracker, pid)


def test_supervisor_lifecycle_and_counters() -> None:
    async def _go() -> tuple[bool, bool, int]:
        sup = InitSupervisor(reap_interval_sec=0.01, shutdown_hook=lambda: None)
        sup.start()
        sup.start()
        running = sup.running
        _spawn_exited_child()
        deadline = time.monotonic() + 5
        while sup.reaped_total < 1 and time.monotonic() < deadline:
            await asyncio.sleep(0.01)
        await sup.stop()
        await sup.stop()
        return running, sup.running, sup.reaped_total

    running, after_stop, total = asyncio.run(_go())
    assert running is True
    assert after_stop is False
    assert total >= 1


def test_disabled_reaper_never_starts() -> None:
    async def _go() -> bool:
        sup = InitSupervisor(reaper_enabled=False)
        sup.start()
        return sup.running

    assert asyncio.run(_go()) is False


def test_request_shutdown_calls_hook() -> None:
    calls: List[str] = []
    sup = InitSupervisor(shutdown_hook=lambda: calls.append("down"))
    sup.request_shutdown()
    assert calls == ["down"]
