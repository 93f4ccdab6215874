"""Shared test fixtures."""

from __future__ import annotations

import os

import pytest

import poolmasterd
from poolmasterd import LoopResult, MonitoredTask


class WorkerExit(Exception):
    """Raised by the patched os._exit so a forked code path can be observed."""

    def __init__(self, code: int) -> None:
        super().__init__(code)
        self.code = code


class ScriptedTask(MonitoredTask):
    """Work unit returning (or raising) the scripted results in order, then CONTINUE."""

    def __init__(self, cmd="test:task", results=(), **kwargs):
        super().__init__(cmd, **kwargs)
        self.results = list(results)
        self.calls = 0
        self.valid = True
        self.initialized_with = None

    def arg_valid(self, options):
        return self.valid

    def init(self, options):
        self.initialized_with = options

    def loop(self, options):
        self.calls += 1
        if not self.results:
            return LoopResult.CONTINUE
        result = self.results.pop(0)
        if isinstance(result, BaseException):
            raise result
        if callable(result):
            return result()
        return result


class FakeProcesses:
    """Stands in for fork/kill/waitpid/sleep and records what was asked of the OS."""

    def __init__(self) -> None:
        self.next_pid = 100
        self.forked: list[int] = []
        self.killed: list[tuple[int, int]] = []
        self.exited: list[int] = []
        self.kill_errors: dict[int, OSError] = {}
        self.sleeps: list[float] = []
        self.sleep_hooks: dict[int, object] = {}
        self.events: list[tuple] = []
        self.exit_on_signal = True

    def fork(self) -> int:
        self.next_pid += 1
        self.forked.append(self.next_pid)
        self.events.append(("fork", self.next_pid))
        return self.next_pid

    def kill(self, pid: int, signum: int) -> None:
        if pid in self.kill_errors:
            raise self.kill_errors[pid]
        self.killed.append((pid, signum))
        self.events.append(("kill", pid, signum))
        if self.exit_on_signal and pid in self.forked and pid not in self.exited:
            self.exited.append(pid)

    def waitpid(self, pid: int, options: int) -> tuple[int, int]:
        if pid == -1:
            if self.exited:
                return self.exited.pop(0), 0
            return 0, 0
        self.events.append(("wait", pid))
        return pid, 0

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.events.append(("sleep", seconds))
        hook = self.sleep_hooks.pop(len(self.sleeps), None)
        if hook is not None:
            hook()


@pytest.fixture()
def fake_os(monkeypatch):
    fake = FakeProcesses()
    monkeypatch.setattr(poolmasterd.os, "fork", fake.fork)
    monkeypatch.setattr(poolmasterd.os, "kill", fake.kill)
    monkeypatch.setattr(poolmasterd.os, "waitpid", fake.waitpid)
    monkeypatch.setattr(poolmasterd.time, "sleep", fake.sleep)
    monkeypatch.setattr(poolmasterd.signal, "pthread_sigmask", lambda how, mask: set())
    return fake


@pytest.fixture()
def fake_exit(monkeypatch):
    def _exit(code):
        raise WorkerExit(code)

    monkeypatch.setattr(poolmasterd.os, "_exit", _exit)


@pytest.fixture()
def installed_handlers(monkeypatch):
    """Capture signal.signal registrations instead of touching the test process."""
    handlers: dict[int, object] = {}

    def _signal(signum, handler):
        handlers[signum] = handler

    monkeypatch.setattr(poolmasterd.signal, "signal", _signal)
    return handlers


@pytest.fixture()
def task(tmp_path):
    return ScriptedTask(tmp_dir=str(tmp_path / "tmp"), logs_dir=str(tmp_path / "logs"))


@pytest.fixture(autouse=True)
def _tmp_dirs(tmp_path):
    os.makedirs(tmp_path / "tmp", exist_ok=True)
