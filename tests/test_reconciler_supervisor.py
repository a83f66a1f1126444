"""Tests for the reconciler worker thread and its command protocol."""

from __future__ import annotations

import threading
import time

import pytest

from housing.domain.constraints import ReconcilerConfig
from housing.domain.models import ConflictType
from housing.repository.data_repository import utc_now
from housing.services.reconciler_service import (
    ReconcileReport,
    ReconcilerConfigError,
    ReconcilerState,
    ReconcilerSupervisor,
)


TIMEOUT = 5.0


class FakeReconciler:
    def __init__(self) -> None:
        self.calls: list[ReconcilerConfig] = []
        self.started = threading.Event()
        self.gate: threading.Event | None = None
        self.failures = 0

    def reconcile(self, config, on_state=None):
        self.calls.append(config)
        if on_state is not None:
            on_state(ReconcilerState.SCANNING)
        self.started.set()
        if self.gate is not None:
            self.gate.wait(TIMEOUT)
        if self.failures:
            self.failures -= 1
            raise RuntimeError("database is locked")
        now = utc_now()
        return ReconcileReport(started_at=now, finished_at=now)


def _config(interval: float = 60.0, auto_resolve=(ConflictType.ORPHANED_REFERENCE,)) -> ReconcilerConfig:
    return ReconcilerConfig(
        interval_seconds=interval,
        auto_resolve_types=frozenset(auto_resolve),
        retroactive_age_gap=False,
    )


def _wait_for(predicate, timeout: float = TIMEOUT) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def fake() -> FakeReconciler:
    return FakeReconciler()


@pytest.fixture
def make_supervisor(fake):
    created: list[ReconcilerSupervisor] = []

    def factory(interval: float = 60.0, history_size: int = 20) -> ReconcilerSupervisor:
        supervisor = ReconcilerSupervisor(fake, _config(interval), history_size=history_size)
        created.append(supervisor)
        return supervisor

    yield factory
    if fake.gate is not None:
        fake.gate.set()
    for supervisor in created:
        supervisor.shutdown(timeout=TIMEOUT)


def test_new_supervisor_is_idle(make_supervisor) -> None:
    status = make_supervisor().status()

    assert status.running is False
    assert status.state == ReconcilerState.IDLE
    assert status.last_report is None
    assert status.cycles_completed == 0


def test_start_runs_an_immediate_cycle(make_supervisor, fake) -> None:
    supervisor = make_supervisor()

    status = supervisor.start().result(TIMEOUT)

    assert status.running is True
    assert status.cycles_completed == 1
    assert status.next_run_at is not None
    assert status.last_report is not None
    assert len(fake.calls) == 1


def test_start_twice_does_not_run_an_extra_cycle(make_supervisor, fake) -> None:
    supervisor = make_supervisor()
    supervisor.start().result(TIMEOUT)
    supervisor.start().result(TIMEOUT)

    assert len(fake.calls) == 1


def test_cycles_repeat_on_interval(make_supervisor) -> None:
    supervisor = make_supervisor(interval=0.05)
    supervisor.start().result(TIMEOUT)

    assert _wait_for(lambda: supervisor.status().cycles_completed >= 3)


def test_stop_halts_scheduling(make_supervisor, fake) -> None:
    supervisor = make_supervisor(interval=0.05)
    supervisor.start().result(TIMEOUT)

    status = supervisor.stop().result(TIMEOUT)
    calls_after_stop = len(fake.calls)
    time.sleep(0.2)

    assert status.running is False
    assert status.next_run_at is None
    assert len(fake.calls) == calls_after_stop


def test_stop_waits_for_in_flight_cycle(make_supervisor, fake) -> None:
    supervisor = make_supervisor()
    fake.gate = threading.Event()
    start_future = supervisor.start()
    assert fake.started.wait(TIMEOUT)

    stop_future = supervisor.stop()
    time.sleep(0.1)

    assert not stop_future.done()
    assert supervisor.status().state == ReconcilerState.SCANNING

    fake.gate.set()
    assert start_future.result(TIMEOUT).cycles_completed == 1
    status = stop_future.result(TIMEOUT)
    assert status.running is False
    assert status.state == ReconcilerState.IDLE


def test_reconfigure_applies_to_next_cycle(make_supervisor, fake) -> None:
    supervisor = make_supervisor()
    updated = _config(interval=120.0, auto_resolve=())

    status = supervisor.reconfigure(updated).result(TIMEOUT)
    supervisor.run_now().result(TIMEOUT)

    assert status.config == updated
    assert fake.calls[-1] == updated


def test_reconfigure_reschedules_running_supervisor(make_supervisor) -> None:
    supervisor = make_supervisor(interval=3600.0)
    supervisor.start().result(TIMEOUT)

    supervisor.reconfigure(_config(interval=0.05)).result(TIMEOUT)

    assert _wait_for(lambda: supervisor.status().cycles_completed >= 3)


@pytest.mark.parametrize(
    "config",
    [
        _config(interval=0),
        _config(auto_resolve=(ConflictType.CAPACITY_EXCEEDED,)),
    ],
)
def test_invalid_reconfigure_is_rejected_synchronously(make_supervisor, config) -> None:
    supervisor = make_supervisor()
    original = supervisor.status().config

    with pytest.raises(ReconcilerConfigError):
        supervisor.reconfigure(config)

    assert supervisor.status().config == original


def test_partial_updates_submitted_together_are_both_kept(make_supervisor) -> None:
    supervisor = make_supervisor()

    first = supervisor.update_config(interval_seconds=120.0)
    second = supervisor.update_config(retroactive_age_gap=True)
    first.result(TIMEOUT)
    status = second.result(TIMEOUT)

    assert status.config.interval_seconds == 120.0
    assert status.config.retroactive_age_gap is True
    assert status.config.auto_resolve_types == frozenset({ConflictType.ORPHANED_REFERENCE})
    assert supervisor.status().config == status.config


def test_partial_update_with_no_changes_keeps_config(make_supervisor) -> None:
    supervisor = make_supervisor()
    original = supervisor.status().config

    status = supervisor.update_config(interval_seconds=None, auto_resolve_types=None).result(TIMEOUT)

    assert status.config == original


@pytest.mark.parametrize(
    "changes",
    [
        {"interval_seconds": 0},
        {"auto_resolve_types": [ConflictType.CAPACITY_EXCEEDED.value]},
        {"auto_resolve_types": ["not-a-conflict"]},
    ],
)
def test_invalid_partial_update_fails_the_future(make_supervisor, changes) -> None:
    supervisor = make_supervisor()
    original = supervisor.status().config

    future = supervisor.update_config(**changes)

    with pytest.raises(ReconcilerConfigError):
        future.result(TIMEOUT)
    assert supervisor.status().config == original


def test_invalid_initial_config_is_rejected(fake) -> None:
    with pytest.raises(ReconcilerConfigError):
        ReconcilerSupervisor(fake, _config(interval=-1))


def test_run_now_works_without_start(make_supervisor) -> None:
    supervisor = make_supervisor()

    report = supervisor.run_now().result(TIMEOUT)

    status = supervisor.status()
    assert report.ok
    assert status.running is False
    assert status.next_run_at is None
    assert status.last_report == report
    assert status.cycles_completed == 1


def test_failed_cycle_is_recorded_and_supervisor_continues(make_supervisor, fake) -> None:
    supervisor = make_supervisor()
    fake.failures = 1

    failed = supervisor.run_now().result(TIMEOUT)
    recovered = supervisor.run_now().result(TIMEOUT)

    assert not failed.ok
    assert failed.error == "RuntimeError: database is locked"
    assert recovered.ok
    assert supervisor.status().cycles_completed == 2
    assert supervisor.reports() == (failed, recovered)


def test_listeners_receive_reports_even_if_one_fails(make_supervisor) -> None:
    supervisor = make_supervisor()
    received = []

    def broken(report):
        raise ValueError("listener bug")

    supervisor.add_listener(broken)
    supervisor.add_listener(received.append)

    report = supervisor.run_now().result(TIMEOUT)

    assert received == [report]


def test_report_history_is_bounded(make_supervisor) -> None:
    supervisor = make_supervisor(history_size=3)

    reports = [supervisor.run_now().result(TIMEOUT) for _ in range(5)]

    assert supervisor.reports() == tuple(reports[-3:])
    assert supervisor.status().cycles_completed == 5


def test_commands_after_shutdown_are_refused(make_supervisor) -> None:
    supervisor = make_supervisor()
    supervisor.start().result(TIMEOUT)

    supervisor.shutdown(timeout=TIMEOUT)
    supervisor.shutdown(timeout=TIMEOUT)

    with pytest.raises(RuntimeError):
        supervisor.run_now()


def test_shutdown_before_first_command(make_supervisor) -> None:
    supervisor = make_supervisor()
    supervisor.shutdown()

    with pytest.raises(RuntimeError):
        supervisor.start()
