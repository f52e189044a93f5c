import asyncio

import pytest

from conftest import (
    EXIT_FAIL,
    EXIT_OK,
    SLEEPER,
    FakeProbe,
    FakeRemuxer,
    missing_binary,
)
from twitch_monitor import Supervisor, TaskState


async def wait_for_exit(task, timeout=10):
    await asyncio.to_thread(task.proc.wait, timeout)


@pytest.fixture
def supervisors():
    created = []
    yield created
    for sup in created:
        sup.shutdown()


def make_supervisor(supervisors, tmp_path, channels, probe, **kwargs):
    kwargs.setdefault("command", SLEEPER)
    kwargs.setdefault("remuxer", FakeRemuxer())
    sup = Supervisor(channels, output_dir=tmp_path / "recordings", interval=3600, probe=probe, **kwargs)
    supervisors.append(sup)
    return sup


async def test_live_channel_is_registered_and_offline_is_not(tmp_path, supervisors):
    probe = FakeProbe({"alice": True, "bob": False})
    sup = make_supervisor(supervisors, tmp_path, ["alice", "bob"], probe)

    await sup.tick()

    assert list(sup.registry) == ["alice"]
    assert sup.registry["alice"].state is TaskState.RUNNING
    assert probe.calls == ["alice", "bob"]


async def test_recording_channel_is_not_probed_again(tmp_path, supervisors):
    probe = FakeProbe({"alice": True, "bob": False})
    sup = make_supervisor(supervisors, tmp_path, ["alice", "bob"], probe)

    await sup.tick()
    first = sup.registry["alice"]
    await sup.tick()
    await sup.tick()

    assert probe.calls.count("alice") == 1
    assert probe.calls.count("bob") == 3
    assert sup.registry["alice"] is first


async def test_duplicate_channels_get_a_single_task(tmp_path, supervisors):
    probe = FakeProbe({"alice": True})
    sup = make_supervisor(supervisors, tmp_path, ["alice", "alice"], probe)

    await sup.tick()

    assert sup.channels == ["alice"]
    assert len(sup.registry) == 1
    assert probe.calls == ["alice"]


async def test_completed_recording_is_remuxed_and_reaped_in_one_tick(tmp_path, supervisors):
    probe = FakeProbe({"alice": [True, False]})
    remuxer = FakeRemuxer()
    sup = make_supervisor(
        supervisors, tmp_path, ["alice"], probe,
        command=EXIT_OK, remux_enabled=True, remuxer=remuxer,
    )

    await sup.tick()
    task = sup.registry["alice"]
    await wait_for_exit(task)

    await sup.tick()

    assert "alice" not in sup.registry
    assert task.state is TaskState.COMPLETED
    assert remuxer.calls == [task.output_path]
    # reaped, then probed again within the same tick
    assert probe.calls == ["alice", "alice"]


async def test_reaped_channel_that_is_still_live_gets_a_new_task(tmp_path, supervisors):
    probe = FakeProbe({"alice": True})
    sup = make_supervisor(supervisors, tmp_path, ["alice"], probe, command=EXIT_OK)

    await sup.tick()
    first = sup.registry["alice"]
    await wait_for_exit(first)
    await sup.tick()

    assert sup.registry["alice"] is not first
    assert sup.registry["alice"].output_path != first.output_path


async def test_failed_capture_is_reaped_without_remux(tmp_path, supervisors):
    probe = FakeProbe({"alice": [True, False]})
    remuxer = FakeRemuxer()
    sup = make_supervisor(
        supervisors, tmp_path, ["alice"], probe,
        command=EXIT_FAIL, remux_enabled=True, remuxer=remuxer,
    )

    await sup.tick()
    task = sup.registry["alice"]
    await wait_for_exit(task)
    await sup.tick()

    assert sup.registry == {}
    assert task.state is TaskState.FAILED
    assert task.returncode == 3
    assert remuxer.calls == []


async def test_remux_failure_does_not_block_reaping(tmp_path, supervisors):
    probe = FakeProbe({"alice": [True, False]})
    sup = make_supervisor(
        supervisors, tmp_path, ["alice"], probe,
        command=EXIT_OK, remux_enabled=True, remuxer=FakeRemuxer(ok=False),
    )

    await sup.tick()
    task = sup.registry["alice"]
    await wait_for_exit(task)
    await sup.tick()

    assert sup.registry == {}
    assert task.state is TaskState.COMPLETED
    assert task.remux_result.ok is False


async def test_spawn_failure_leaves_no_entry_and_is_retried(tmp_path, supervisors):
    probe = FakeProbe({"bob": True})
    sup = make_supervisor(supervisors, tmp_path, ["bob"], probe, command=missing_binary)

    await sup.tick()
    assert sup.registry == {}

    await sup.tick()
    assert sup.registry == {}
    assert probe.calls == ["bob", "bob"]


async def test_probe_error_counts_as_offline(tmp_path, supervisors):
    probe = FakeProbe({"alice": RuntimeError("page changed"), "bob": True})
    sup = make_supervisor(supervisors, tmp_path, ["alice", "bob"], probe)

    await sup.tick()

    assert list(sup.registry) == ["bob"]


async def test_stop_request_ends_run_and_cancels_recordings(tmp_path, supervisors):
    probe = FakeProbe({"alice": True})
    sup = make_supervisor(supervisors, tmp_path, ["alice"], probe)

    runner = asyncio.create_task(sup.run())
    for _ in range(500):
        if "alice" in sup.registry:
            break
        await asyncio.sleep(0.01)
    task = sup.registry["alice"]

    sup.request_stop()
    await asyncio.wait_for(runner, timeout=5)
    assert sup.cancelled

    sup.shutdown()
    assert sup.registry == {}
    returncode = await asyncio.to_thread(task.proc.wait, 10)
    assert returncode != 0


async def test_stop_request_interrupts_a_hanging_tick(tmp_path, supervisors):
    started = asyncio.Event()

    async def hanging_probe(channel):
        started.set()
        await asyncio.sleep(3600)
        return True

    sup = make_supervisor(supervisors, tmp_path, ["alice"], hanging_probe)
    runner = asyncio.create_task(sup.run())
    await asyncio.wait_for(started.wait(), timeout=5)

    sup.request_stop()
    await asyncio.wait_for(runner, timeout=5)

    assert sup.registry == {}


async def test_run_sleeps_between_ticks(tmp_path, supervisors):
    probe = FakeProbe({})
    sup = make_supervisor(supervisors, tmp_path, ["alice"], probe)
    sup.interval = 0.05

    runner = asyncio.create_task(sup.run())
    await asyncio.sleep(0.3)
    sup.request_stop()
    await asyncio.wait_for(runner, timeout=5)

    assert 2 <= len(probe.calls) <= 10


async def test_notification_is_sent_when_recording_starts(tmp_path, supervisors):
    sent = []

    async def notify(channel, output_path):
        sent.append((channel, output_path))

    probe = FakeProbe({"alice": True})
    sup = make_supervisor(supervisors, tmp_path, ["alice"], probe, notify=notify)

    await sup.tick()
    await asyncio.sleep(0)

    assert sent == [("alice", str(sup.registry["alice"].output_path))]


def test_shutdown_without_recordings(tmp_path, supervisors):
    sup = make_supervisor(supervisors, tmp_path, ["alice"], FakeProbe({}))
    sup.shutdown()
    assert sup.cancelled
    assert sup.registry == {}


async def test_task_setup_error_is_contained_and_retried(tmp_path, supervisors, monkeypatch):
    import twitch_monitor

    real_capture_path = twitch_monitor.capture_path
    failures = ["alice"]

    def flaky_capture_path(output_dir, channel, *args, **kwargs):
        if channel in failures:
            failures.remove(channel)
            raise PermissionError("read-only filesystem")
        return real_capture_path(output_dir, channel, *args, **kwargs)

    monkeypatch.setattr(twitch_monitor, "capture_path", flaky_capture_path)
    probe = FakeProbe({"alice": True, "bob": True})
    sup = make_supervisor(supervisors, tmp_path, ["alice", "bob"], probe)

    await sup.tick()
    assert list(sup.registry) == ["bob"]

    await sup.tick()
    assert sorted(sup.registry) == ["alice", "bob"]
    assert probe.calls == ["alice", "bob", "alice"]


async def test_run_survives_task_setup_error(tmp_path, supervisors, monkeypatch):
    import twitch_monitor

    def broken_capture_path(*args, **kwargs):
        raise PermissionError("read-only filesystem")

    monkeypatch.setattr(twitch_monitor, "capture_path", broken_capture_path)
    probe = FakeProbe({"alice": True, "bob": False})
    sup = make_supervisor(supervisors, tmp_path, ["alice", "bob"], probe)
    sup.interval = 0.01

    runner = asyncio.create_task(sup.run())
    await asyncio.sleep(0.2)
    assert not runner.done()

    sup.request_stop()
    await asyncio.wait_for(runner, timeout=5)
    assert probe.calls.count("bob") >= 2
    assert sup.registry == {}


async def test_pending_notifications_are_cancelled(tmp_path, supervisors):
    cancelled = []

    async def slow_notify(channel, output_path):
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            cancelled.append(channel)
            raise

    probe = FakeProbe({"alice": True})
    sup = make_supervisor(supervisors, tmp_path, ["alice"], probe, notify=slow_notify)

    await sup.tick()
    await asyncio.sleep(0)
    assert len(sup._notify_tasks) == 1
    (pending,) = sup._notify_tasks

    sup.request_stop()
    sup.shutdown()
    await asyncio.wait_for(sup.cancel_notifications(), timeout=5)

    assert pending.done()
    assert cancelled == ["alice"]
    assert sup._notify_tasks == set()


async def test_finished_notifications_are_forgotten(tmp_path, supervisors, caplog):
    async def broken_notify(channel, output_path):
        raise RuntimeError("webhook down")

    probe = FakeProbe({"alice": True})
    sup = make_supervisor(supervisors, tmp_path, ["alice"], probe, notify=broken_notify)

    with caplog.at_level("ERROR", logger="twitch_monitor"):
        await sup.tick()
        for _ in range(5):
            await asyncio.sleep(0)

    assert sup._notify_tasks == set()
    assert "webhook down" in caplog.text
