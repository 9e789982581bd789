from datetime import timedelta

from sqlalchemy import func, select

from devicemfa.core.clock import utcnow
from devicemfa.models.challenge import Challenge
from devicemfa.models.one_time_code import OneTimeCode
from devicemfa.tasks.scheduler import BackgroundTaskScheduler, ScheduledTask


async def _noop():
    return None


def test_purge_task_disabled_by_zero_interval(session_factory):
    scheduler = BackgroundTaskScheduler(session_factory, purge_interval_seconds=0)

    assert scheduler.tasks == {}


def test_purge_task_registered_with_interval(session_factory):
    scheduler = BackgroundTaskScheduler(session_factory, purge_interval_seconds=60)

    status = scheduler.get_task_status()
    assert status["total_tasks"] == 1
    assert status["tasks"]["purge_expired_credentials"]["interval_seconds"] == 60
    assert status["scheduler_running"] is False


def test_task_becomes_due_after_interval():
    task = ScheduledTask(name="noop", func=_noop, interval_seconds=30)

    assert not task.should_run()
    assert task.should_run(utcnow() + timedelta(seconds=31))

    task.mark_started()
    assert not task.should_run(utcnow() + timedelta(seconds=31))


async def test_failing_task_is_rescheduled(session_factory):
    async def boom():
        raise RuntimeError("boom")

    scheduler = BackgroundTaskScheduler(session_factory, purge_interval_seconds=0)
    scheduler.add_task("boom", boom, interval_seconds=5)
    task = scheduler.tasks["boom"]

    await scheduler._execute_task(task)

    assert task.running is False
    assert task.last_run is not None


async def test_purge_removes_only_expired_rows(session_factory, db):
    now = utcnow()
    db.add_all([
        Challenge(username="alice", device_id="dev-1", nonce=b"a" * 32, expires_at=now - timedelta(seconds=1)),
        Challenge(username="alice", device_id="dev-1", nonce=b"b" * 32, expires_at=now + timedelta(minutes=5)),
        OneTimeCode(username="alice", address="+15551234567", code="123456", expires_at=now - timedelta(seconds=1)),
    ])
    await db.commit()

    scheduler = BackgroundTaskScheduler(session_factory, purge_interval_seconds=0)
    removed = await scheduler.purge_expired_credentials()

    assert removed == {"challenges": 1, "codes": 1}
    remaining = await db.scalar(select(func.count()).select_from(Challenge))
    assert remaining == 1
