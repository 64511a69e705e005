"""Tests for the scheduler service and task lifecycle operations."""

import asyncio

import pytest

from autotask.scheduler.errors import (
    InvalidTransitionError,
    PlanValidationError,
    RegistrationError,
    TaskNotFoundError,
    TranslationError,
)
from autotask.scheduler.executor import TaskExecutor
from autotask.scheduler.models import TaskPatch
from autotask.scheduler.schedule import now_ms
from autotask.scheduler.service import ops, timer
from autotask.scheduler.service.events import EventTypes
from autotask.scheduler.service.service import TaskScheduler
from autotask.scheduler.service.store import TaskStore
from autotask.scheduler.translator import PlanTranslator
from autotask.scheduler.types import RunStatus, TaskStatus
from autotask.services.llm import LLMError

HOUR_MS = 60 * 60 * 1000

PLAN = {
    "name": "Daily agenda",
    "schedule": {"cron": "0 8 * * 1-5", "timezone": "America/Los_Angeles"},
    "steps": [
        {
            "type": "data_collection",
            "service": "calendar",
            "operation": "list_events",
            "parameters": {},
            "output_binding": "calendar_events",
        },
        {
            "type": "delivery",
            "service": "gmail",
            "operation": "send",
            "parameters": {"subject": "Agenda", "body": "{{calendar_events}}"},
        },
    ],
}


@pytest.fixture
def events(scheduler):
    received = []
    scheduler.events.add_handler(lambda event: received.append(event.type))
    return received


async def saved(scheduler, task):
    await scheduler.store.save(task)
    return task


class TestRegistration:
    """Tests for timer registration."""

    async def test_register_arms_one_timer(self, scheduler, make_task):
        task = await saved(scheduler, make_task(status=TaskStatus.APPROVED, enabled=True))

        registered = await scheduler.register_task(task.id)

        assert scheduler.has_timer(task.id)
        assert registered.next_run_at_ms is not None
        assert (await scheduler.store.get(task.id)).next_run_at_ms == registered.next_run_at_ms

    async def test_double_registration_keeps_one_timer(self, scheduler, make_task):
        task = await saved(scheduler, make_task(status=TaskStatus.APPROVED, enabled=True))

        await scheduler.register_task(task.id)
        first = scheduler.state.timers[task.id]
        await scheduler.register_task(task.id)
        await asyncio.gather(first, return_exceptions=True)

        assert scheduler.status().active_timers == 1
        assert scheduler.state.timers[task.id] is not first
        assert first.cancelled()

    async def test_register_missing_task(self, scheduler):
        with pytest.raises(TaskNotFoundError):
            await scheduler.register_task("missing")

    async def test_register_invalid_cron(self, scheduler, make_task):
        task = await saved(scheduler, make_task(cron="0 8 * *"))

        with pytest.raises(RegistrationError):
            await scheduler.register_task(task.id)

        assert not scheduler.has_timer(task.id)

    async def test_register_invalid_timezone(self, scheduler, make_task):
        task = await saved(scheduler, make_task(timezone="Pacific Time"))

        with pytest.raises(RegistrationError):
            await scheduler.register_task(task.id)

    async def test_unregister(self, scheduler, make_task, events):
        task = await saved(scheduler, make_task())
        await scheduler.register_task(task.id)

        assert scheduler.unregister_task(task.id) is True
        assert scheduler.unregister_task(task.id) is False
        assert not scheduler.has_timer(task.id)
        assert events.count(EventTypes.TASK_UNREGISTERED) == 1


class TestStartStop:
    """Tests for scheduler startup and shutdown."""

    async def test_start_registers_approved_enabled_tasks(self, executor_handlers, make_task):
        store = TaskStore(":memory:")
        await store.initialize()
        ready = make_task(status=TaskStatus.APPROVED, enabled=True)
        broken = make_task(status=TaskStatus.APPROVED, enabled=True, cron="bad")
        pending = make_task()
        for task in (ready, broken, pending):
            await store.save(task)

        svc = TaskScheduler(store, TaskExecutor(executor_handlers))
        await svc.start()
        try:
            assert svc.status().task_ids == [ready.id]
            assert svc.status().running is True
        finally:
            await svc.stop()

    async def test_stop_cancels_timers(self, executor_handlers, make_task):
        svc = TaskScheduler(TaskStore(":memory:"), TaskExecutor(executor_handlers))
        await svc.start()
        task = make_task(status=TaskStatus.APPROVED, enabled=True)
        await svc.store.save(task)
        await svc.register_task(task.id)
        armed = svc.state.timers[task.id]

        await svc.stop()

        assert armed.cancelled()
        assert svc.status().running is False
        assert svc.status().active_timers == 0

    async def test_stop_waits_for_run_in_flight(self, tmp_path, make_handler, make_task, monkeypatch):
        entered = asyncio.Event()

        async def list_events(params, scope):
            entered.set()
            await asyncio.sleep(0.2)
            return {"events": []}

        async def send(params, scope):
            return {"sent": True}

        fires = iter([now_ms()])
        monkeypatch.setattr(timer, "compute_next_run_at_ms", lambda *args, **kwargs: next(fires, now_ms() + HOUR_MS))

        db_path = tmp_path / "tasks.db"
        svc = TaskScheduler(
            TaskStore(db_path),
            TaskExecutor([
                make_handler("calendar", {"list_events": list_events}),
                make_handler("gmail", {"send": send}),
            ]),
        )
        await svc.start()
        task = make_task(status=TaskStatus.APPROVED, enabled=True)
        await svc.store.save(task)
        await svc.register_task(task.id)
        await asyncio.wait_for(entered.wait(), timeout=2)

        await svc.stop()

        reopened = TaskStore(db_path)
        await reopened.initialize()
        try:
            (run,) = await reopened.get_executions(task.id)
            loaded = await reopened.get(task.id)
        finally:
            await reopened.close()
        assert run.status == RunStatus.COMPLETED
        assert run.completed_at_ms is not None
        assert loaded.last_run_at_ms is not None
        assert loaded.next_run_at_ms > loaded.last_run_at_ms


class TestTimer:
    """Tests for timer-driven runs."""

    async def test_fire_runs_task_once_then_reschedules(self, scheduler, make_task, executor_handlers, monkeypatch):
        order = []
        later = now_ms() + HOUR_MS
        fires = iter([now_ms()])

        def next_fire(*args, **kwargs):
            order.append("compute")
            return next(fires, later)

        list_events = executor_handlers[0].operations["list_events"]

        async def recorded_list_events(params, scope):
            order.append("run")
            return await list_events(params, scope)

        executor_handlers[0].operations["list_events"] = recorded_list_events
        monkeypatch.setattr(timer, "compute_next_run_at_ms", next_fire)
        task = await saved(scheduler, make_task(status=TaskStatus.APPROVED, enabled=True))

        await scheduler.register_task(task.id)
        for _ in range(200):
            if len(order) >= 4:
                break
            await asyncio.sleep(0.01)

        # timer fire, the run, next_run after the run, then the timer's next fire
        assert order == ["compute", "run", "compute", "compute"]
        assert len(await scheduler.store.get_executions(task.id)) == 1
        assert len(executor_handlers[1].calls) == 1
        assert (await scheduler.store.get(task.id)).next_run_at_ms == later
        assert scheduler.has_timer(task.id)


class TestExecuteTask:
    """Tests for running tasks."""

    async def test_run_records_history(self, scheduler, make_task, events):
        task = await saved(scheduler, make_task(status=TaskStatus.APPROVED, enabled=True))

        record = await scheduler.execute_task(task.id)

        assert record.status == RunStatus.COMPLETED
        assert record.id.startswith("run_")
        (stored,) = await scheduler.store.get_executions(task.id)
        assert stored.id == record.id
        assert stored.status == RunStatus.COMPLETED

        loaded = await scheduler.store.get(task.id)
        assert loaded.last_run_at_ms is not None
        assert loaded.next_run_at_ms > loaded.last_run_at_ms
        assert events == [EventTypes.TASK_STARTED, EventTypes.TASK_COMPLETED]

    async def test_disabled_task_is_skipped(self, scheduler, make_task, events):
        task = await saved(scheduler, make_task(enabled=False))

        assert await scheduler.execute_task(task.id) is None
        assert await scheduler.store.get_executions(task.id) == []
        assert events == [EventTypes.TASK_SKIPPED]

    async def test_force_runs_disabled_task(self, scheduler, make_task):
        task = await saved(scheduler, make_task(enabled=False))

        record = await scheduler.execute_task(task.id, force=True)

        assert record.status == RunStatus.COMPLETED

    async def test_missing_task(self, scheduler):
        with pytest.raises(TaskNotFoundError):
            await scheduler.execute_task("missing")

    async def test_failed_delivery_is_recorded(self, scheduler, make_task, executor_handlers, events):
        async def bounce(params, scope):
            raise RuntimeError("mailbox full")

        executor_handlers[1].operations["send"] = bounce
        task = await saved(scheduler, make_task(enabled=True))

        record = await scheduler.execute_task(task.id)

        assert record.status == RunStatus.FAILED
        (stored,) = await scheduler.store.get_executions(task.id)
        assert "mailbox full" in stored.error
        assert events[-1] == EventTypes.TASK_FAILED

    async def test_overlapping_trigger_is_skipped(self, make_handler, make_task):
        release = asyncio.Event()
        entered = asyncio.Event()

        async def list_events(params, scope):
            entered.set()
            await release.wait()
            return {"events": []}

        async def send(params, scope):
            return {"sent": True}

        svc = TaskScheduler(
            TaskStore(":memory:"),
            TaskExecutor([
                make_handler("calendar", {"list_events": list_events}),
                make_handler("gmail", {"send": send}),
            ]),
        )
        await svc.start()
        try:
            task = make_task(enabled=True)
            await svc.store.save(task)

            first = asyncio.create_task(svc.execute_task(task.id))
            await entered.wait()

            assert svc.is_running(task.id)
            assert await svc.execute_task(task.id, force=True) is None

            release.set()
            record = await first
            assert record.status == RunStatus.COMPLETED
            assert not svc.is_running(task.id)
            assert len(await svc.store.get_executions(task.id)) == 1
        finally:
            await svc.stop()


class TestLifecycleOps:
    """Tests for create/approve/update/delete operations."""

    async def test_create_from_prompt_persists_pending_task(self, scheduler, make_llm, events):
        translator = PlanTranslator(make_llm(json_answer=PLAN))

        task = await ops.create_task_from_prompt(
            scheduler, translator, "Weekday agenda at 8am Pacific", "alice@example.com"
        )

        stored = await ops.get_task(scheduler, task.id)
        assert stored.status == TaskStatus.PENDING_APPROVAL
        assert stored.enabled is False
        assert not scheduler.has_timer(task.id)
        assert events == [EventTypes.TASK_CREATED]

    async def test_failed_translation_persists_nothing(self, scheduler, make_llm):
        translator = PlanTranslator(make_llm(json_answer=LLMError("down")))

        with pytest.raises(TranslationError):
            await ops.create_task_from_prompt(scheduler, translator, "anything", "alice@example.com")

        assert await ops.list_tasks(scheduler) == []

    async def test_unknown_operation_persists_nothing(self, scheduler, make_llm):
        plan = {**PLAN, "steps": [dict(PLAN["steps"][1], operation="send_email")]}
        translator = PlanTranslator(make_llm(json_answer=plan))

        with pytest.raises(PlanValidationError):
            await ops.create_task_from_prompt(scheduler, translator, "anything", "alice@example.com")

        assert await ops.list_tasks(scheduler) == []

    async def test_approve(self, scheduler, make_task, events):
        task = await saved(scheduler, make_task())

        approved = await ops.approve_task(scheduler, task.id)

        assert approved.status == TaskStatus.APPROVED
        assert approved.enabled is True
        assert approved.next_run_at_ms is not None
        assert scheduler.has_timer(task.id)
        assert EventTypes.TASK_APPROVED in events

    async def test_approve_twice_is_rejected(self, scheduler, make_task):
        task = await saved(scheduler, make_task())
        await ops.approve_task(scheduler, task.id)

        with pytest.raises(InvalidTransitionError):
            await ops.approve_task(scheduler, task.id)

    async def test_approve_missing(self, scheduler):
        with pytest.raises(TaskNotFoundError):
            await ops.approve_task(scheduler, "missing")

    async def test_disable_removes_timer(self, scheduler, make_task):
        task = await saved(scheduler, make_task())
        await ops.approve_task(scheduler, task.id)

        updated = await ops.update_task(scheduler, task.id, TaskPatch(enabled=False))

        assert updated.enabled is False
        assert not scheduler.has_timer(task.id)

    async def test_reenable_rearms_timer(self, scheduler, make_task):
        task = await saved(scheduler, make_task())
        await ops.approve_task(scheduler, task.id)
        await ops.update_task(scheduler, task.id, TaskPatch(enabled=False))

        await ops.update_task(scheduler, task.id, TaskPatch(enabled=True))

        assert scheduler.has_timer(task.id)

    async def test_schedule_change_recomputes_next_run(self, scheduler, make_task):
        task = await saved(scheduler, make_task())
        approved = await ops.approve_task(scheduler, task.id)

        updated = await ops.update_task(scheduler, task.id, TaskPatch(cron="0 8 * * *", timezone="UTC"))

        assert (updated.cron, updated.timezone) == ("0 8 * * *", "UTC")
        assert updated.next_run_at_ms != approved.next_run_at_ms
        assert scheduler.has_timer(task.id)

    async def test_invalid_cron_update_is_rejected(self, scheduler, make_task):
        task = await saved(scheduler, make_task())

        with pytest.raises(PlanValidationError):
            await ops.update_task(scheduler, task.id, TaskPatch(cron="every day"))

        assert (await ops.get_task(scheduler, task.id)).cron == task.cron

    async def test_pending_task_is_not_scheduled_by_enabling(self, scheduler, make_task):
        task = await saved(scheduler, make_task())

        await ops.update_task(scheduler, task.id, TaskPatch(enabled=True))

        assert not scheduler.has_timer(task.id)

    async def test_approve_via_update_requires_pending(self, scheduler, make_task):
        task = await saved(scheduler, make_task(status=TaskStatus.DISABLED))

        with pytest.raises(InvalidTransitionError):
            await ops.update_task(scheduler, task.id, TaskPatch(status=TaskStatus.APPROVED))

    async def test_delete_removes_timer_and_history(self, scheduler, make_task, events):
        task = await saved(scheduler, make_task())
        await ops.approve_task(scheduler, task.id)
        await scheduler.execute_task(task.id)

        assert await ops.delete_task(scheduler, task.id) is True

        assert not scheduler.has_timer(task.id)
        assert await scheduler.store.get_executions(task.id) == []
        assert task.id not in scheduler.state.run_locks
        with pytest.raises(TaskNotFoundError):
            await ops.get_task(scheduler, task.id)
        assert events[-1] == EventTypes.TASK_DELETED

    async def test_delete_missing(self, scheduler):
        assert await ops.delete_task(scheduler, "missing") is False

    async def test_history(self, scheduler, make_task):
        task = await saved(scheduler, make_task(enabled=True))
        await scheduler.execute_task(task.id)
        await scheduler.execute_task(task.id)

        history = await ops.get_history(scheduler, task.id)

        assert len(history["executions"]) == 2
        assert history["stats"]["completed"] == 2
        assert history["stats"]["success_rate"] == 1.0
