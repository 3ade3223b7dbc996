import asyncio
import logging
import threading

import pytest

import focus_session as fs


class FakeStore:
    """In-memory stand-in for TaskStore recording every call."""

    def __init__(self):
        self.created = []
        self.sessions = []
        self.deleted = []
        self.titles = []
        self.fail_create = None
        self.fail_record = None
        self.create_gate = None
        self._n = 0

    def create_tasks(self, project_id, tasks):
        if self.create_gate is not None:
            self.create_gate.wait(timeout=5)
        if self.fail_create is not None:
            raise self.fail_create
        id_map = {}
        for t in tasks:
            self._n += 1
            id_map[t.id] = f"row-{self._n}"
        self.created.append([t.id for t in tasks])
        return [], id_map

    def delete_task(self, task_id):
        self.deleted.append(task_id)

    def update_project(self, project_id, *, title=fs._UNSET, status=fs._UNSET):
        self.titles.append(title)

    def record_session(self, project_id, tasks, metrics, notes=None):
        if self.fail_record is not None:
            raise self.fail_record
        self.sessions.append(([t.id for t in tasks], metrics.cycles_completed, metrics.focused_minutes))


def _recorder(store=None, tasks=None, **kw):
    tasks = tasks if tasks is not None else [
        fs.Task(id="row-a", title="A"),
        fs.Task(id="task-1", title="B"),
    ]
    return fs.SessionRecorder("proj-1", tasks, store or FakeStore(), title="Plan", **kw)


def test_apply_edit_marks_dirty_and_journals():
    rec = _recorder(tasks=[fs.Task(id="row-a", title="A")])
    assert not rec.dirty
    rec.apply_edit([fs.Update("row-a", {"title": "A2"})])
    assert rec.dirty
    assert rec.tasks[0].title == "A2"
    assert len(rec.pending_edits) == 1


def test_duplicate_add_leaves_state_unchanged():
    rec = _recorder()
    before = rec.tasks
    with pytest.raises(fs.DuplicateIdError):
        rec.apply_edit([fs.Delete("row-a"), fs.Add(fs.Task(id="task-1", title="dup"))])
    assert rec.tasks == before
    assert rec.pending_edits == []


def test_duplicate_ids_rejected_on_construction():
    with pytest.raises(fs.DuplicateIdError):
        _recorder(tasks=[fs.Task(id="x"), fs.Task(id="x")])


def test_timer_work_completion_records_pomodoro(make_timer, vclock):
    timer = make_timer(work_minutes=2)
    rec = _recorder(timer=timer)
    timer.start()
    vclock.advance(120)
    assert rec.metrics.cycles_completed == 1
    assert rec.metrics.focused_minutes == 2
    timer.skip()  # break ends, no pomodoro
    assert rec.metrics.cycles_completed == 1


def test_manual_save_reconciles_then_records_session():
    store = FakeStore()
    rec = _recorder(store)
    rec.record_pomodoro(25)
    rec.apply_edit([fs.Update("task-1", {"completed": True})])
    result = asyncio.run(rec.save(fs.SaveTrigger.MANUAL))
    assert result.success
    assert result.reconciled == {"task-1": "row-1"}
    assert store.created == [["task-1"]]
    assert store.sessions == [(["row-a", "row-1"], 1, 25)]
    assert [t.id for t in rec.tasks] == ["row-a", "row-1"]
    assert rec.tasks[1].completed is True
    assert not rec.dirty
    assert rec.pending_edits == []


def test_manual_save_failure_raises_and_keeps_state():
    store = FakeStore()
    store.fail_create = RuntimeError("offline")
    rec = _recorder(store)
    with pytest.raises(fs.PersistenceError):
        asyncio.run(rec.save(fs.SaveTrigger.MANUAL))
    assert [t.id for t in rec.tasks] == ["row-a", "task-1"]
    assert rec.dirty
    assert store.sessions == []


def test_auto_save_failure_in_record_session_raises():
    store = FakeStore()
    store.fail_record = RuntimeError("disk full")
    rec = _recorder(store, tasks=[fs.Task(id="row-a")])
    rec.record_pomodoro(10)
    with pytest.raises(fs.PersistenceError, match="disk full"):
        asyncio.run(rec.save(fs.SaveTrigger.AUTO_ON_COMPLETE))
    assert rec.dirty


def test_interrupt_save_swallows_failure():
    store = FakeStore()
    store.fail_create = RuntimeError("offline")
    rec = _recorder(store)
    result = asyncio.run(rec.save(fs.SaveTrigger.INTERRUPT))
    assert result.success is False
    assert "offline" in result.error


def test_on_interrupt_noop_when_clean_and_saves_when_dirty():
    store = FakeStore()
    rec = _recorder(store, tasks=[fs.Task(id="row-a")])
    assert rec.on_interrupt() is None
    assert store.sessions == []
    rec.record_pomodoro(5)
    result = rec.on_interrupt()
    assert result.trigger is fs.SaveTrigger.INTERRUPT
    assert result.success
    assert store.sessions == [(["row-a"], 1, 5)]


def test_deleted_durable_tasks_are_removed_on_save():
    store = FakeStore()
    rec = _recorder(store, tasks=[fs.Task(id="row-a"), fs.Task(id="row-b"), fs.Task(id="row-c")])
    rec.apply_edit([fs.Delete("row-b"), fs.Reorder(["row-c"])])
    result = asyncio.run(rec.save())
    assert sorted(result.deleted) == ["row-a", "row-b"]
    assert sorted(store.deleted) == ["row-a", "row-b"]


def test_refinement_title_is_saved():
    store = FakeStore()
    rec = _recorder(store, tasks=[fs.Task(id="row-a")])
    rec.apply_refinement(fs.RefinementResult([fs.Update("row-a", {"title": "x"})], new_title="Better plan"))
    assert rec.title == "Better plan"
    asyncio.run(rec.save())
    assert store.titles == ["Better plan"]
    assert not rec.dirty


def test_save_waits_for_in_flight_reconcile():
    store = FakeStore()
    gate = threading.Event()
    store.create_gate = gate
    rec = _recorder(store)

    async def scenario():
        reconcile = asyncio.ensure_future(rec.reconcile())
        await asyncio.sleep(0.05)
        save = asyncio.ensure_future(rec.save())
        await asyncio.sleep(0.05)
        # save is queued behind the reconcile holding the lock
        assert not save.done()
        assert store.sessions == []
        gate.set()
        return await reconcile, await save

    id_map, result = asyncio.run(scenario())
    assert id_map == {"task-1": "row-1"}
    # the save saw the durable ids and did not create anything again
    assert result.reconciled == {}
    assert store.created == [["task-1"]]
    assert store.sessions[0][0] == ["row-a", "row-1"]


def test_edits_during_reconcile_are_remapped():
    store = FakeStore()
    gate = threading.Event()
    store.create_gate = gate
    rec = _recorder(store)

    async def scenario():
        pending = asyncio.ensure_future(rec.reconcile())
        await asyncio.sleep(0.05)
        rec.apply_edit([fs.Update("task-1", {"title": "edited mid-flight"})])
        gate.set()
        await pending

    asyncio.run(scenario())
    assert rec.tasks[1].id == "row-1"
    assert rec.tasks[1].title == "edited mid-flight"
    assert rec.pending_edits[0].task_id == "row-1"


def test_timer_ticks_are_held_during_save(make_timer, vclock):
    timer = make_timer()
    seen = []

    class ObservingStore(FakeStore):
        def record_session(self, project_id, tasks, metrics, notes=None):
            seen.append(vclock.active_ticks)
            super().record_session(project_id, tasks, metrics, notes)

    rec = _recorder(ObservingStore(), timer=timer)
    timer.start()
    asyncio.run(rec.save())
    assert seen == [0]
    assert vclock.active_ticks == 1


def test_repeated_saves_upsert_one_session_row():
    store = fs.TaskStore(':memory:')
    try:
        project_id = store.create_project("Plan")
        tasks = fs.tasks_from_plan([{"title": "One", "estimated_minutes_per_sub_task": 10}])
        rec = fs.SessionRecorder(project_id, tasks, store, title="Plan")
        rec.record_pomodoro(25)
        asyncio.run(rec.save())
        rec.record_pomodoro(20)
        asyncio.run(rec.save())
        sessions = store.get_project_sessions(project_id)
        assert len(sessions) == 1
        assert sessions[0]["pomodoros_completed"] == 2
        assert sessions[0]["total_focused_minutes"] == 45
        assert [t.title for t in store.load_tasks(project_id)] == ["One"]
    finally:
        store.close()


def test_oversized_estimate_never_blocks_saves():
    store = fs.TaskStore(':memory:')
    try:
        project_id = store.create_project("Plan")
        created, _ = store.create_tasks(project_id, [fs.Task(id="task-1", title="One", estimated_minutes=30)])
        rec = fs.SessionRecorder(project_id, created, store, title="Plan")
        with pytest.raises(fs.ModificationError):
            rec.apply_edit([fs.Update(created[0].id, {"estimated_minutes_per_sub_task": 10 ** 20})])
        # a task that already carries an out-of-range estimate is stored without one
        rec._tasks = [fs.Task(id=created[0].id, title="One", estimated_minutes=10 ** 20)]
        rec.record_pomodoro(25)
        result = asyncio.run(rec.save(fs.SaveTrigger.MANUAL))
        assert result.success
        assert store.load_tasks(project_id)[0].estimated_minutes is None
    finally:
        store.close()


def test_reconcile_holds_timer_ticks(make_timer, vclock):
    timer = make_timer()
    seen = []

    class ObservingStore(FakeStore):
        def create_tasks(self, project_id, tasks):
            seen.append(vclock.active_ticks)
            return super().create_tasks(project_id, tasks)

    rec = _recorder(ObservingStore(), timer=timer)
    timer.start()
    asyncio.run(rec.reconcile())
    assert seen == [0]
    assert vclock.active_ticks == 1


def test_on_interrupt_inside_loop_keeps_task_until_done():
    store = FakeStore()
    rec = _recorder(store, tasks=[fs.Task(id="row-a")])
    rec.record_pomodoro(5)

    async def scenario():
        task = rec.on_interrupt()
        assert task in rec._pending
        result = await task
        await asyncio.sleep(0)
        return result

    result = asyncio.run(scenario())
    assert result.success
    assert rec._pending == set()
    assert store.sessions == [(["row-a"], 1, 5)]


def test_background_task_failure_is_logged(caplog):
    caplog.set_level(logging.ERROR, logger="focus_session")
    pending = set()

    async def broken():
        raise RuntimeError("renderer exploded")

    async def scenario():
        task = fs._spawn(pending, broken())
        assert task in pending
        await asyncio.wait([task])
        await asyncio.sleep(0)

    asyncio.run(scenario())
    assert pending == set()
    assert "renderer exploded" in caplog.text
