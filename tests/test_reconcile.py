import pytest

import focus_session as fs


class RecordingPersist:
    def __init__(self, fail=None):
        self.calls = []
        self.fail = fail
        self._next = 0

    def __call__(self, tasks):
        self.calls.append([t.id for t in tasks])
        if self.fail is not None:
            raise self.fail
        created, id_map = [], {}
        for t in tasks:
            self._next += 1
            durable = f"db-{self._next}"
            created.append(fs.Task(id=durable, title=t.title))
            id_map[t.id] = durable
        return created, id_map


def _mixed():
    return [
        fs.Task(id="db-a", title="Kept"),
        fs.Task(id="task-1", title="First"),
        fs.Task(id="temp-9f", title="Second"),
    ]


def test_is_ephemeral_id():
    assert fs.is_ephemeral_id("task-3")
    assert fs.is_ephemeral_id("temp-abc")
    assert not fs.is_ephemeral_id("0b5b7c1e-uuid")
    assert not fs.is_ephemeral_id("")
    assert not fs.is_ephemeral_id(None)
    assert fs.is_ephemeral_id("tmp_1", prefixes=("tmp_",))


def test_reconcile_replaces_every_ephemeral_id_once():
    persist = RecordingPersist()
    tasks = _mixed()
    out, id_map = fs.reconcile_ids(tasks, persist)
    assert persist.calls == [["task-1", "temp-9f"]]
    assert [t.id for t in out] == ["db-a", "db-1", "db-2"]
    assert id_map == {"task-1": "db-1", "temp-9f": "db-2"}
    assert [t.title for t in out] == ["Kept", "First", "Second"]
    assert not any(fs.is_ephemeral_id(t.id) for t in out)


def test_reconcile_is_idempotent_and_skips_persist_when_durable():
    persist = RecordingPersist()
    once, _ = fs.reconcile_ids(_mixed(), persist)
    twice, id_map = fs.reconcile_ids(once, persist)
    assert twice == once
    assert id_map == {}
    assert len(persist.calls) == 1


def test_reconcile_failure_rewrites_nothing():
    tasks = _mixed()
    persist = RecordingPersist(fail=RuntimeError("network down"))
    with pytest.raises(fs.PersistenceError) as excinfo:
        fs.reconcile_ids(tasks, persist)
    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert [t.id for t in tasks] == ["db-a", "task-1", "temp-9f"]


def test_reconcile_rejects_incomplete_map():
    def persist(tasks):
        return [], {tasks[0].id: "db-1"}

    with pytest.raises(fs.PersistenceError, match="temp-9f"):
        fs.reconcile_ids(_mixed(), persist)


def test_reconcile_rejects_colliding_or_ephemeral_durable_ids():
    with pytest.raises(fs.PersistenceError):
        fs.reconcile_ids(_mixed(), lambda ts: ([], {"task-1": "db-a", "temp-9f": "db-2"}))
    with pytest.raises(fs.PersistenceError):
        fs.reconcile_ids(_mixed(), lambda ts: ([], {"task-1": "db-1", "temp-9f": "db-1"}))
    with pytest.raises(fs.PersistenceError):
        fs.reconcile_ids(_mixed(), lambda ts: ([], {"task-1": "db-1", "temp-9f": "temp-2"}))


def test_remap_modifications_rewrites_pending_references():
    id_map = {"task-1": "db-1", "temp-x": "db-2"}
    ops = [
        fs.Update("task-1", {"title": "T"}),
        fs.Add(fs.Task(id="temp-x", title="N"), after_task_id="task-1"),
        fs.Delete("db-a"),
        fs.Reorder(["temp-x", "db-a", "task-1"]),
    ]
    out = fs.remap_modifications(ops, id_map)
    assert out[0].task_id == "db-1"
    assert out[1].new_task.id == "db-2" and out[1].after_task_id == "db-1"
    assert out[2].task_id == "db-a"
    assert out[3].new_order == ["db-2", "db-a", "db-1"]
    # originals untouched
    assert ops[0].task_id == "task-1"
