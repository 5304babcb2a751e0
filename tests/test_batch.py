from __future__ import annotations

from datetime import datetime, timezone

import pytest

from apprun.core.batch import BatchDispatcher, ScheduledJob
from apprun.core.manifest import validate
from apprun.core.store import InMemoryRunStore, JsonlRunStore, has_terminal_run

from conftest import FakeClock, llm_manifest


def _at(year, month, day, hour, minute) -> FakeClock:
    return FakeClock(datetime(year, month, day, hour, minute, tzinfo=timezone.utc).timestamp())


def _todo_manifest():
    return validate(
        {
            "id": "daily-todo",
            "name": "Daily todo",
            "inputs": {
                "title": {"type": "string", "default": "Stretch"},
                "send_time": {"type": "string"},
                "cadence": {"type": "string", "enum": ["daily", "weekdays"], "default": "daily"},
            },
            "outputs": {"todo": "object"},
            "permissions": ["todo.write"],
            "runtime": {"steps": [{"tool": "todo.add", "args": {"title": "{{title}}"}, "output": "todo"}]},
        }
    )


def test_dispatch_runs_once_per_day(make_runtime):
    clock = _at(2026, 10, 19, 8, 0)
    runtime = make_runtime(clock=clock, store=InMemoryRunStore())
    dispatcher = BatchDispatcher(runtime)
    job = ScheduledJob(_todo_manifest(), "u1", {"send_time": "08:00"})

    (first,) = dispatcher.dispatch([job])
    assert first.status == "sent"
    assert first.run_status == "completed"
    record = runtime.store.find("daily-todo", "u1")[0]
    assert record["mode"] == "use"
    assert record["outputs"]["todo"]["title"] == "Stretch"

    (second,) = dispatcher.dispatch([job])
    assert second.status == "skip_already_ran"

    clock.advance(24 * 3600)
    (next_day,) = dispatcher.dispatch([job])
    assert next_day.status == "sent"


def test_dispatch_guards(make_runtime):
    saturday = _at(2026, 10, 24, 8, 0)
    runtime = make_runtime(clock=saturday, store=InMemoryRunStore())
    dispatcher = BatchDispatcher(runtime)
    manifest = _todo_manifest()
    results = dispatcher.dispatch(
        [
            ScheduledJob(manifest, "u1", {"send_time": "08:00", "cadence": "weekdays"}),
            ScheduledJob(manifest, "u2", {"send_time": "09:30"}),
            ScheduledJob(manifest, "u3", {"send_time": "08:00"}),
        ]
    )
    assert [r.status for r in results] == ["skip_cadence", "skip_time_mismatch", "sent"]


def test_dispatch_requires_email_when_declared(make_runtime):
    raw = llm_manifest()
    raw["inputs"]["email"] = {"type": "email"}
    runtime = make_runtime(clock=_at(2026, 10, 19, 8, 0), store=InMemoryRunStore())
    (result,) = BatchDispatcher(runtime).dispatch([ScheduledJob(validate(raw), "u1", {"topic": "tea"})])
    assert result.status == "skip_no_email"


def test_dispatch_never_uses_platform_fallback(make_runtime, provider):
    runtime = make_runtime(clock=_at(2026, 10, 19, 8, 0), store=InMemoryRunStore())
    job = ScheduledJob(validate(llm_manifest()), "u1", {"topic": "tea", "send_time": "08:00"})
    (result,) = BatchDispatcher(runtime).dispatch([job])
    assert result.status == "sent"
    assert result.run_status == "failed"
    assert provider.requests == []
    assert runtime.store.find("draft-and-polish", "u1")[0]["trace"][0]["error_kind"] == "CredentialMissingError"


def test_dispatch_reports_invalid_inputs(make_runtime):
    runtime = make_runtime(clock=_at(2026, 10, 19, 8, 0), store=InMemoryRunStore())
    job = ScheduledJob(validate(llm_manifest()), "u1", {"send_time": "08:00"})
    (result,) = BatchDispatcher(runtime).dispatch([job])
    assert result.status == "error"
    assert result.to_dict()["detail"]


def test_dispatcher_requires_store(make_runtime):
    with pytest.raises(ValueError):
        BatchDispatcher(make_runtime())


def test_jsonl_store_filters_by_app_user_and_day(tmp_path, make_runtime):
    clock = _at(2026, 10, 19, 8, 0)
    store = JsonlRunStore(tmp_path / "runs" / "runs.jsonl")
    runtime = make_runtime(clock=clock, store=store)
    BatchDispatcher(runtime).dispatch([ScheduledJob(_todo_manifest(), "u1", {"send_time": "08:00"})])

    assert len(store.find("daily-todo", "u1")) == 1
    assert store.find("daily-todo", "u2") == []
    assert has_terminal_run(store, "daily-todo", "u1", "2026-10-19T00:00:00+00:00")
    assert not has_terminal_run(store, "daily-todo", "u1", "2026-10-20T00:00:00+00:00")
