"""Tests for vtm.ingest."""

import json
from datetime import datetime, timezone

import pytest

from vtm.errors import CycleDetected, DanglingDependency, UsageError
from vtm.history import TransactionLedger
from vtm.ingest import build_tasks, highest_task_number, ingest_tasks, load_drafts, preview_ingest
from vtm.schema import Manifest, ProjectInfo, TaskStatus
from vtm.store import FileManifestStore


@pytest.fixture
def store(tmp_path):
    store = FileManifestStore(tmp_path / "vtm.json")
    store.save(Manifest(project=ProjectInfo(name="demo")))
    return store


@pytest.fixture
def ledger(tmp_path, store):
    now = datetime(2026, 1, 28, 9, 30, tzinfo=timezone.utc)
    return TransactionLedger(tmp_path / "history", store, clock=lambda: now)


class TestBuildTasks:
    """Test draft -> Task conversion."""

    def test_assigns_sequential_ids(self):
        tasks = build_tasks([{"title": "one"}, {"title": "two"}], ["TASK-004", "misc"])
        assert [t.id for t in tasks] == ["TASK-005", "TASK-006"]

    def test_index_dependencies(self):
        tasks = build_tasks(
            [{"title": "auth"}, {"title": "profiles", "dependencies": [0, "TASK-001"]}],
            ["TASK-001"],
        )
        assert tasks[1].dependencies == ["TASK-002", "TASK-001"]

    def test_index_out_of_bounds(self):
        with pytest.raises(UsageError, match="out of bounds"):
            build_tasks([{"title": "first", "dependencies": [0]}], [])

    def test_explicit_id_collision(self):
        with pytest.raises(UsageError, match="already exists"):
            build_tasks([{"id": "TASK-001", "title": "dup"}], ["TASK-001"])

    def test_status_defaults_to_pending_and_blocks_dropped(self):
        tasks = build_tasks([{"title": "x", "blocks": ["TASK-999"]}], [])
        assert tasks[0].status == TaskStatus.PENDING
        assert tasks[0].blocks == []

    def test_invalid_draft(self):
        with pytest.raises(UsageError, match="is invalid"):
            build_tasks([{"title": "x", "risk": "extreme"}], [])

    def test_highest_task_number(self):
        assert highest_task_number(["TASK-002", "TASK-010", "OTHER-99"]) == 10
        assert highest_task_number([]) == 0

    def test_reports_every_problem_at_once(self):
        drafts = [
            {"title": "ok"},
            {"title": "bad deps", "dependencies": [5]},
            "not a draft",
            {"id": "TASK-001", "title": "dup"},
        ]
        with pytest.raises(UsageError) as exc:
            build_tasks(drafts, [])
        message = str(exc.value)
        assert message.startswith("3 problem(s) in batch")
        assert "Draft #1 (TASK-002): dependency index 5 is out of bounds" in message
        assert "Draft #2 is not an object" in message
        assert "Draft #3: task id TASK-001 already exists" in message

    def test_dependencies_must_be_a_list(self):
        with pytest.raises(UsageError, match="dependencies must be a list"):
            build_tasks([{"title": "x", "dependencies": "TASK-001"}], ["TASK-001"])


class TestLoadDrafts:
    """Test batch file parsing."""

    def test_plain_list(self, tmp_path):
        path = tmp_path / "batch.json"
        path.write_text(json.dumps([{"title": "a"}]))
        assert load_drafts(path) == ([{"title": "a"}], [])

    def test_object_with_sources(self, tmp_path):
        path = tmp_path / "batch.json"
        path.write_text(json.dumps({"source": "adr/ADR-001.md", "tasks": [{"title": "a"}]}))
        drafts, sources = load_drafts(path)
        assert sources == ["adr/ADR-001.md"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(UsageError, match="not found"):
            load_drafts(tmp_path / "nope.json")

    def test_wrong_shape(self, tmp_path):
        path = tmp_path / "batch.json"
        path.write_text(json.dumps({"items": []}))
        with pytest.raises(UsageError):
            load_drafts(path)

    def test_not_utf8(self, tmp_path):
        path = tmp_path / "batch.json"
        path.write_bytes(b"\xff\xfe[]")
        with pytest.raises(UsageError, match="not valid UTF-8"):
            load_drafts(path)


class TestIngestTasks:
    """Test ingestion end to end."""

    def test_ingest_records_transaction(self, store, ledger):
        tasks, tx = ingest_tasks(
            store, ledger,
            [{"title": "auth", "adr_source": "adr/ADR-001.md"}, {"title": "ui", "dependencies": [0]}],
        )
        assert [t.id for t in tasks] == ["TASK-001", "TASK-002"]
        assert tx.id == "2026-01-28-001"
        assert tx.tasks_added == ["TASK-001", "TASK-002"]
        assert tx.sources == ["adr/ADR-001.md"]

        manifest = store.load()
        assert manifest.stats.total_tasks == 2
        assert manifest.get_task("TASK-001").blocks == ["TASK-002"]

    def test_ingest_then_rollback_restores_manifest(self, store, ledger):
        before = store.path.read_bytes()
        _, tx = ingest_tasks(store, ledger, [{"title": "a"}], ["specs/SPEC-001.md"])
        ledger.rollback(tx.id)
        assert store.path.read_bytes() == before

    def test_dangling_reference_rejected(self, store, ledger):
        with pytest.raises(DanglingDependency):
            ingest_tasks(store, ledger, [{"title": "a", "dependencies": ["TASK-404"]}])
        assert ledger.load() == []
        assert store.load().tasks == []

    def test_cycle_rejected(self, store, ledger):
        drafts = [
            {"id": "X", "dependencies": ["Y"]},
            {"id": "Y", "dependencies": ["X"]},
        ]
        with pytest.raises(CycleDetected):
            ingest_tasks(store, ledger, drafts)
        assert store.load().tasks == []

    def test_empty_batch(self, store, ledger):
        with pytest.raises(UsageError, match="Nothing to ingest"):
            ingest_tasks(store, ledger, [])


class TestPreviewIngest:
    """Dry-run ingestion."""

    @pytest.fixture
    def seeded(self, store, ledger):
        ingest_tasks(store, ledger, [{"title": "done"}, {"title": "open"}])
        manifest = store.load()
        manifest.get_task("TASK-001").status = TaskStatus.COMPLETED
        store.save(manifest)
        return store

    def test_dependency_states(self, seeded):
        preview = preview_ingest(seeded, [
            {"title": "next", "dependencies": ["TASK-001", "TASK-002"]},
            {"title": "after", "dependencies": [0]},
            {"title": "free"},
        ])
        assert preview.error is None
        assert [p.task.id for p in preview.tasks] == ["TASK-003", "TASK-004", "TASK-005"]

        first, second, third = preview.tasks
        assert [(d.id, d.state) for d in first.dependencies] == [
            ("TASK-001", "completed"), ("TASK-002", "pending"),
        ]
        assert first.waiting_on == ["TASK-002"]
        assert [(d.id, d.state) for d in second.dependencies] == [("TASK-003", "new")]
        assert second.waiting_on == ["TASK-003"]
        assert third.dependencies == []
        assert third.waiting_on == []

    def test_writes_nothing(self, seeded, ledger):
        before = seeded.path.read_bytes()
        preview_ingest(seeded, [{"title": "x", "dependencies": ["TASK-001"]}])
        assert seeded.path.read_bytes() == before
        assert len(ledger.load()) == 1

    def test_missing_dependency_is_reported(self, store):
        preview = preview_ingest(store, [{"title": "x", "dependencies": ["TASK-404"]}])
        assert [(d.id, d.state) for d in preview.tasks[0].dependencies] == [("TASK-404", "missing")]
        assert isinstance(preview.error, DanglingDependency)
        assert store.load().tasks == []

    def test_cycle_is_reported(self, store):
        preview = preview_ingest(store, [
            {"id": "X", "dependencies": ["Y"]},
            {"id": "Y", "dependencies": ["X"]},
        ])
        assert isinstance(preview.error, CycleDetected)

    def test_invalid_drafts_still_raise(self, store):
        with pytest.raises(UsageError, match="out of bounds"):
            preview_ingest(store, [{"title": "x", "dependencies": [3]}])

    def test_empty_batch(self, store):
        with pytest.raises(UsageError, match="Nothing to ingest"):
            preview_ingest(store, [])
