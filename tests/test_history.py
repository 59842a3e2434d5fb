"""Tests for vtm.history.TransactionLedger."""

import json
import logging
from datetime import datetime, timezone

import pytest

from vtm.errors import BlockedByDependents, CorruptHistory, TransactionNotFound
from vtm.history import TransactionLedger, next_transaction_id
from vtm.schema import TaskStatus

from conftest import make_task

FIXED_NOW = datetime(2026, 1, 28, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def ledger(tmp_path, file_store):
    return TransactionLedger(tmp_path / "history", file_store, clock=lambda: FIXED_NOW)


def add_tasks(store, *tasks):
    manifest = store.load()
    manifest.tasks.extend(tasks)
    store.save(manifest)


class TestTransactionIds:
    """Test id generation."""

    def test_first_of_the_day(self):
        assert next_transaction_id([], FIXED_NOW) == "2026-01-28-001"

    def test_increments_within_day(self):
        existing = ["2026-01-28-001", "2026-01-28-002", "2026-01-27-009"]
        assert next_transaction_id(existing, FIXED_NOW) == "2026-01-28-003"

    def test_uses_highest_sequence(self):
        assert next_transaction_id(["2026-01-28-007"], FIXED_NOW) == "2026-01-28-008"


class TestRecord:
    """Test appending to the ledger."""

    def test_record_persists(self, ledger):
        tx = ledger.record(["adr/ADR-001.md"], ["A", "B"])
        assert tx.id == "2026-01-28-001"

        data = json.loads(ledger.path.read_text())
        assert data[0]["tasks_added"] == ["A", "B"]
        assert data[0]["reverted"] is False

    def test_ids_are_unique_and_sortable(self, ledger):
        first = ledger.record(["a.md"], ["A"])
        second = ledger.record(["b.md"], ["B"])
        assert first.id < second.id

    def test_history_newest_first(self, ledger):
        ledger.record(["a.md"], ["A"])
        ledger.record(["b.md"], ["B"])
        assert [tx.id for tx in ledger.history()] == ["2026-01-28-002", "2026-01-28-001"]
        assert len(ledger.history(limit=1)) == 1

    def test_search_by_source(self, ledger):
        ledger.record(["adr/ADR-001.md"], ["A"])
        ledger.record(["specs/SPEC-002.md"], ["C"])
        assert [tx.tasks_added for tx in ledger.search("SPEC-002")] == [["C"]]

    def test_get_unknown(self, ledger):
        with pytest.raises(TransactionNotFound):
            ledger.get("2020-01-01-001")

    def test_empty_history(self, ledger):
        assert ledger.load() == []
        assert ledger.stats().total_entries == 0

    def test_corrupt_history(self, ledger):
        ledger.path.parent.mkdir(parents=True)
        ledger.path.write_text("{broken")
        with pytest.raises(CorruptHistory) as exc:
            ledger.load()
        assert exc.value.exit_code == 2

    def test_history_must_be_a_list(self, ledger):
        ledger.path.parent.mkdir(parents=True)
        ledger.path.write_text("{}")
        with pytest.raises(CorruptHistory):
            ledger.load()

    def test_history_not_utf8(self, ledger):
        ledger.path.parent.mkdir(parents=True)
        ledger.path.write_bytes(b"\xff\xfe[]")
        with pytest.raises(CorruptHistory, match="not valid UTF-8") as exc:
            ledger.load()
        assert exc.value.exit_code == 2


class TestPreview:
    """Test rollback previews."""

    def test_preview_lists_blocking_dependents(self, ledger, file_store):
        tx = ledger.record(["adr/ADR-001.md"], ["A"])
        plan = ledger.preview(tx.id)
        assert plan.tasks_to_remove == ["A"]
        assert plan.blocking_dependents == [{"task_id": "B", "depends_on": "A"}]
        assert plan.cascade_dependents == ["B", "C"]

    def test_preview_writes_nothing(self, ledger, file_store):
        tx = ledger.record(["adr/ADR-001.md"], ["A"])
        manifest_before = file_store.path.read_bytes()
        history_before = ledger.path.read_bytes()
        ledger.preview(tx.id)
        assert file_store.path.read_bytes() == manifest_before
        assert ledger.path.read_bytes() == history_before

    def test_preview_skips_tasks_already_gone(self, ledger):
        tx = ledger.record(["x.md"], ["D", "GONE"])
        assert ledger.preview(tx.id).tasks_to_remove == ["D"]


class TestRollback:
    """Test rollback, cascade and force."""

    def test_simple_rollback(self, ledger, file_store):
        tx = ledger.record(["specs/SPEC-002.md"], ["D"])
        result = ledger.rollback(tx.id)

        assert result.removed == ["D"]
        manifest = file_store.load()
        assert [t.id for t in manifest.tasks] == ["A", "B", "C"]
        assert manifest.stats.total_tasks == 3

        stored = ledger.get(tx.id)
        assert stored.reverted is True
        assert stored.reverted_at == FIXED_NOW
        assert stored.tasks_removed == ["D"]

    def test_blocked_by_dependents(self, ledger, file_store):
        tx = ledger.record(["adr/ADR-001.md"], ["A"])
        before = file_store.path.read_bytes()

        with pytest.raises(BlockedByDependents) as exc:
            ledger.rollback(tx.id)
        assert exc.value.dependents == [{"task_id": "B", "depends_on": "A"}]
        assert file_store.path.read_bytes() == before
        assert ledger.get(tx.id).reverted is False

    def test_cascade_removes_transitive_dependents(self, ledger, file_store):
        tx = ledger.record(["adr/ADR-001.md"], ["A"])
        result = ledger.rollback(tx.id, cascade=True)

        assert result.removed == ["A", "B", "C"]
        assert [t.id for t in file_store.load().tasks] == ["D"]

    def test_force_detaches_dependencies(self, ledger, file_store, caplog):
        tx = ledger.record(["adr/ADR-001.md"], ["A"])
        with caplog.at_level(logging.WARNING):
            result = ledger.rollback(tx.id, force=True)

        assert result.removed == ["A"]
        assert result.detached == ["B"]
        by_id = file_store.load().task_map()
        assert by_id["B"].dependencies == []
        assert "detached dependencies from: B" in caplog.text

    def test_rollback_twice_is_a_no_op(self, ledger, file_store):
        tx = ledger.record(["specs/SPEC-002.md"], ["D"])
        ledger.rollback(tx.id)
        manifest_before = file_store.path.read_bytes()
        history_before = ledger.path.read_bytes()

        result = ledger.rollback(tx.id)
        assert result.removed == []
        assert file_store.path.read_bytes() == manifest_before
        assert ledger.path.read_bytes() == history_before

    def test_rollback_does_not_touch_other_transactions(self, ledger, file_store):
        add_tasks(file_store, make_task("E"), make_task("F"))
        first = ledger.record(["a.md"], ["E"])
        second = ledger.record(["b.md"], ["F"])

        ledger.rollback(first.id)
        remaining = ledger.get(second.id)
        assert remaining.tasks_added == ["F"]
        assert remaining.reverted is False
        assert "F" in file_store.load().task_map()

    def test_earlier_transaction_can_roll_back_first(self, ledger, file_store):
        add_tasks(file_store, make_task("E"), make_task("F", ["E"]))
        first = ledger.record(["a.md"], ["E"])
        second = ledger.record(["b.md"], ["F"])

        with pytest.raises(BlockedByDependents):
            ledger.rollback(first.id)
        ledger.rollback(second.id)
        ledger.rollback(first.id)
        assert "E" not in file_store.load().task_map()

    def test_warns_about_in_progress_removal(self, ledger, file_store, caplog):
        manifest = file_store.load()
        manifest.get_task("D").status = TaskStatus.IN_PROGRESS
        file_store.save(manifest)
        tx = ledger.record(["specs/SPEC-002.md"], ["D"])

        with caplog.at_level(logging.WARNING):
            ledger.rollback(tx.id)
        assert "in-progress task(s): D" in caplog.text

    def test_stats_count_reverted(self, ledger):
        tx = ledger.record(["specs/SPEC-002.md"], ["D"])
        ledger.record(["adr/ADR-001.md"], ["A", "B"])
        ledger.rollback(tx.id)
        stats = ledger.stats()
        assert stats.total_entries == 2
        assert stats.reverted == 1
        assert stats.tasks_added == 3
