"""
VTM - Transaction Ledger
========================
Append-only record of ingestion batches in <history-dir>/transactions.json,
with preview and rollback (direct or cascading).

Transactions are independent records, not a stack: any of them may be
rolled back at any time, constrained only by the live dependency graph.
Entries are never deleted; a rollback flags its transaction as reverted.

Rollback writes the manifest first and the ledger second. If the process
dies in between, the manifest is authoritative and re-running the
rollback finds nothing left to remove and just sets the flag.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from .errors import BlockedByDependents, CorruptHistory, TransactionNotFound
from .resolver import check_integrity, dependents_of
from .schema import Transaction, TaskStatus, utcnow
from .store import ManifestStore, atomic_write_text

logger = logging.getLogger(__name__)

HISTORY_FILE = "transactions.json"


class RollbackPreview(BaseModel):
    transaction_id: str
    tasks_to_remove: List[str] = Field(default_factory=list)
    blocking_dependents: List[Dict[str, str]] = Field(default_factory=list)
    cascade_dependents: List[str] = Field(default_factory=list)
    in_progress: List[str] = Field(default_factory=list)
    already_reverted: bool = False


class RollbackResult(BaseModel):
    transaction: Transaction
    removed: List[str] = Field(default_factory=list)
    detached: List[str] = Field(default_factory=list)


class HistoryStats(BaseModel):
    total_entries: int = 0
    reverted: int = 0
    tasks_added: int = 0
    oldest: Optional[datetime] = None
    newest: Optional[datetime] = None


def next_transaction_id(existing: List[str], now: datetime) -> str:
    """YYYY-MM-DD-NNN, one past the highest sequence used that day"""
    date = now.strftime("%Y-%m-%d")
    prefix = date + "-"
    sequences = [
        int(tx_id[len(prefix):])
        for tx_id in existing
        if tx_id.startswith(prefix) and tx_id[len(prefix):].isdigit()
    ]
    seq = max(sequences, default=0) + 1
    tx_id = f"{date}-{seq:03d}"
    while tx_id in existing:
        seq += 1
        tx_id = f"{date}-{seq:03d}"
    return tx_id


class TransactionLedger:
    """Owns the history file; reaches the manifest only through its store"""

    def __init__(
        self,
        history_dir: Union[str, Path],
        store: ManifestStore,
        clock: Callable[[], datetime] = utcnow
    ):
        self.history_dir = Path(history_dir)
        self.path = self.history_dir / HISTORY_FILE
        self.store = store
        self.clock = clock

    # ========================================
    # PERSISTENCE
    # ========================================

    def load(self) -> List[Transaction]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except UnicodeDecodeError as e:
            raise CorruptHistory(f"{self.path} is not valid UTF-8: {e}") from e
        except json.JSONDecodeError as e:
            raise CorruptHistory(f"{self.path} is not valid JSON: {e}") from e
        if not isinstance(data, list):
            raise CorruptHistory(f"{self.path} must contain a JSON list of transactions")
        try:
            return [Transaction.model_validate(entry) for entry in data]
        except ValidationError as e:
            raise CorruptHistory(f"{self.path} failed schema validation: {e}") from e

    def _save(self, transactions: List[Transaction]) -> None:
        payload = [tx.model_dump(mode="json") for tx in transactions]
        atomic_write_text(self.path, json.dumps(payload, indent=2, ensure_ascii=False) + "\n")

    # ========================================
    # RECORDING
    # ========================================

    def record(
        self,
        source_refs: List[str],
        task_ids: List[str],
        description: Optional[str] = None
    ) -> Transaction:
        """Append an ingestion batch to the ledger"""
        transactions = self.load()
        now = self.clock()
        tx = Transaction(
            id=next_transaction_id([t.id for t in transactions], now),
            timestamp=now,
            sources=list(source_refs),
            tasks_added=list(task_ids),
            description=description,
        )
        transactions.append(tx)
        self._save(transactions)
        logger.info(f"📝 Recorded transaction {tx.id}: {len(task_ids)} task(s) from {', '.join(source_refs) or '-'}")
        return tx

    # ========================================
    # READS
    # ========================================

    def history(self, limit: Optional[int] = None) -> List[Transaction]:
        """Newest first; id breaks timestamp ties"""
        entries = sorted(self.load(), key=lambda tx: (tx.timestamp, tx.id), reverse=True)
        return entries[:limit] if limit is not None else entries

    def get(self, transaction_id: str) -> Transaction:
        for tx in self.load():
            if tx.id == transaction_id:
                return tx
        raise TransactionNotFound(transaction_id)

    def search(self, query: str) -> List[Transaction]:
        return [
            tx for tx in self.history()
            if any(query in source for source in tx.sources)
        ]

    def stats(self) -> HistoryStats:
        transactions = self.load()
        if not transactions:
            return HistoryStats()
        timestamps = [tx.timestamp for tx in transactions]
        return HistoryStats(
            total_entries=len(transactions),
            reverted=sum(1 for tx in transactions if tx.reverted),
            tasks_added=sum(len(tx.tasks_added) for tx in transactions),
            oldest=min(timestamps),
            newest=max(timestamps),
        )

    # ========================================
    # ROLLBACK
    # ========================================

    def preview(self, transaction_id: str) -> RollbackPreview:
        """What a rollback would remove, and who depends on it. Writes nothing."""
        tx = self.get(transaction_id)
        tasks = self.store.load().tasks
        added = set(tx.tasks_added)
        present = [t.id for t in tasks if t.id in added]

        blocking = []
        for task in dependents_of(present, tasks):
            for dep in task.dependencies:
                if dep in present:
                    blocking.append({"task_id": task.id, "depends_on": dep})

        cascade = [t.id for t in dependents_of(present, tasks, transitive=True)]
        removal = set(present) | set(cascade)
        in_progress = [
            t.id for t in tasks
            if t.id in removal and t.status == TaskStatus.IN_PROGRESS
        ]

        return RollbackPreview(
            transaction_id=tx.id,
            tasks_to_remove=present,
            blocking_dependents=blocking,
            cascade_dependents=cascade,
            in_progress=in_progress,
            already_reverted=tx.reverted,
        )

    def rollback(
        self,
        transaction_id: str,
        force: bool = False,
        cascade: bool = False
    ) -> RollbackResult:
        """
        Remove a transaction's tasks from the manifest and flag it reverted.

        Without cascade or force, fails with BlockedByDependents when any
        task outside the transaction depends on a task being removed.
        cascade removes those dependents (transitively) as well. force
        skips the check and detaches the removed ids from surviving
        tasks' dependencies - unsafe: those tasks may become ready early.
        """
        tx = self.get(transaction_id)
        if tx.reverted:
            logger.info(f"Transaction {tx.id} already reverted; nothing to do")
            return RollbackResult(transaction=tx)

        plan = self.preview(transaction_id)
        if plan.blocking_dependents and not (cascade or force):
            raise BlockedByDependents(tx.id, plan.blocking_dependents)

        removal = list(plan.tasks_to_remove)
        if cascade:
            removal.extend(plan.cascade_dependents)
        removal_set = set(removal)

        manifest = self.store.load()
        check_integrity(manifest.tasks)
        detached = []
        kept = []
        for task in manifest.tasks:
            if task.id in removal_set:
                continue
            stripped = [dep for dep in task.dependencies if dep not in removal_set]
            if len(stripped) != len(task.dependencies):
                detached.append(task.id)
                task.dependencies = stripped
            kept.append(task)
        manifest.tasks = kept

        if detached:
            logger.warning(
                f"⚠️ Forced rollback of {tx.id} detached dependencies from: {', '.join(detached)}"
            )
        started = [task_id for task_id in plan.in_progress if task_id in removal_set]
        if started:
            logger.warning(f"⚠️ Removing in-progress task(s): {', '.join(started)}")

        self.store.save(manifest)

        transactions = self.load()
        for entry in transactions:
            if entry.id == tx.id:
                entry.reverted = True
                entry.reverted_at = self.clock()
                entry.tasks_removed = removal
                tx = entry
                break
        self._save(transactions)

        logger.info(f"⏪ Rolled back {tx.id}: removed {len(removal)} task(s)")
        return RollbackResult(transaction=tx, removed=removal, detached=detached)
