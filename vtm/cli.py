#!/usr/bin/env python3
"""
VTM - CLI Interface
===================
Command-line tool for the task manifest, its history ledger and the
research cache.

Usage:
    vtm next
    vtm context TASK-001 --mode compact
    vtm start TASK-001
    vtm complete TASK-001 --tests-pass --all-verified
    vtm rollback 2026-01-28-001 --dry-run

Exit codes: 0 success, 1 usage/precondition error, 2 data-integrity error.
"""

import argparse
import json
import logging
import sys
from typing import List, Optional

from .cache import ResearchCache
from .config import VTMConfig, load_config
from .context import MODES, ContextBuilder, estimate_tokens, render, summarize
from .errors import UsageError, VTMError
from .history import TransactionLedger
from .ingest import IngestPreview, ingest_tasks, load_drafts, preview_ingest
from .manager import TaskManager, parse_filters
from .schema import CompletionEvidence, Task, TaskStatus
from .store import FileManifestStore

logger = logging.getLogger(__name__)

STATUS_ICONS = {
    TaskStatus.PENDING: "⬜",
    TaskStatus.IN_PROGRESS: "🔵",
    TaskStatus.BLOCKED: "🟡",
    TaskStatus.COMPLETED: "✅",
}


class Workspace:
    """The components one CLI invocation works with"""

    def __init__(self, config: VTMConfig):
        self.config = config
        self.store = FileManifestStore(config.manifest_path)
        self.manager = TaskManager(self.store)
        self.ledger = TransactionLedger(config.history_dir, self.store)
        self.context = ContextBuilder(self.store)
        self.cache = ResearchCache(config.cache_dir, config.cache_ttl_seconds)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str, ensure_ascii=False))


def _split(value: Optional[str]) -> List[str]:
    return [part.strip() for part in (value or "").split(",") if part.strip()]


def _progress_bar(pct: float) -> str:
    filled = int(pct // 10)
    return "█" * filled + "░" * (10 - filled)


def _task_line(task: Task) -> str:
    return f"  {STATUS_ICONS.get(task.status, '❓')} [{task.id}] {task.title}"


# ========================================
# TASK COMMANDS
# ========================================

def cmd_init(args, ws: Workspace) -> int:
    manifest = ws.store.init(args.name, args.description or "", overwrite=args.force)
    print(f"✅ Created: {ws.store.path}")
    print(f"   Project: {manifest.project.name}")
    return 0


def cmd_next(args, ws: Workspace) -> int:
    limit = args.limit if args.limit is not None else ws.config.next_limit
    tasks = ws.manager.get_ready_tasks(limit=limit, order=args.sort)

    if args.json:
        _print_json([t.model_dump(mode="json") for t in tasks])
        return 0

    print(f"📋 Ready Tasks ({len(tasks)}):")
    if not tasks:
        print("No tasks ready. Check blocked or in-progress tasks.")
        return 0
    print("-" * 60)
    for task in tasks:
        print(f"  [{task.id}] {task.title} ({task.estimated_hours}h)")
        print(f"      Risk: {task.risk.value} | Test: {task.test_strategy.value}")
        print(f"      Deps: {', '.join(task.dependencies) or 'none'}")
        print(f"      From: {task.source}")
    print("-" * 60)
    print("Use: vtm context <id> to get the task context")
    return 0


def cmd_context(args, ws: Workspace) -> int:
    payload = ws.context.extract(args.task_id, args.mode)
    if args.json:
        _print_json(payload.model_dump(mode="json", exclude_none=True))
        return 0
    text = render(payload)
    print(text)
    print(f"\nEstimated tokens: ~{estimate_tokens(text)}", file=sys.stderr)
    return 0


def cmd_task(args, ws: Workspace) -> int:
    task = ws.manager.get_task(args.task_id)
    if args.json:
        _print_json(task.model_dump(mode="json"))
        return 0
    print(f"{task.id}: {task.title}")
    print(f"Status: {task.status.value}")
    print(f"Risk: {task.risk.value} | Test: {task.test_strategy.value}")
    print(f"\nDescription: {task.description}")
    print("\nAcceptance Criteria:")
    for i, ac in enumerate(task.acceptance_criteria, 1):
        print(f"  {i}. {ac}")
    return 0


def cmd_start(args, ws: Workspace) -> int:
    task = ws.manager.start_task(args.task_id, force=args.force)
    print(f"▶️ Started: {task.id} - {task.title}")
    print(f"   Started at: {task.started_at.isoformat()}")
    print(f"\nNext: vtm context {task.id}, then vtm complete {task.id}")
    return 0


def _evidence(args, ws: Workspace) -> CompletionEvidence:
    task = ws.manager.get_task(args.task_id)
    total = len(task.acceptance_criteria)
    if args.all_verified:
        verified = [True] * total
    else:
        verified = [False] * total
        for number in args.verified or []:
            if number < 1 or number > total:
                raise UsageError(f"{task.id} has {total} acceptance criteria; got AC{number}")
            verified[number - 1] = True
    return CompletionEvidence(
        tests_pass=args.tests_pass,
        ac_verified=verified,
        commits=_split(args.commits),
        files_created=_split(args.files_created),
    )


def cmd_complete(args, ws: Workspace) -> int:
    result = ws.manager.complete_task(args.task_id, _evidence(args, ws), force=args.force)

    if args.json:
        _print_json({
            "task": result.task.model_dump(mode="json"),
            "newly_ready": [t.id for t in result.newly_ready],
            "stats": result.stats.model_dump(),
        })
        return 0

    stats = result.stats
    print(f"✅ Completed: {result.task.id} - {result.task.title}")
    print(f"\n📊 Progress: {stats.completed}/{stats.total_tasks} ({stats.progress_pct:.1f}%)")
    if result.newly_ready:
        print("\n🚀 New tasks available:")
        for task in result.newly_ready:
            print(f"   {task.id}: {task.title}")
    return 0


def cmd_block(args, ws: Workspace) -> int:
    task = ws.manager.block_task(args.task_id, args.reason)
    print(f"⛔ Blocked: {task.id} ({task.blocked_reason})")
    return 0


def cmd_reset(args, ws: Workspace) -> int:
    task = ws.manager.reset_task(args.task_id)
    print(f"↩️ Reset to pending: {task.id}")
    return 0


def cmd_reopen(args, ws: Workspace) -> int:
    task = ws.manager.reopen_task(args.task_id)
    print(f"🔁 Reopened: {task.id} (now pending)")
    return 0


def cmd_stats(args, ws: Workspace) -> int:
    stats = ws.manager.stats()
    by_source = ws.manager.stats_by_source()
    resolution_ready = ws.manager.get_ready_tasks()

    if args.json:
        _print_json({
            "stats": stats.model_dump(),
            "by_source": by_source,
            "ready": len(resolution_ready),
        })
        return 0

    print("📊 Project Statistics")
    print("-" * 60)
    print(f"Total Tasks:   {stats.total_tasks}")
    print(f"Completed:     {stats.completed} ({stats.progress_pct:.1f}%)")
    print(f"In Progress:   {stats.in_progress}")
    print(f"Pending:       {stats.pending}")
    print(f"Blocked:       {stats.blocked}")
    print(f"Ready:         {len(resolution_ready)}")
    if by_source:
        print("\n📈 Progress by Source:")
        for source, counts in by_source.items():
            pct = counts["completed"] / counts["total"] * 100
            print(
                f"  {source:<30} {_progress_bar(pct)} {pct:.0f}% "
                f"({counts['completed']}/{counts['total']})"
            )
    return 0


def cmd_list(args, ws: Workspace) -> int:
    tasks = ws.manager.list_tasks(parse_filters(args.filter), sort=args.sort)
    if args.json:
        _print_json([t.model_dump(mode="json") for t in tasks])
        return 0
    print(f"📋 Tasks ({len(tasks)}):")
    for task in tasks:
        print(_task_line(task))
        print(f"      Status: {task.status.value} | Risk: {task.risk.value} | {task.estimated_hours}h")
    return 0


def cmd_summary(args, ws: Workspace) -> int:
    _print_json(summarize(ws.store.load()))
    return 0


DEPENDENCY_ICONS = {
    "new": "(new)",
    "completed": "✓ (completed)",
    "in_progress": "⏳ (in_progress)",
    "blocked": "⚠ (blocked)",
    "pending": "⏸ (pending)",
    "missing": "(missing)",
}


def _print_ingest_preview(preview: IngestPreview) -> None:
    print("━" * 60)
    print(f"📋 Would add {len(preview.tasks)} task(s)")
    print("━" * 60)
    for entry in preview.tasks:
        print(f"\n{entry.task.id}: {entry.task.title}")
        deps = ", ".join(f"{d.id} {DEPENDENCY_ICONS[d.state]}" for d in entry.dependencies)
        print(f"  Dependencies: {deps or 'none'}")
        if entry.waiting_on:
            print(f"  Ready when: {', '.join(entry.waiting_on)} completes")
        else:
            print("  Ready when: immediately")
    print("━" * 60)


def cmd_ingest(args, ws: Workspace) -> int:
    drafts, file_sources = load_drafts(args.file)
    sources = args.source or file_sources

    if args.dry_run:
        preview = preview_ingest(ws.store, drafts)
        _print_ingest_preview(preview)
        if preview.error is not None:
            raise preview.error
        print("\nThis is a dry run. Run without --dry-run to ingest.")
        return 0

    tasks, tx = ingest_tasks(ws.store, ws.ledger, drafts, sources, description=args.description)
    print(f"📥 Ingested {len(tasks)} task(s) as transaction {tx.id}")
    for task in tasks:
        print(_task_line(task))
    return 0


# ========================================
# HISTORY COMMANDS
# ========================================

def cmd_history(args, ws: Workspace) -> int:
    if args.search:
        entries = ws.ledger.search(args.search)[: args.limit]
    else:
        entries = ws.ledger.history(limit=args.limit)

    if args.json:
        _print_json([tx.model_dump(mode="json") for tx in entries])
        return 0

    if not entries:
        print("No transaction history found")
        return 0

    print("📜 Transaction History:")
    print("-" * 60)
    for tx in entries:
        flag = " [REVERTED]" if tx.reverted else ""
        print(f"  [{tx.id}] {tx.action}{flag} - {tx.timestamp.isoformat()}")
        print(f"      Sources: {', '.join(tx.sources) or '-'}")
        print(f"      Tasks: {', '.join(tx.tasks_added) or '-'}")
    print("-" * 60)
    stats = ws.ledger.stats()
    print(f"Total: {stats.total_entries} transaction(s), {stats.reverted} reverted")
    return 0


def cmd_history_detail(args, ws: Workspace) -> int:
    tx = ws.ledger.get(args.transaction_id)
    if args.json:
        _print_json(tx.model_dump(mode="json"))
        return 0

    by_id = ws.store.load().task_map()
    print(f"📜 Transaction {tx.id}")
    print(f"   Action:    {tx.action}")
    print(f"   Timestamp: {tx.timestamp.isoformat()}")
    print(f"   Sources:   {', '.join(tx.sources) or '-'}")
    if tx.description:
        print(f"   Notes:     {tx.description}")
    if tx.reverted:
        when = tx.reverted_at.isoformat() if tx.reverted_at else "unknown time"
        print(f"   Reverted:  yes ({when})")
    else:
        print("   Reverted:  no")
    print("\n   Tasks added:")
    for task_id in tx.tasks_added:
        task = by_id.get(task_id)
        status = task.status.value if task else "removed"
        title = task.title if task else ""
        print(f"     - {task_id} [{status}] {title}".rstrip())
    if tx.tasks_removed:
        print(f"\n   Removed by rollback: {', '.join(tx.tasks_removed)}")
    return 0


def cmd_rollback(args, ws: Workspace) -> int:
    if args.dry_run:
        plan = ws.ledger.preview(args.transaction_id)
        if args.json:
            _print_json(plan.model_dump())
            return 0
        print(f"🔍 Rollback Preview: {plan.transaction_id}")
        if plan.already_reverted:
            print("   (already reverted)")
        print(f"   Tasks to remove: {', '.join(plan.tasks_to_remove) or '-'}")
        if plan.blocking_dependents:
            print("   ⚠️ Blocking dependents:")
            for dep in plan.blocking_dependents:
                print(f"     - {dep['task_id']} depends on {dep['depends_on']}")
            print(f"   --cascade would also remove: {', '.join(plan.cascade_dependents)}")
        if plan.in_progress:
            print(f"   ⚠️ In progress: {', '.join(plan.in_progress)}")
        print("\nThis is a dry run. Run without --dry-run to execute.")
        return 0

    was_reverted = ws.ledger.get(args.transaction_id).reverted
    result = ws.ledger.rollback(args.transaction_id, force=args.force, cascade=args.cascade)
    if args.json:
        _print_json(result.model_dump(mode="json"))
        return 0
    if was_reverted:
        print(f"⏪ Transaction {result.transaction.id} was already rolled back; nothing to do")
        return 0
    print(f"⏪ Rolled back {result.transaction.id}: removed {len(result.removed)} task(s)")
    for task_id in result.removed:
        print(f"   - {task_id}")
    if result.detached:
        print(f"⚠️ Dependencies detached from: {', '.join(result.detached)}")
    return 0


# ========================================
# CACHE COMMANDS
# ========================================

def cmd_cache_stats(args, ws: Workspace) -> int:
    stats = ws.cache.stats()
    if args.json:
        _print_json(stats.model_dump())
        return 0

    print("📊 Research Cache Statistics")
    print("-" * 60)
    print(f"Cache Location: {ws.cache.cache_dir}")
    print(f"TTL: {ws.cache.default_ttl_seconds // 86400} days")
    if not stats.entries_count:
        print("\nCache is empty")
    print("\nPerformance:")
    print(f"  Cache hits:   {stats.hits}")
    print(f"  Cache misses: {stats.misses}")
    print(f"  Hit rate:     {stats.hit_rate:.1f}%")
    print("\nStorage:")
    print(f"  Total entries: {stats.entries_count} ({stats.expired_count} expired)")
    print(f"  Total size:    {stats.total_size / 1024:.1f} KB")
    if stats.entries_count:
        print("\n💡 Tip: Use 'vtm cache-clear --expired --confirm' to remove old entries")
    return 0


def cmd_cache_clear(args, ws: Workspace) -> int:
    if args.expired:
        candidates = [e for e in ws.cache.search([]) if e.is_expired()]
        label = "expired"
    elif args.tag:
        candidates = [e for e in ws.cache.search([]) if any(t in e.tags for t in args.tag)]
        label = f"tagged {', '.join(args.tag)}"
    else:
        candidates = ws.cache.search([])
        label = "all"

    if not args.confirm:
        print(f"Would remove {len(candidates)} {label} cache entries. Re-run with --confirm.")
        return 1

    if args.expired:
        print("🧹 Clearing Expired Cache")
        removed = ws.cache.clear_expired()
    elif args.tag:
        print(f"🧹 Clearing Cache Tagged {', '.join(args.tag)}")
        removed = ws.cache.clear_tags(args.tag)
    else:
        print("🧹 Clearing All Cache")
        removed = ws.cache.clear()
    print(f"✅ Cleared {removed} entries")
    return 0


def cmd_cache_refresh(args, ws: Workspace) -> int:
    expired = ws.cache.clear_expired()
    aged = ws.cache.clear(older_than_days=args.age_days)
    print(f"♻️ Evicted {expired} expired and {aged} entries older than {args.age_days} days")
    print("   They will be looked up fresh on next use.")
    return 0


def cmd_cache_info(args, ws: Workspace) -> int:
    entry = ws.cache.info(args.query)
    if entry is None:
        print(f"❌ No cache entry for: {args.query}", file=sys.stderr)
        return 1
    if args.json:
        _print_json(entry.model_dump(mode="json"))
        return 0
    preview = entry.result if isinstance(entry.result, str) else json.dumps(entry.result)
    print(f"🔑 {entry.key}")
    print(f"   Query:   {entry.query}")
    print(f"   Tags:    {', '.join(entry.tags) or '-'}")
    print(f"   Created: {entry.created_at.isoformat()}")
    print(f"   TTL:     {entry.ttl_seconds}s ({'expired' if entry.is_expired() else 'fresh'})")
    print(f"   Result:  {preview[:200]}")
    return 0


# ========================================
# PARSER
# ========================================

class VTMArgumentParser(argparse.ArgumentParser):
    """Reports malformed command lines as usage errors (exit 1)"""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(UsageError.exit_code, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--manifest", help="Path to vtm.json")
    common.add_argument("--history-dir", help="Directory holding transactions.json")
    common.add_argument("--cache-dir", help="Research cache directory")
    common.add_argument("-v", "--verbose", action="count", default=0, help="More logging (-vv for debug)")

    parser = VTMArgumentParser(
        prog="vtm",
        description="VTM - task manifest for incremental, dependency-ordered development",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  vtm init --name my-project            Create an empty vtm.json
  vtm ingest tasks.json --source adr/ADR-001.md
  vtm ingest tasks.json --dry-run       Preview a batch without writing
  vtm next                              Show ready tasks
  vtm context TASK-001 --mode compact   Minimal context for one task
  vtm start TASK-001                    Mark in progress
  vtm complete TASK-001 --tests-pass --all-verified
  vtm history                           Recent ingestion transactions
  vtm rollback 2026-01-28-001 --dry-run Preview a rollback
  vtm cache-stats                       Research cache usage
        """
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    def add(name, func, help_text):
        sub = subparsers.add_parser(name, parents=[common], help=help_text)
        sub.set_defaults(func=func)
        return sub

    p = add("init", cmd_init, "Create an empty manifest")
    p.add_argument("--name", default="project", help="Project name")
    p.add_argument("--description", help="Project description")
    p.add_argument("--force", action="store_true", help="Overwrite an existing manifest")

    p = add("next", cmd_next, "Show ready tasks")
    p.add_argument("-n", "--limit", type=int, help="Number of tasks to show")
    p.add_argument("--sort", choices=["declared", "unblocking"], default="declared",
                   help="Declared order or most-unblocking first")
    p.add_argument("--json", action="store_true", help="Output as JSON")

    p = add("context", cmd_context, "Context for one task")
    p.add_argument("task_id")
    p.add_argument("--mode", choices=MODES, default="minimal")
    p.add_argument("--json", action="store_true", help="Output as JSON")

    p = add("task", cmd_task, "Show a single task")
    p.add_argument("task_id")
    p.add_argument("--json", action="store_true", help="Output as JSON")

    p = add("start", cmd_start, "Start a task")
    p.add_argument("task_id")
    p.add_argument("--force", action="store_true", help="Ignore unmet dependencies")

    p = add("complete", cmd_complete, "Mark task as completed")
    p.add_argument("task_id")
    p.add_argument("--force", action="store_true", help="Skip state and evidence checks")
    p.add_argument("--tests-pass", action="store_true", help="All tests passing")
    p.add_argument("--verified", type=int, nargs="+", metavar="N",
                   help="Verified acceptance criteria (1-based)")
    p.add_argument("--all-verified", action="store_true", help="Every acceptance criterion verified")
    p.add_argument("--commits", help="Comma-separated commit SHAs")
    p.add_argument("--files-created", help="Comma-separated file paths")
    p.add_argument("--json", action="store_true", help="Output as JSON")

    p = add("block", cmd_block, "Block a pending task")
    p.add_argument("task_id")
    p.add_argument("--reason", required=True, help="Why it is blocked")

    p = add("reset", cmd_reset, "Return an in-progress or blocked task to pending")
    p.add_argument("task_id")

    p = add("reopen", cmd_reopen, "Re-open a completed task (administrative)")
    p.add_argument("task_id")

    p = add("stats", cmd_stats, "Counts by status and by source document")
    p.add_argument("--json", action="store_true", help="Output as JSON")

    p = add("list", cmd_list, "List tasks")
    p.add_argument("--filter", action="append", metavar="FIELD=VALUE", help="Filter (repeatable)")
    p.add_argument("--sort", metavar="FIELD", help="Sort field; --sort=-field for descending")
    p.add_argument("--json", action="store_true", help="Output as JSON")

    add("summary", cmd_summary, "Outstanding work as JSON")

    p = add("ingest", cmd_ingest, "Add a batch of tasks from a JSON file")
    p.add_argument("file")
    p.add_argument("--source", action="append", help="Source document (repeatable)")
    p.add_argument("--description", help="Transaction note")
    p.add_argument("--dry-run", action="store_true", help="Preview the batch without writing")

    p = add("history", cmd_history, "List transactions")
    p.add_argument("-n", "--limit", type=int, default=10, help="Number of transactions")
    p.add_argument("--search", help="Only transactions whose source contains this")
    p.add_argument("--json", action="store_true", help="Output as JSON")

    p = add("history-detail", cmd_history_detail, "Show one transaction")
    p.add_argument("transaction_id")
    p.add_argument("--json", action="store_true", help="Output as JSON")

    p = add("rollback", cmd_rollback, "Roll back a transaction")
    p.add_argument("transaction_id")
    mode = p.add_mutually_exclusive_group()
    mode.add_argument("--dry-run", action="store_true", help="Preview only")
    mode.add_argument("--force", action="store_true", help="Ignore dependents (unsafe)")
    p.add_argument("--cascade", action="store_true", help="Also remove dependent tasks")
    p.add_argument("--json", action="store_true", help="Output as JSON")

    p = add("cache-stats", cmd_cache_stats, "Research cache statistics")
    p.add_argument("--json", action="store_true", help="Output as JSON")

    p = add("cache-clear", cmd_cache_clear, "Remove research cache entries")
    p.add_argument("--confirm", action="store_true", help="Actually delete")
    p.add_argument("--expired", action="store_true", help="Only expired entries")
    p.add_argument("--tag", action="append", help="Only entries with this tag (repeatable)")

    p = add("cache-refresh", cmd_cache_refresh, "Evict stale research cache entries")
    p.add_argument("--age-days", type=int, default=30, help="Evict entries older than this")

    p = add("cache-info", cmd_cache_info, "Show the cache entry for a query")
    p.add_argument("query")
    p.add_argument("--json", action="store_true", help="Output as JSON")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        return e.code

    if not args.command:
        parser.print_help()
        return 1

    level = {0: logging.WARNING, 1: logging.INFO}.get(args.verbose, logging.DEBUG)
    logging.basicConfig(level=level, stream=sys.stderr, format="%(levelname)s %(name)s: %(message)s")

    try:
        config = load_config(overrides={
            "manifest_path": args.manifest,
            "history_dir": args.history_dir,
            "cache_dir": args.cache_dir,
        })
        logger.debug(f"Manifest: {config.manifest_path} | History: {config.history_dir} | Cache: {config.cache_dir}")
        return args.func(args, Workspace(config))
    except VTMError as e:
        print(f"❌ {e}", file=sys.stderr)
        return e.exit_code


if __name__ == "__main__":
    sys.exit(main())
