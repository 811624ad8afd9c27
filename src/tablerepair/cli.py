"""Command line entry point.

    tablerepair audit FILE [--severity BAD|ALL] [--report PATH]
    tablerepair run FILE [--strategy hybrid|pool] [--dry-run] [--severity BAD|ALL] [--workers N]

``audit`` only inspects the document.  ``run`` performs the full intake and
drives an in-process worker pool until every task is terminal.
"""

import argparse
import asyncio
import json
import logging
import sys
from collections import Counter
from pathlib import Path

from tqdm import tqdm

from tablerepair.audit.coordinator import audit_data
from tablerepair.config import Settings
from tablerepair.errors import IntakeError
from tablerepair.jobs.batches import BatchService
from tablerepair.jobs.queue import JobQueue, SlidingWindowLimiter, WorkerPool
from tablerepair.jobs.store import MemoryStore
from tablerepair.jobs.worker import OutcomeKind, RepairWorker
from tablerepair.repair.protocol import TableRepairer
from tablerepair.repair.schema import Strategy

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


# ─── audit ───────────────────────────────────────────────────────────────────


def cmd_audit(args: argparse.Namespace) -> int:
    try:
        data = json.loads(Path(args.file).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        print(f"Cannot read {args.file}: {exc}", file=sys.stderr)
        return 1

    report = audit_data(data)
    selected = report.filtered(args.severity)
    print(f"Tables: {report.stats.total_tables}  BAD: {report.stats.bad}  WARN: {report.stats.warn}  ({report.stats.time} ms)")
    for issue_type, count in Counter(i.type for i in selected).most_common():
        print(f"  {issue_type:<22} {count}")

    if args.report:
        report_path = Path(args.report)
        report_path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"stats": report.stats.model_dump(), "issues": [i.model_dump(mode="json") for i in selected]}
        report_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        print(f"Report written to {report_path}")
    return 0


# ─── run ─────────────────────────────────────────────────────────────────────


async def run_batch(args: argparse.Namespace, settings: Settings) -> int:
    queue = JobQueue(
        limiter=SlidingWindowLimiter(settings.rate_limit_per_minute),
        max_deliveries=settings.queue_max_deliveries,
        redelivery_base_delay_s=settings.retry_base_delay_ms / 1000,
    )
    async with MemoryStore() as store:
        service = BatchService(store, queue, settings)
        try:
            intake = await service.submit_file(Path(args.file), args.strategy, args.dry_run, args.severity)
        except IntakeError as exc:
            print(f"Intake failed: {exc}", file=sys.stderr)
            return 1

        stats = intake.stats
        print(f"Tables: {stats.total_tables}  BAD: {stats.bad}  WARN: {stats.warn}  selected: {intake.issues_selected}")
        if intake.tasks_created:
            repairer = TableRepairer.from_settings(settings)
            worker = RepairWorker(store, repairer, settings)
            with tqdm(total=intake.tasks_created, desc="Repairing tables", unit="table") as bar:

                def on_result(_job, outcome) -> None:
                    if outcome.kind in (OutcomeKind.COMPLETED, OutcomeKind.FAILED):
                        bar.update(1)

                pool = WorkerPool(queue, worker.handle, concurrency=args.workers, on_result=on_result)
                try:
                    await pool.run_until_idle()
                finally:
                    await repairer.pool.aclose()

        progress = await service.get_progress(intake.batch_id)
        batch = await store.get_batch(intake.batch_id)
        print(
            f"Batch {batch.id}: {batch.status.value}  succeeded={progress.completed_tasks}  "
            f"failed={progress.failed_tasks}  tokens={batch.tokens_used}  cost=R$ {batch.cost_brl:.4f}"
        )
        if batch.output_file_path:
            print(f"Output: {batch.output_file_path}")
    return 0


# ─── Entry Point ─────────────────────────────────────────────────────────────


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tablerepair", description="Audit and repair HTML tables in question JSON")
    subparsers = parser.add_subparsers(dest="command", required=True)

    audit = subparsers.add_parser("audit", help="Report table issues without repairing anything")
    audit.add_argument("file", help="Question JSON file")
    audit.add_argument("--severity", choices=["BAD", "ALL"], default="BAD", help="Issues to list (default: BAD)")
    audit.add_argument("--report", help="Write the selected issues as JSON to this path")

    run = subparsers.add_parser("run", help="Audit, repair and write the reconstructed document")
    run.add_argument("file", help="Question JSON file")
    run.add_argument("--strategy", type=Strategy.parse, default=Strategy.HYBRID, help="hybrid (default) or pool")
    run.add_argument("--dry-run", action="store_true", help="Audit only; create no repair tasks")
    run.add_argument("--severity", choices=["BAD", "ALL"], default="BAD", help="Issues to repair (default: BAD)")
    run.add_argument(
        "--workers", type=int, default=settings.worker_concurrency, help="Concurrent workers (default: WORKER_CONCURRENCY)"
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    settings = Settings.from_env()
    args = build_parser(settings).parse_args(argv)
    configure_logging(settings.log_level)

    if args.command == "audit":
        return cmd_audit(args)
    return asyncio.run(run_batch(args, settings))


if __name__ == "__main__":
    sys.exit(main())
