"""Tests for batch intake, end-to-end processing through the worker pool, and cancellation."""

# pylint: disable=missing-class-docstring,missing-function-docstring

import asyncio
import json
from pathlib import Path

import pytest

from tablerepair.audit.coordinator import audit_data
from tablerepair.errors import IntakeError, InvalidBatchStateError
from tablerepair.jobs.batches import BatchService, build_context, build_tasks
from tablerepair.jobs.models import BatchPhase, BatchStatus, LogLevel, TaskStatus
from tablerepair.jobs.queue import JobQueue, WorkerPool
from tablerepair.jobs.store import MemoryStore
from tablerepair.jobs.worker import OutcomeKind, RepairWorker
from tablerepair.repair.protocol import TableRepairer
from tablerepair.repair.schema import ProviderResponse, Strategy, TokenUsage

CLEAN = "<table><tr><th>Nome</th><th>Idade</th></tr><tr><td>Ana</td><td>30</td></tr></table>"
FIXED = "<table><tr><th>Item</th></tr><tr><td>ok</td></tr></table>"
MARKDOWN_FIELD = "Tabela:\n| Nome | Idade |\n| --- | --- |\n| Ana | 30 |"


def dup_header_table(label: str) -> str:
    return f"<table><tr><th>Item</th><th>Item</th></tr><tr><td>{label}</td><td>2</td></tr></table>"


def encode(data) -> bytes:
    return json.dumps(data, ensure_ascii=False).encode("utf-8")


class KeyedProvider:
    """Pool stand-in: tables containing ``linha-ruim`` can never be repaired."""

    name = "openrouter"

    def __init__(self):
        self.calls = 0

    async def generate(self, prompt: str) -> ProviderResponse:
        self.calls += 1
        text = "nada" if "linha-ruim" in prompt else FIXED
        return ProviderResponse(text=text, usage=TokenUsage(prompt_tokens=10, completion_tokens=5, total_tokens=15))


class GatedProvider:
    """Pool stand-in that holds every call until ``release`` is set."""

    name = "openrouter"

    def __init__(self):
        self.started = 0
        self.release = asyncio.Event()

    async def generate(self, prompt: str) -> ProviderResponse:
        self.started += 1
        await self.release.wait()
        return ProviderResponse(text=FIXED)


# ===========================================================================
# Task building
# ===========================================================================


class TestBuildTasks:

    def test_context_is_truncated(self):
        question = {"materia": "Direito", "enunciado": "e" * 1500, "texto_associado": "t" * 2500}
        context = build_context(question, "Q1", "resolucao")
        assert context.materia == "Direito"
        assert len(context.enunciado) == 1000
        assert len(context.texto_associado) == 2000
        assert context.assunto is None

    def test_one_task_per_table(self, sample_questions):
        issues = audit_data(sample_questions).filtered("BAD")
        tasks = build_tasks("b1", sample_questions, issues, max_attempts=3)
        assert len(issues) > len(tasks)
        assert {(t.question_index, t.field, t.table_index) for t in tasks} == {(0, "enunciado", 0), (2, "resolucao", 0)}
        assert {t.qid for t in tasks} == {"Q1", "P3"}
        assert all(t.max_attempts == 3 for t in tasks)

    def test_markdown_field_gets_no_task(self):
        questions = [{"id": "Q1", "enunciado": MARKDOWN_FIELD}, {"id": "Q2", "enunciado": dup_header_table("x")}]
        issues = audit_data(questions).filtered("BAD")
        assert "MARKDOWN_TABLE_IN_FIELD" in [i.type for i in issues]
        tasks = build_tasks("b1", questions, issues, max_attempts=3)
        assert [(t.question_index, t.field, t.table_index) for t in tasks] == [(1, "enunciado", 0)]


# ===========================================================================
# Intake
# ===========================================================================


class TestIntakeErrors:

    @pytest.mark.parametrize(
        "content, message",
        [
            (b"{nope", "Invalid JSON"),
            (b'{"questoes": []}', "No questions"),
            (b'"texto"', "No questions"),
        ],
    )
    def test_rejected_before_anything_is_stored(self, settings, content, message):
        async def scenario():
            async with MemoryStore() as store:
                service = BatchService(store, JobQueue(), settings)
                with pytest.raises(IntakeError, match=message):
                    await service.submit(content, "prova.json")
                return await store.list_batches()

        assert asyncio.run(scenario()) == []
        assert not Path(settings.upload_dir).exists()

    def test_file_too_large(self, settings):
        settings = settings.model_copy(update={"max_file_size_mb": 1})

        async def scenario():
            async with MemoryStore() as store:
                service = BatchService(store, JobQueue(), settings)
                await service.submit(b" " * (1024 * 1024 + 1), "prova.json")

        with pytest.raises(IntakeError, match="1 MB"):
            asyncio.run(scenario())

    def test_unknown_severity_filter(self, settings, sample_questions):
        async def scenario():
            async with MemoryStore() as store:
                service = BatchService(store, JobQueue(), settings)
                await service.submit(encode(sample_questions), "prova.json", severity_filter="WARN")

        with pytest.raises(IntakeError, match="severity"):
            asyncio.run(scenario())

    def test_unreadable_file(self, settings, tmp_path):
        async def scenario():
            async with MemoryStore() as store:
                service = BatchService(store, JobQueue(), settings)
                await service.submit_file(tmp_path / "missing.json")

        with pytest.raises(IntakeError, match="Cannot read"):
            asyncio.run(scenario())


class TestIntake:

    def test_tasks_are_enqueued(self, settings, sample_questions):
        queue = JobQueue()

        async def scenario():
            async with MemoryStore() as store:
                service = BatchService(store, queue, settings)
                result = await service.submit(encode(sample_questions), "prova.json", strategy="pool-only")
                batch = await store.get_batch(result.batch_id)
                tasks = await store.list_tasks(result.batch_id)
                return result, batch, tasks, await queue.list_jobs()

        result, batch, tasks, jobs = asyncio.run(scenario())
        assert result.tasks_created == 2
        assert result.stats.total_tables == 3
        assert batch.status == BatchStatus.PROCESSING
        assert batch.phase == BatchPhase.REPAIR
        assert batch.strategy == Strategy.POOL
        assert batch.total_questions == 3
        assert batch.total_issues == result.issues_selected
        assert Path(batch.input_file_path).name.endswith("_prova.json")
        assert Path(batch.input_file_path).exists()
        assert [j.key for j in jobs] == [t.id for t in tasks]
        assert all(t.status == TaskStatus.PENDING for t in tasks)

    def test_dry_run_enqueues_nothing(self, settings, sample_questions):
        queue = JobQueue()

        async def scenario():
            async with MemoryStore() as store:
                service = BatchService(store, queue, settings)
                result = await service.submit(encode(sample_questions), "prova.json", dry_run=True)
                return result, await store.list_tasks(result.batch_id)

        result, tasks = asyncio.run(scenario())
        assert result.dry_run is True
        assert result.status == BatchStatus.COMPLETED
        assert result.phase == BatchPhase.DONE
        assert result.issues_selected > 0
        assert result.tasks_created == 0
        assert tasks == []
        assert queue.is_idle()

    def test_clean_document_completes_immediately(self, settings):
        async def scenario():
            async with MemoryStore() as store:
                service = BatchService(store, JobQueue(), settings)
                result = await service.submit(encode({"questoes": [{"id": "Q1", "enunciado": CLEAN}]}), "limpa.json")
                return result, await store.get_batch(result.batch_id)

        result, batch = asyncio.run(scenario())
        assert result.tasks_created == 0
        assert batch.status == BatchStatus.COMPLETED
        assert batch.phase == BatchPhase.DONE
        written = json.loads(Path(batch.output_file_path).read_text(encoding="utf-8"))
        assert written == {"questoes": [{"id": "Q1", "enunciado": CLEAN}]}

    def test_markdown_field_is_logged_for_manual_review(self, settings):
        document = [{"id": "Q1", "enunciado": MARKDOWN_FIELD}]

        async def scenario():
            async with MemoryStore() as store:
                service = BatchService(store, JobQueue(), settings)
                result = await service.submit(encode(document), "markdown.json")
                warnings = await service.list_logs(result.batch_id, level=LogLevel.WARN)
                return result, await store.get_batch(result.batch_id), warnings

        result, batch, warnings = asyncio.run(scenario())
        assert result.issues_selected == 1
        assert result.tasks_created == 0
        assert batch.status == BatchStatus.COMPLETED
        assert batch.success_count == 0
        assert [w.metadata for w in warnings] == [{"issues": ["q0-enunciado-md"]}]
        written = json.loads(Path(batch.output_file_path).read_text(encoding="utf-8"))
        assert written == document


# ===========================================================================
# End to end
# ===========================================================================


class TestProcessBatch:

    def test_seven_repaired_three_failed(self, settings):
        labels = [f"linha-ok-{i}" for i in range(7)] + [f"linha-ruim-{i}" for i in range(3)]
        document = [{"id": f"Q{i}", "enunciado": dup_header_table(label)} for i, label in enumerate(labels)]
        provider = KeyedProvider()
        queue = JobQueue(max_deliveries=3, redelivery_base_delay_s=0)

        async def scenario():
            async with MemoryStore() as store:
                service = BatchService(store, queue, settings)
                result = await service.submit(encode(document), "prova.json")
                worker = RepairWorker(store, TableRepairer(pool=provider), settings)
                await WorkerPool(queue, worker.handle, concurrency=settings.worker_concurrency).run_until_idle()
                progress = await service.get_progress(result.batch_id)
                return result, await store.get_batch(result.batch_id), progress

        result, batch, progress = asyncio.run(scenario())
        assert result.tasks_created == 10
        assert batch.status == BatchStatus.COMPLETED
        assert batch.phase == BatchPhase.DONE
        assert (batch.success_count, batch.failed_count) == (7, 3)
        assert batch.tokens_used == 7 * 15
        assert progress.percentage == 70
        assert progress.queue["failed"] == 0
        # each failing table: three task attempts of three model calls
        assert provider.calls == 7 + 3 * 3 * 3

        written = json.loads(Path(batch.output_file_path).read_text(encoding="utf-8"))
        assert [q["enunciado"] for q in written[:7]] == [FIXED] * 7
        assert [q["enunciado"] for q in written[7:]] == [dup_header_table(label) for label in labels[7:]]

    def test_listings(self, settings):
        document = [{"id": "Q0", "enunciado": dup_header_table("linha-ok-0")}, {"id": "Q1", "enunciado": CLEAN}]
        queue = JobQueue()

        async def scenario():
            async with MemoryStore() as store:
                service = BatchService(store, queue, settings)
                result = await service.submit(encode(document), "prova.json")
                worker = RepairWorker(store, TableRepairer(pool=KeyedProvider()), settings)
                await WorkerPool(queue, worker.handle).run_until_idle()
                issues = await service.list_issues(result.batch_id, severity="bad")
                completed = await service.list_issues(result.batch_id, status=TaskStatus.COMPLETED)
                warn_only = await service.list_issues(result.batch_id, severity="WARN")
                logs = await service.list_logs(result.batch_id)
                errors = await service.list_logs(result.batch_id, level=LogLevel.ERROR)
                return issues, completed, warn_only, logs, errors

        issues, completed, warn_only, logs, errors = asyncio.run(scenario())
        assert len(issues) == 1
        assert issues[0].issue_type == "HEADER_DUP"
        assert issues[0].repaired_html == FIXED
        assert issues[0].attempts == 1
        assert [i.id for i in completed] == [issues[0].id]
        assert warn_only == []
        assert logs[0].message == "Batch completed"
        assert logs[-1].message == "Audit started"
        assert errors == []


# ===========================================================================
# Cancellation
# ===========================================================================


class TestCancelBatch:

    def test_queued_jobs_removed_and_running_results_discarded(self, settings):
        document = [{"id": f"Q{i}", "enunciado": dup_header_table(f"linha-ok-{i}")} for i in range(7)]
        queue = JobQueue()

        async def scenario():
            provider = GatedProvider()
            async with MemoryStore() as store:
                service = BatchService(store, queue, settings)
                result = await service.submit(encode(document), "prova.json")
                worker = RepairWorker(store, TableRepairer(pool=provider), settings)

                jobs = [await queue.take(), await queue.take()]
                running = [asyncio.create_task(worker.handle(job)) for job in jobs]
                while provider.started < 2:
                    await asyncio.sleep(0)

                removed = await service.cancel_batch(result.batch_id)
                provider.release.set()
                outcomes = await asyncio.gather(*running)
                for job in jobs:
                    await queue.complete(job)

                with pytest.raises(InvalidBatchStateError):
                    await service.cancel_batch(result.batch_id)

                tasks = await store.list_tasks(result.batch_id)
                logs = await service.list_logs(result.batch_id, level=LogLevel.WARN)
                return removed, outcomes, tasks, await store.get_batch(result.batch_id), logs

        removed, outcomes, tasks, batch, logs = asyncio.run(scenario())
        assert removed == 5
        assert [o.kind for o in outcomes] == [OutcomeKind.DISCARDED, OutcomeKind.DISCARDED]
        assert all(t.status == TaskStatus.CANCELLED for t in tasks)
        assert batch.status == BatchStatus.CANCELLED
        assert batch.cancelled_at is not None
        assert batch.success_count == 0
        assert batch.output_file_path is None
        assert queue.is_idle()
        assert logs[0].message == "Batch cancelled"
        assert logs[0].metadata == {"jobs_removed": 5, "tasks_cancelled": 5}

    def test_completed_batch_cannot_be_cancelled(self, settings):
        async def scenario():
            async with MemoryStore() as store:
                service = BatchService(store, JobQueue(), settings)
                result = await service.submit(encode([{"enunciado": CLEAN}]), "limpa.json")
                await service.cancel_batch(result.batch_id)

        with pytest.raises(InvalidBatchStateError):
            asyncio.run(scenario())
