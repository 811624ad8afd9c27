"""Shared test configuration and fixtures."""

from pathlib import Path

import pytest
from dotenv import load_dotenv

from tablerepair.config import Settings
from tablerepair.repair.schema import ProviderResponse, RepairContext, TokenUsage

# Load .env from project root for all tests
root = Path(__file__).parent.parent.resolve()
load_dotenv(root / ".env")

GOOD_TABLE = "<table><tr><th>Nome</th><th>Idade</th></tr><tr><td>Ana</td><td>30</td></tr></table>"

GHOST_TABLE = (
    "<table><tr><th>Coluna 1</th><th>Valor</th></tr>"
    "<tr><td></td><td>10</td></tr></table>"
)

MISMATCH_TABLE = (
    "<table><tr><th>A</th><th>B</th><th>C</th></tr>"
    "<tr><td>1</td><td>2</td></tr></table>"
)

REPAIRED_TABLE = "<table><tr><th>Nome</th></tr><tr><td>Ana</td></tr></table>"


class FakeProvider:
    """In-test provider: returns scripted texts in order, or raises scripted exceptions."""

    def __init__(self, name: str, replies: list, usage: TokenUsage | None = None):
        self.name = name
        self.replies = list(replies)
        self.usage = usage or TokenUsage(prompt_tokens=100, completion_tokens=50, total_tokens=150)
        self.prompts: list[str] = []

    async def generate(self, prompt: str) -> ProviderResponse:
        self.prompts.append(prompt)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return ProviderResponse(text=reply, usage=self.usage)


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings with zero delays and file roots under a temp dir."""
    return Settings(
        environment="test",
        openrouter_keys=["sk-or-test-1", "sk-or-test-2"],
        retry_base_delay_ms=0,
        key_rotation_delay_s=0,
        rate_limit_per_minute=1000,
        worker_concurrency=2,
        upload_dir=tmp_path / "uploads",
        output_dir=tmp_path / "outputs",
    )


@pytest.fixture
def context() -> RepairContext:
    return RepairContext(qid="Q1", field="enunciado", materia="Contabilidade", enunciado="Analise a tabela.")


@pytest.fixture
def sample_questions() -> list[dict]:
    return [
        {"id": "Q1", "materia": "Contabilidade", "enunciado": f"<p>Veja:</p>{GHOST_TABLE}"},
        {"id": "Q2", "enunciado": GOOD_TABLE},
        {"id_pasta": "P3", "resolucao": MISMATCH_TABLE},
    ]


@pytest.fixture
def make_provider():
    """Factory for scripted fake providers."""
    return FakeProvider
