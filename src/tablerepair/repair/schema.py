"""Pydantic models exchanged by the repair protocol and the job layer."""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


class Strategy(str, Enum):
    """Provider selection for a repair.

    ``HYBRID`` tries the primary provider once, then falls back to the pool.
    ``POOL`` uses the rotating pool exclusively.
    """

    HYBRID = "hybrid"
    POOL = "pool"

    @classmethod
    def parse(cls, value: "str | Strategy") -> "Strategy":
        """Accept the canonical names plus the legacy aliases used by older uploads."""
        if isinstance(value, Strategy):
            return value
        normalized = value.strip().lower()
        if normalized in ("pool", "pool-only", "openrouter", "single-provider-pool"):
            return cls.POOL
        if normalized == "hybrid":
            return cls.HYBRID
        raise ValueError(f"Unknown repair strategy: {value!r}")


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class ProviderResponse(BaseModel):
    """Raw text returned by a provider call plus its token accounting."""

    text: str
    usage: TokenUsage = Field(default_factory=TokenUsage)


class RepairContext(BaseModel):
    """Subject metadata and surrounding text given to the model alongside the broken table."""

    qid: str | int
    field: str
    materia: str | None = None
    assunto: str | None = None
    topico: str | None = None
    enunciado: str | None = None
    texto_associado: str | None = None


class RepairAttempt(BaseModel):
    attempt_number: int
    provider: str
    prompt: str
    raw_response: str = ""
    cleaned_html: str = ""
    validation_errors: list[str] = Field(default_factory=list)
    usage: TokenUsage = Field(default_factory=TokenUsage)
    cost_brl: float = 0.0
    error: str | None = None  # set when the attempt aborted on a provider error


class RepairLog(BaseModel):
    issue_id: str
    qid: str | int
    field: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    attempts: list[RepairAttempt] = Field(default_factory=list)
    final_result: str  # "success" | "failed"
    total_cost_brl: float = 0.0


class RepairResult(BaseModel):
    issue_id: str
    original_html: str
    repaired_html: str = ""
    success: bool
    error: str | None = None
    provider: str | None = None
    usage: TokenUsage = Field(default_factory=TokenUsage)
    cost_brl: float = 0.0
    log: RepairLog | None = None

    @property
    def attempt_log(self) -> list[RepairAttempt]:
        return self.log.attempts if self.log is not None else []
