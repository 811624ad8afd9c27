"""Repair protocol: diagnose → prompt → call → clean → validate → retry.

One call to ``TableRepairer.repair`` handles one broken table.  The primary
provider is tried once, on the first attempt of a hybrid repair; any failure
there switches the repair to the rotating pool for every remaining attempt.
Validation failures are retried with a corrective prompt up to the attempt
ceiling.  Provider errors other than key exhaustion end the repair at once.
"""

import logging
import re
from typing import NamedTuple

from tablerepair.config import Settings
from tablerepair.errors import ProviderError
from tablerepair.repair.analysis import (
    analyze_table_structure,
    choose_structural_instruction,
    compute_target_columns,
)
from tablerepair.repair.prompts import build_repair_prompt, build_retry_prompt
from tablerepair.repair.providers import Provider, build_providers
from tablerepair.repair.schema import (
    RepairAttempt,
    RepairContext,
    RepairLog,
    RepairResult,
    Strategy,
    TokenUsage,
)

logger = logging.getLogger(__name__)

MAX_VERIFICATION_ATTEMPTS = 3

_TABLE_SPAN_RE = re.compile(r"<table[\s\S]*</table>", re.IGNORECASE)
_ROW_SPAN_RE = re.compile(r"<tr[\s\S]*</tr>", re.IGNORECASE)

ERR_NO_TABLE = "Output does not contain a valid <table> tag"
ERR_NO_ROWS = "Table has no rows"


class Pricing(NamedTuple):
    """USD per million tokens."""

    input_usd: float
    output_usd: float


# ─── Pure Helpers ────────────────────────────────────────────────────────────


def clean_model_output(text: str) -> str:
    """Strip code fences and keep only the outermost ``<table>…</table>`` span, if any."""
    cleaned = (text or "").replace("```html", "").replace("```", "").strip()
    match = _TABLE_SPAN_RE.search(cleaned)
    return match.group(0) if match else cleaned


def validate_repaired_table(html: str) -> list[str]:
    """Return the reasons a candidate is rejected (empty when it is accepted)."""
    if not _TABLE_SPAN_RE.search(html):
        return [ERR_NO_TABLE]
    if not _ROW_SPAN_RE.search(html):
        return [ERR_NO_ROWS]
    return []


def calculate_cost(usage: TokenUsage, pricing: Pricing, usd_to_brl: float) -> float:
    """Cost in BRL of one call's token usage."""
    input_cost = usage.prompt_tokens / 1_000_000 * pricing.input_usd
    output_cost = usage.completion_tokens / 1_000_000 * pricing.output_usd
    return (input_cost + output_cost) * usd_to_brl


# ─── Protocol ────────────────────────────────────────────────────────────────


class TableRepairer:
    """Runs the bounded repair loop for one table at a time.

    Providers are injected: ``pool`` is required, ``primary`` is optional
    (without it a hybrid repair behaves like a pool-only one).
    """

    def __init__(
        self,
        pool: Provider,
        primary: Provider | None = None,
        max_attempts: int = MAX_VERIFICATION_ATTEMPTS,
        pool_pricing: Pricing = Pricing(0.10, 0.40),
        primary_pricing: Pricing = Pricing(0.0, 0.0),
        usd_to_brl: float = 6.00,
    ):
        self.pool = pool
        self.primary = primary
        self.max_attempts = max_attempts
        self.pool_pricing = pool_pricing
        self.primary_pricing = primary_pricing
        self.usd_to_brl = usd_to_brl

    @classmethod
    def from_settings(cls, settings: Settings) -> "TableRepairer":
        primary, pool = build_providers(settings)
        return cls(
            pool=pool,
            primary=primary,
            max_attempts=settings.max_verification_attempts,
            pool_pricing=Pricing(settings.price_input_usd, settings.price_output_usd),
            primary_pricing=Pricing(settings.primary_price_input_usd, settings.primary_price_output_usd),
            usd_to_brl=settings.usd_to_brl,
        )

    def _cost(self, provider: Provider, usage: TokenUsage) -> float:
        pricing = self.primary_pricing if provider is self.primary else self.pool_pricing
        return calculate_cost(usage, pricing, self.usd_to_brl)

    async def repair(
        self,
        issue_id: str,
        broken_html: str,
        expected_cols: int,
        context: RepairContext,
        strategy: Strategy | str = Strategy.HYBRID,
    ) -> RepairResult:
        """Repair one table; never raises for provider or validation failures."""
        strategy = Strategy.parse(strategy)

        structure = analyze_table_structure(broken_html)
        target_cols = compute_target_columns(structure.real_cols, expected_cols)
        variant = choose_structural_instruction(structure, target_cols, broken_html)
        prompt = build_repair_prompt(broken_html, structure, target_cols, variant, context)
        logger.debug("[%s] target=%d cols, instruction=%s", issue_id, target_cols, variant.value)

        use_primary = strategy is Strategy.HYBRID and self.primary is not None
        attempts: list[RepairAttempt] = []
        total_usage = TokenUsage()
        total_cost = 0.0
        provider_used: str | None = None

        for attempt_number in range(1, self.max_attempts + 1):
            provider: Provider | None = None
            response = None

            if use_primary:
                use_primary = False  # once per repair, never again
                try:
                    response = await self.primary.generate(prompt)
                    provider = self.primary
                except Exception as exc:  # pylint: disable=broad-exception-caught
                    logger.warning("[%s] Primary provider failed (%s), switching to pool", issue_id, exc)

            if response is None:
                provider = self.pool
                try:
                    response = await self.pool.generate(prompt)
                except Exception as exc:  # pylint: disable=broad-exception-caught
                    error = str(exc) if isinstance(exc, ProviderError) else f"Unexpected provider error: {exc}"
                    logger.error("[%s] Critical repair error: %s", issue_id, error)
                    attempts.append(
                        RepairAttempt(attempt_number=attempt_number, provider=self.pool.name, prompt=prompt, error=error)
                    )
                    return self._result(
                        issue_id, broken_html, context, attempts, total_usage, total_cost, self.pool.name, error=error
                    )

            provider_used = provider.name
            cleaned = clean_model_output(response.text)
            errors = validate_repaired_table(cleaned)
            cost = self._cost(provider, response.usage)
            total_usage = total_usage + response.usage
            total_cost += cost

            attempts.append(
                RepairAttempt(
                    attempt_number=attempt_number,
                    provider=provider.name,
                    prompt=prompt,
                    raw_response=response.text,
                    cleaned_html=cleaned,
                    validation_errors=errors,
                    usage=response.usage,
                    cost_brl=cost,
                )
            )

            if not errors:
                return self._result(
                    issue_id, broken_html, context, attempts, total_usage, total_cost, provider_used, repaired=cleaned
                )

            logger.warning("[%s] Validation failed (attempt %d): %s", issue_id, attempt_number, "; ".join(errors))
            if attempt_number < self.max_attempts:
                prompt = build_retry_prompt(cleaned, errors, target_cols, broken_html)

        return self._result(
            issue_id,
            broken_html,
            context,
            attempts,
            total_usage,
            total_cost,
            provider_used,
            error=f"Validation failed after {self.max_attempts} attempts.",
        )

    @staticmethod
    def _result(
        issue_id: str,
        broken_html: str,
        context: RepairContext,
        attempts: list[RepairAttempt],
        usage: TokenUsage,
        cost: float,
        provider: str | None,
        repaired: str | None = None,
        error: str | None = None,
    ) -> RepairResult:
        success = repaired is not None
        return RepairResult(
            issue_id=issue_id,
            original_html=broken_html,
            repaired_html=repaired or "",
            success=success,
            error=error,
            provider=provider,
            usage=usage,
            cost_brl=cost,
            log=RepairLog(
                issue_id=issue_id,
                qid=context.qid,
                field=context.field,
                attempts=attempts,
                final_result="success" if success else "failed",
                total_cost_brl=cost,
            ),
        )
