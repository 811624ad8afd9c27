"""AI provider clients used by the repair protocol.

Two providers are wired in:

- ``GeminiProvider``: the primary model, a single key through ``google-genai``.
- ``OpenRouterPool``: the fallback pool, an OpenAI-compatible endpoint called
  with keys taken round-robin from a ``KeyPool``.  A key rejected for
  authorization or payment reasons is rotated out for the next one.

Both expose ``name`` and ``async generate(prompt) -> ProviderResponse`` so the
protocol (and the tests) can swap them freely.
"""

import logging
import threading
from typing import Protocol

import openai
from google import genai
from openai import AsyncOpenAI
from tenacity import AsyncRetrying, RetryCallState, RetryError, retry_if_exception_type, stop_after_attempt, wait_fixed

from tablerepair.config import Settings
from tablerepair.errors import KeyExhaustedError, NoKeysConfiguredError, ProviderError
from tablerepair.repair.schema import ProviderResponse, TokenUsage

logger = logging.getLogger(__name__)

PRIMARY_PROVIDER = "google"
POOL_PROVIDER = "openrouter"

# HTTP statuses meaning "this key is spent or invalid"
KEY_EXHAUSTED_STATUSES = (401, 402)

# Attribution headers expected by OpenRouter
POOL_HEADERS = {"HTTP-Referer": "https://tablerepair.ai", "X-Title": "TableRepair AI"}


class Provider(Protocol):
    name: str

    async def generate(self, prompt: str) -> ProviderResponse: ...


def mask_key(key: str) -> str:
    """Return the first 8 characters of a key for logging."""
    return f"{key[:8]}..."


# ─── Key Pool ────────────────────────────────────────────────────────────────


class KeyPool:
    """Round-robin key selection shared by every worker in the process.

    The cursor is advanced under a lock so two concurrent callers never read
    the same position; using one key concurrently is still allowed.
    """

    def __init__(self, keys: list[str]):
        self._keys = [k for k in keys if k]
        self._cursor = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._keys)

    def next_key(self) -> str:
        if not self._keys:
            raise NoKeysConfiguredError("No pool keys configured. Set OPENROUTER_KEYS in .env")
        with self._lock:
            key = self._keys[self._cursor]
            self._cursor = (self._cursor + 1) % len(self._keys)
        return key


# ─── Primary Provider ────────────────────────────────────────────────────────


class GeminiProvider:
    """Single-key primary provider backed by the google-genai async client."""

    name = PRIMARY_PROVIDER

    def __init__(self, api_key: str, model: str):
        self.model = model
        self._client = genai.Client(api_key=api_key)

    async def generate(self, prompt: str) -> ProviderResponse:
        try:
            response = await self._client.aio.models.generate_content(model=self.model, contents=prompt)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            raise ProviderError(f"Primary provider call failed: {exc}") from exc

        meta = getattr(response, "usage_metadata", None)
        prompt_tokens = getattr(meta, "prompt_token_count", None) or 0
        completion_tokens = getattr(meta, "candidates_token_count", None) or 0
        total_tokens = getattr(meta, "total_token_count", None) or prompt_tokens + completion_tokens
        return ProviderResponse(
            text=response.text or "",
            usage=TokenUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=total_tokens,
            ),
        )


# ─── Rotating Pool ───────────────────────────────────────────────────────────


def classify_pool_error(exc: Exception, key: str) -> ProviderError:
    """Map an OpenAI-SDK error to ``KeyExhaustedError`` (rotate) or ``ProviderError`` (abort)."""
    status = getattr(exc, "status_code", None)
    if isinstance(exc, openai.AuthenticationError) or status in KEY_EXHAUSTED_STATUSES:
        return KeyExhaustedError(f"Key {mask_key(key)} exhausted (HTTP {status})")
    if isinstance(exc, openai.APIStatusError):
        return ProviderError(f"Pool API error (HTTP {status}): {exc.message}")
    return ProviderError(f"Pool call failed: {exc}")


def _log_rotation(retry_state: RetryCallState) -> None:
    logger.warning("%s. Rotating.", retry_state.outcome.exception())


class OpenRouterPool:
    """Fallback provider: OpenAI-compatible endpoint with rotating keys."""

    name = POOL_PROVIDER

    def __init__(
        self,
        key_pool: KeyPool,
        model: str,
        base_url: str,
        max_tokens: int = 32000,
        max_key_rotations: int = 3,
        key_rotation_delay_s: float = 0.5,
    ):
        self.key_pool = key_pool
        self.model = model
        self.base_url = base_url
        self.max_tokens = max_tokens
        self.max_key_rotations = max_key_rotations
        self.key_rotation_delay_s = key_rotation_delay_s
        self._clients: dict[str, AsyncOpenAI] = {}

    def _client_for(self, key: str) -> AsyncOpenAI:
        client = self._clients.get(key)
        if client is None:
            # Retries are handled here and by the protocol, never inside the SDK
            client = AsyncOpenAI(api_key=key, base_url=self.base_url, default_headers=POOL_HEADERS, max_retries=0)
            self._clients[key] = client
        return client

    async def _complete(self, key: str, prompt: str) -> ProviderResponse:
        """One chat-completion call with one key."""
        try:
            response = await self._client_for(key).chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=self.max_tokens,
                extra_body={"reasoning": {"enabled": True, "effort": "low"}},
            )
        except openai.OpenAIError as exc:
            raise classify_pool_error(exc, key) from exc

        text = response.choices[0].message.content if response.choices else ""
        usage = response.usage
        return ProviderResponse(
            text=text or "",
            usage=TokenUsage(
                prompt_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                completion_tokens=getattr(usage, "completion_tokens", 0) or 0,
                total_tokens=getattr(usage, "total_tokens", 0) or 0,
            ),
        )

    async def generate(self, prompt: str) -> ProviderResponse:
        """Call the pool, rotating keys on exhaustion up to ``max_key_rotations`` times.

        Any error other than key exhaustion propagates immediately.
        """
        rotations = AsyncRetrying(
            retry=retry_if_exception_type(KeyExhaustedError),
            stop=stop_after_attempt(self.max_key_rotations),
            wait=wait_fixed(self.key_rotation_delay_s),
            before_sleep=_log_rotation,
        )
        try:
            async for attempt in rotations:
                with attempt:
                    return await self._complete(self.key_pool.next_key(), prompt)
        except RetryError as exc:
            raise ProviderError(
                f"All pool keys failed after {self.max_key_rotations} rotations."
            ) from exc.last_attempt.exception()
        raise ProviderError("Pool rotation ended without a result.")

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()


# ─── Factory ─────────────────────────────────────────────────────────────────


def build_providers(settings: Settings) -> tuple[GeminiProvider | None, OpenRouterPool]:
    """Build (primary, pool) from settings; primary is None without a Gemini key."""
    primary = None
    if settings.gemini_api_key:
        primary = GeminiProvider(settings.gemini_api_key, settings.primary_model)
    else:
        logger.info("GEMINI_API_KEY not set; hybrid repairs will use the pool only")

    pool = OpenRouterPool(
        KeyPool(settings.openrouter_keys),
        model=settings.pool_model,
        base_url=settings.openrouter_base_url,
        max_tokens=settings.pool_max_tokens,
        max_key_rotations=settings.max_key_rotations,
        key_rotation_delay_s=settings.key_rotation_delay_s,
    )
    return primary, pool
