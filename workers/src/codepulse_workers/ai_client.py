"""Client for the external reasoning service (OpenAI-compatible chat API).

``analyze`` either returns a non-empty narrative or raises
``AIAnalysisUnavailable``. Timeouts, transport errors, 429 and 5xx responses
are retried with exponential backoff; everything else fails immediately.
Total latency is bounded by ``timeout * (1 + max_retries)`` plus the backoff
sleeps.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Any

import httpx

from .aggregation import UserCodingAggregate
from .config import AISettings

logger = logging.getLogger(__name__)

UNAVAILABLE_MARKER = "AI analysis temporarily unavailable"
SYSTEM_PROMPT = "You are an expert coding mentor; give actionable coding insights."

_RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class AIAnalysisUnavailable(Exception):
    def __init__(self, message: str, *, reason: str, attempts: int = 0) -> None:
        super().__init__(message)
        self.reason = reason
        self.attempts = attempts


class _RetryableCallError(Exception):
    pass


def _format_samples(samples: Sequence[str], *, limit: int, max_chars: int) -> str:
    recent = list(samples)[-limit:] if limit > 0 else []
    if not recent:
        return "  (no code captured)\n"
    chunks: list[str] = []
    for index, sample in enumerate(recent, start=1):
        body = sample if len(sample) <= max_chars else sample[:max_chars] + "\n... [truncated]"
        chunks.append(f"  Sample {index}:\n{body or '(empty)'}\n")
    return "".join(chunks)


def build_analysis_prompt(
    aggregates: Sequence[UserCodingAggregate],
    *,
    max_code_samples: int = 5,
    max_code_sample_chars: int = 4000,
) -> str:
    problems: list[str] = []
    for data in aggregates:
        problems.append(
            f"Problem Title: {data.problem_title}"
            f" | Attempts (runs/submits): {data.total_runs}/{data.total_submits}"
            f" | Languages: {', '.join(data.languages_used) or 'unknown'}"
            f" | Most Used: {data.most_used_language}\n"
            f"Recent Code Samples:\n"
            + _format_samples(
                data.recent_code_samples,
                limit=max_code_samples,
                max_chars=max_code_sample_chars,
            )
        )

    first = aggregates[0] if aggregates else None
    window = first.analysis_period_days if first else 0
    categories = ", ".join(
        f"{name} ({count})" for name, count in (first.problem_categories.items() if first else ())
    )
    return (
        "You are a developer cognitive and session analyzer.\n\n"
        f"The developer attempted {first.total_problems if first else 0} problem(s) in the "
        f"last {window} days. Problem categories: {categories or 'none'}.\n\n"
        "Per-problem activity:\n\n"
        + "\n".join(problems)
        + "\n"
        "Analyze how the developer approaches problems: brute force versus optimized "
        "starts, when edge cases get handled, debugging and refactoring habits, and "
        "strategy changes between attempts. Tie every observation to evidence in the "
        "code and the run/submit pattern.\n\n"
        "Answer in markdown using exactly this layout:\n\n"
        "<one paragraph summary>\n\n"
        "Initial Approach Rating: <1-5>/5\n"
        "Code Quality Score: <1-5>/5\n\n"
        "### Problem-Solving Style\n<paragraph>\n\n"
        "### Strengths\n<comma separated list>\n\n"
        "### Areas for Improvement\n<comma separated list>\n\n"
        "### Recommendations\n- <focus area>\n\n"
        "### Next Steps\n- <step>\n\n"
        "### Resources\n- <resource>\n\n"
        "### Timeline\n<one line>\n"
    )


def _extract_content(body: Any) -> str:
    try:
        content = body["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as exc:
        raise AIAnalysisUnavailable(
            "AI response missing choices[0].message.content", reason="malformed_response"
        ) from exc
    return content if isinstance(content, str) else ""


class AIAnalysisClient:
    def __init__(self, settings: AISettings, *, client: httpx.AsyncClient | None = None) -> None:
        self.settings = settings
        self._client = client or httpx.AsyncClient(
            base_url=settings.base_url.rstrip("/"),
            timeout=settings.timeout_seconds,
        )
        logger.info("AI analysis client initialized with model %s", settings.model)

    @property
    def model(self) -> str:
        return self.settings.model

    async def close(self) -> None:
        await self._client.aclose()

    async def complete(
        self,
        prompt: str,
        *,
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> str:
        """One chat-completion round trip, no retries."""
        response = await self._client.post(
            "/chat/completions",
            headers={
                "Authorization": f"Bearer {self.settings.api_key}",
                "Content-Type": "application/json",
            },
            json={
                "model": model,
                "messages": [
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                "max_tokens": max_tokens,
                "temperature": temperature,
            },
        )
        if response.status_code in _RETRYABLE_STATUS:
            raise _RetryableCallError(f"AI service returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise AIAnalysisUnavailable(
                f"AI service returned HTTP {response.status_code}", reason="http_error"
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise AIAnalysisUnavailable(
                "AI response was not valid JSON", reason="malformed_response"
            ) from exc
        return _extract_content(body)

    async def _complete_with_retry(self, prompt: str) -> tuple[str, int]:
        settings = self.settings
        attempts = 1 + max(0, settings.max_retries)
        last_error: Exception | None = None
        for attempt in range(attempts):
            if attempt:
                delay = settings.backoff_seconds * 2 ** (attempt - 1)
                logger.info(
                    "Retrying AI call in %.2fs (attempt=%d)",
                    delay,
                    attempt + 1,
                    extra={"codepulse_attempt": attempt + 1},
                )
                await asyncio.sleep(delay)
            try:
                async with asyncio.timeout(settings.timeout_seconds):
                    text = await self.complete(
                        prompt,
                        model=settings.model,
                        max_tokens=settings.max_tokens,
                        temperature=settings.temperature,
                    )
                return text, attempt + 1
            except AIAnalysisUnavailable as exc:
                exc.attempts = attempt + 1
                raise
            except (TimeoutError, httpx.TimeoutException) as exc:
                last_error = exc
                logger.warning("AI call timed out (attempt=%d)", attempt + 1)
            except (httpx.TransportError, _RetryableCallError) as exc:
                last_error = exc
                logger.warning("AI call failed (attempt=%d): %s", attempt + 1, exc)
        raise AIAnalysisUnavailable(
            f"AI service unavailable after {attempts} attempts: {last_error}",
            reason="retries_exhausted",
            attempts=attempts,
        )

    async def analyze(self, aggregates: Sequence[UserCodingAggregate]) -> str:
        if not aggregates:
            raise AIAnalysisUnavailable("nothing to analyze", reason="no_input")
        if not self.settings.api_key:
            raise AIAnalysisUnavailable("AI API key not configured", reason="not_configured")

        user_id = aggregates[0].user_id
        prompt = build_analysis_prompt(
            aggregates,
            max_code_samples=self.settings.max_code_samples,
            max_code_sample_chars=self.settings.max_code_sample_chars,
        )
        logger.info("Requesting AI analysis for user %s", user_id)
        logger.debug("AI prompt:\n%s", prompt)

        text, attempts = await self._complete_with_retry(prompt)
        if not text or not text.strip():
            raise AIAnalysisUnavailable("AI returned an empty response", reason="empty", attempts=attempts)
        if UNAVAILABLE_MARKER.lower() in text.lower():
            raise AIAnalysisUnavailable(
                "AI returned the unavailable marker", reason="marker", attempts=attempts
            )

        logger.info("AI analysis succeeded for user %s after %d attempt(s)", user_id, attempts)
        return text

    async def is_healthy(self) -> bool:
        """Short ping; never raises."""
        if not self.settings.api_key:
            return False
        try:
            async with asyncio.timeout(5):
                text = await self.complete(
                    "Hello, respond with 'OK'",
                    model=self.settings.model,
                    max_tokens=5,
                    temperature=0.0,
                )
            return bool(text.strip())
        except Exception as exc:
            logger.debug("AI health check failed: %s", exc)
            return False
