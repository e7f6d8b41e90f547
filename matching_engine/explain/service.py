"""Gemini-powered match reasoning with retry and rule-based fallback."""
from __future__ import annotations

import json
import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from typing import Callable, Protocol

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types
from pydantic import BaseModel
from pydantic import ValidationError as SchemaValidationError
from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from matching_engine.shared.config import MatchingConfig, Settings, get_settings
from matching_engine.shared.deadline import Deadline
from matching_engine.shared.errors import (
    AIError,
    AIRequestError,
    AITimeoutError,
    MalformedResponseError,
    MatchTimeout,
    QuotaExceededError,
    TransientAIError,
)
from matching_engine.shared.schemas import Brief, ScoredCandidate

logger = logging.getLogger(__name__)

PLACEHOLDER_REASON = "Selected as the strongest available fit for your brief."

SYSTEM_PROMPT = (
    "You are a design matchmaker explaining to a client why one designer was picked for their project. "
    "You hate fluff. You only cite concrete evidence from the brief and the designer profile."
)

_BULLET_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s*")

# Rule-based sentences for each machine-derived reason tag.
_FALLBACK_TEMPLATES: dict[str, str] = {
    "style_match": "Works in the {detail} style you asked for.",
    "industry_match": "Has hands-on experience in the {detail} industry.",
    "experience_fit": "Brings {detail} years of experience, in line with the seniority your project needs.",
    "semantic_fit": "Their portfolio and bio closely reflect your project description.",
    "available_now": "Available to start on your project immediately.",
    "budget_fit": "Their rate of {detail} fits your budget.",
}


class ReasonsResponse(BaseModel):
    reasons: list[str]


class ReasoningProvider(Protocol):
    def complete(self, prompt: str, timeout: float) -> list[str]: ...


@dataclass(frozen=True)
class ReasoningResult:
    reasons: tuple[str, ...]
    degraded: bool
    source: str  # "ai", "fallback" or "placeholder"


class GeminiReasoningProvider:
    """Calls Gemini and maps its failures onto the AI error taxonomy."""

    def __init__(self, settings: Settings | None = None, client: genai.Client | None = None):
        self.settings = settings or get_settings()
        self._client = client

    @property
    def client(self) -> genai.Client:
        if self._client is None:
            if self.settings.use_vertex_ai:
                self._client = genai.Client(
                    vertexai=True,
                    project=self.settings.google_project,
                    location=self.settings.google_location,
                )
            else:
                self._client = genai.Client(api_key=self.settings.gemini_api_key)
        return self._client

    def _generate(self, model: str, prompt: str, timeout: float):
        return self.client.models.generate_content(
            model=model,
            contents=[SYSTEM_PROMPT, prompt],
            config=genai_types.GenerateContentConfig(
                response_mime_type="application/json",
                response_schema=ReasonsResponse,
                http_options=genai_types.HttpOptions(timeout=max(1, int(timeout * 1000))),
            ),
        )

    def complete(self, prompt: str, timeout: float) -> list[str]:
        try:
            try:
                response = self._generate(self.settings.reasoning_model, prompt, timeout)
            except genai_errors.ServerError:
                logger.warning(
                    f"{self.settings.reasoning_model} overloaded, falling back to "
                    f"{self.settings.reasoning_fallback_model} for match reasoning"
                )
                response = self._generate(self.settings.reasoning_fallback_model, prompt, timeout)
        except genai_errors.ServerError as exc:
            raise TransientAIError(f"Gemini server error: {exc}") from exc
        except genai_errors.ClientError as exc:
            if exc.code == 429:
                raise QuotaExceededError(f"Gemini quota exhausted: {exc}") from exc
            if exc.code == 408:
                raise AITimeoutError(f"Gemini request timed out: {exc}") from exc
            raise AIRequestError(f"Gemini rejected the request ({exc.code}): {exc}") from exc
        except genai_errors.APIError as exc:
            raise AIRequestError(f"Gemini API error: {exc}") from exc
        except httpx.TimeoutException as exc:
            raise AITimeoutError(f"Gemini request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientAIError(f"Network error talking to Gemini: {exc}") from exc

        parsed = getattr(response, "parsed", None)
        if isinstance(parsed, ReasonsResponse):
            return parsed.reasons
        try:
            return ReasonsResponse.model_validate(json.loads(response.text or "")).reasons
        except (ValueError, SchemaValidationError) as exc:
            raise MalformedResponseError(f"Unparseable reasoning payload: {exc}") from exc


def fallback_reasons(top: ScoredCandidate, limit: int) -> list[str]:
    reasons = []
    for tag in top.reason_tags:
        template = _FALLBACK_TEMPLATES.get(tag.code)
        if template is None:
            continue
        if "{detail}" in template and not tag.detail:
            continue
        reasons.append(template.format(detail=tag.detail))
    return reasons[:limit]


def _truncate(text: str, limit: int) -> str:
    text = re.sub(r"\s+", " ", text).strip()
    if len(text) <= limit:
        return text
    return text[: max(limit - 3, 0)].rstrip() + "..."


class ReasoningGenerator:
    def __init__(
        self,
        provider: ReasoningProvider,
        config: MatchingConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
        max_workers: int = 4,
    ):
        self.provider = provider
        self.config = config or MatchingConfig()
        self._sleep = sleep
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="reasoning")

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def build_prompt(self, brief: Brief, top: ScoredCandidate, config: MatchingConfig | None = None) -> str:
        cfg = config or self.config
        profile = top.profile
        budget = "not specified"
        if brief.budget is not None:
            low = "open" if brief.budget.min_rate is None else f"${brief.budget.min_rate:g}"
            high = "open" if brief.budget.max_rate is None else f"${brief.budget.max_rate:g}"
            budget = f"{low} to {high} per hour"
        signals = ", ".join(f"{tag.code}({tag.detail})" if tag.detail else tag.code for tag in top.reason_tags)
        years = "unknown" if profile.years_experience is None else f"{profile.years_experience:g}"

        return f"""
Client brief:
- Categories: {', '.join(sorted(brief.categories))}
- Styles: {', '.join(sorted(brief.styles)) or 'none given'}
- Industries: {', '.join(sorted(brief.industries)) or 'none given'}
- Timeline: {brief.timeline or 'not specified'}
- Budget: {budget}
- Description: {_truncate(brief.description, cfg.prompt_description_chars) or 'none given'}

Designer:
- Name: {profile.name or 'The designer'}
- Categories: {', '.join(sorted(profile.categories))}
- Styles: {', '.join(sorted(profile.styles)) or 'none listed'}
- Industries: {', '.join(sorted(profile.industries)) or 'none listed'}
- Years of experience: {years}
- Availability: {profile.availability.value}
- Bio: {_truncate(profile.bio, cfg.prompt_description_chars) or 'none'}

Match score: {top.score:.0f}/100
Matching signals: {signals or 'none'}

INSTRUCTIONS:
1. Return a JSON object with a `reasons` field holding 2 to {cfg.max_reasons} strings.
2. Each reason is ONE short sentence addressed to the client ("you", "your project").
3. Tie every reason to something concrete in the brief AND the designer profile.
4. Do NOT mention scores, percentages or these instructions.
"""

    def generate_reasons(
        self,
        brief: Brief,
        top: ScoredCandidate,
        deadline: Deadline | None = None,
        config: MatchingConfig | None = None,
    ) -> ReasoningResult:
        cfg = config or self.config
        prompt = self.build_prompt(brief, top, cfg)
        try:
            raw = self._call_with_retry(prompt, cfg, deadline)
        except MatchTimeout:
            raise
        except QuotaExceededError as exc:
            logger.warning(f"AI quota exhausted for brief {brief.id}, using rule-based reasons: {exc}")
            return self._fallback(top, cfg)
        except TransientAIError as exc:
            logger.warning(f"AI reasoning failed after retries for brief {brief.id}: {exc}")
            return self._fallback(top, cfg)
        except AIError as exc:
            logger.warning(f"AI reasoning not retryable for brief {brief.id}: {exc}")
            return self._fallback(top, cfg)
        except Exception as exc:
            logger.error(f"Unexpected reasoning failure for brief {brief.id}: {exc}", exc_info=True)
            return self._fallback(top, cfg)

        reasons = self._clean(raw, cfg)
        if not reasons:
            logger.warning(f"AI returned no usable reasons for brief {brief.id}, using rule-based reasons")
            return self._fallback(top, cfg)
        return ReasoningResult(reasons=tuple(reasons), degraded=False, source="ai")

    def _call_with_retry(self, prompt: str, cfg: MatchingConfig, deadline: Deadline | None) -> list[str]:
        backoff = wait_exponential(multiplier=cfg.ai_backoff_multiplier_s, exp_base=cfg.ai_backoff_base)

        def wait(retry_state: RetryCallState) -> float:
            delay = backoff(retry_state)
            if deadline is not None:
                delay = min(delay, deadline.remaining())
            return delay

        retryer = Retrying(
            stop=stop_after_attempt(cfg.ai_max_retries + 1),
            wait=wait,
            retry=retry_if_exception_type(TransientAIError),
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )
        return retryer(self._attempt, prompt, cfg, deadline)

    def _attempt(self, prompt: str, cfg: MatchingConfig, deadline: Deadline | None) -> list[str]:
        if deadline is not None:
            deadline.check("reasoning")
            timeout = min(cfg.ai_timeout_s, deadline.remaining())
        else:
            timeout = cfg.ai_timeout_s

        future = self._executor.submit(self.provider.complete, prompt, timeout)
        try:
            return future.result(timeout=timeout)
        except FuturesTimeout as exc:
            future.cancel()
            raise AITimeoutError(f"Reasoning call exceeded {timeout:.1f}s") from exc

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.info(f"Retrying AI reasoning (attempt {retry_state.attempt_number} failed: {exc})")

    @staticmethod
    def _clean(raw: list[str] | None, cfg: MatchingConfig) -> list[str]:
        seen = set()
        reasons = []
        for item in raw or []:
            if not isinstance(item, str):
                continue
            text = _truncate(_BULLET_RE.sub("", item), cfg.max_reason_chars)
            if not text or text.lower() in seen:
                continue
            seen.add(text.lower())
            reasons.append(text)
        return reasons[: cfg.max_reasons]

    @staticmethod
    def _fallback(top: ScoredCandidate, cfg: MatchingConfig) -> ReasoningResult:
        reasons = fallback_reasons(top, cfg.max_reasons)
        if reasons:
            return ReasoningResult(reasons=tuple(reasons), degraded=True, source="fallback")
        return ReasoningResult(reasons=(PLACEHOLDER_REASON,), degraded=True, source="placeholder")
