"""LLM integration for segment translation and review.

The workflow only depends on the two capabilities declared here
(:class:`TranslationProvider` and :class:`ReviewProvider`). :class:`LLMService`
implements both on top of the OpenAI, Anthropic and Google clients, and every
review payload is mapped through :func:`map_review_payload` before it reaches
a segment.
"""
from __future__ import annotations

import json
import os
import time
from typing import Any, Dict, List, Optional, Protocol, Tuple, Type, TypeVar
from uuid import uuid4

import anthropic
import google.generativeai as genai
import structlog
from openai import AsyncOpenAI

from .errors import ProviderError
from .models import (
    Issue,
    IssuePosition,
    IssueSeverity,
    IssueStatus,
    IssueType,
    ProviderReview,
    ProviderTranslation,
    ReviewScore,
    ReviewScoreType,
    TranslationContext,
)

logger = structlog.get_logger(__name__)

EnumT = TypeVar("EnumT")


class TranslationProvider(Protocol):
    async def translate(
        self,
        source_text: str,
        source_lang: str,
        target_lang: str,
        context: TranslationContext,
    ) -> ProviderTranslation:
        ...


class ReviewProvider(Protocol):
    async def review(
        self,
        source_text: str,
        translated_text: str,
        context: TranslationContext,
    ) -> ProviderReview:
        ...


# Boundary mapping --------------------------------------------------------


def _coerce_enum(enum_cls: Type[EnumT], value: Any, default: Optional[EnumT]) -> Optional[EnumT]:
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        try:
            return enum_cls(value.strip().lower())
        except ValueError:
            return default
    return default


def _coerce_position(value: Any) -> Optional[IssuePosition]:
    if not isinstance(value, dict):
        return None
    start, end = value.get("start"), value.get("end")
    if not isinstance(start, int) or not isinstance(end, int) or start < 0 or end < start:
        return None
    return IssuePosition(start=start, end=end)


def map_review_issue(raw: Any) -> Optional[Issue]:
    """Map one provider finding onto the issue shape, or ``None`` if unusable."""

    if isinstance(raw, str):
        raw = {"description": raw}
    if not isinstance(raw, dict):
        return None
    description = raw.get("description") or raw.get("message")
    if not isinstance(description, str) or not description.strip():
        return None
    status = _coerce_enum(IssueStatus, raw.get("status"), IssueStatus.OPEN)
    # Provider output never carries a resolution record
    if status in (IssueStatus.RESOLVED, IssueStatus.REJECTED):
        status = IssueStatus.OPEN
    suggestion = raw.get("suggestion")
    return Issue(
        id=str(uuid4()),
        type=_coerce_enum(IssueType, raw.get("type"), IssueType.OTHER),
        severity=_coerce_enum(IssueSeverity, raw.get("severity"), IssueSeverity.MEDIUM),
        description=description.strip(),
        position=_coerce_position(raw.get("position")),
        suggestion=suggestion if isinstance(suggestion, str) and suggestion else None,
        status=status,
        ai_generated=True,
    )


def map_review_score(raw: Any) -> Optional[ReviewScore]:
    if not isinstance(raw, dict):
        return None
    score_type = _coerce_enum(ReviewScoreType, raw.get("type"), None)
    value = raw.get("score")
    if score_type is None or isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    details = raw.get("details")
    return ReviewScore(
        type=score_type,
        score=max(0.0, min(100.0, float(value))),
        details=details if isinstance(details, str) else None,
    )


def map_review_payload(
    payload: Dict[str, Any],
    model: str,
    token_count: int = 0,
    latency_ms: float = 0.0,
) -> ProviderReview:
    """Validate a raw review payload and apply defaults for missing fields."""

    if not isinstance(payload, dict):
        raise ProviderError("Review response is not a JSON object")
    raw_issues = payload.get("issues") or []
    raw_scores = payload.get("scores") or []
    issues = [issue for issue in (map_review_issue(item) for item in raw_issues) if issue]
    if len(issues) != len(raw_issues):
        logger.warning("Dropped malformed review issues", received=len(raw_issues), kept=len(issues))
    scores = [score for score in (map_review_score(item) for item in raw_scores) if score]
    suggested = payload.get("suggestedTranslation") or payload.get("suggested_translation")
    return ProviderReview(
        issues=issues,
        suggested_translation=suggested if isinstance(suggested, str) else None,
        scores=scores,
        model=model,
        token_count=token_count,
        latency_ms=latency_ms,
    )


def _parse_json_response(content: str) -> Dict[str, Any]:
    text = content.strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.lower().startswith("json"):
            text = text[4:]
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise ProviderError(f"Review response is not valid JSON: {exc}") from exc


# Vendor-backed service -------------------------------------------------------


class LLMService:
    """Translation and review capabilities backed by hosted LLMs."""

    DEFAULT_MODELS = {
        "openai": os.getenv("TMS_OPENAI_MODEL", "gpt-4"),
        "anthropic": os.getenv("TMS_ANTHROPIC_MODEL", "claude-3-sonnet-20240229"),
        "google": os.getenv("TMS_GOOGLE_MODEL", "gemini-pro"),
    }

    def __init__(self, default_provider: Optional[str] = None) -> None:
        self.default_provider = default_provider or os.getenv("TMS_AI_PROVIDER", "openai")
        self.openai_client = self._init_openai_client()
        self.anthropic_client = self._init_anthropic_client()
        self.google_configured = self._init_google()

    def _init_openai_client(self) -> Optional[AsyncOpenAI]:
        """Return an OpenAI client when credentials are available."""

        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            return None
        return AsyncOpenAI(api_key=api_key)

    def _init_anthropic_client(self) -> Optional[anthropic.AsyncAnthropic]:
        """Return an Anthropic client when credentials are available."""

        api_key = os.getenv("ANTHROPIC_API_KEY")
        if not api_key:
            return None
        return anthropic.AsyncAnthropic(api_key=api_key)

    def _init_google(self) -> bool:
        api_key = os.getenv("GOOGLE_API_KEY")
        if not api_key:
            return False
        genai.configure(api_key=api_key)
        return True

    async def translate(
        self,
        source_text: str,
        source_lang: str,
        target_lang: str,
        context: TranslationContext,
    ) -> ProviderTranslation:
        """Translate one segment; raises :class:`ProviderError` on any failure."""

        prompt = self._create_translation_prompt(source_text, source_lang, target_lang, context)
        started = time.monotonic()
        text, model, tokens = await self._complete(context.ai_provider, context.ai_model, prompt, 0.3)
        if not text.strip():
            raise ProviderError("Provider returned an empty translation", provider=context.ai_provider)
        return ProviderTranslation(
            translated_text=text.strip(),
            model=model,
            token_count=tokens,
            latency_ms=(time.monotonic() - started) * 1000,
        )

    async def review(
        self,
        source_text: str,
        translated_text: str,
        context: TranslationContext,
    ) -> ProviderReview:
        """Review a translation and return mapped issues, suggestion and scores."""

        prompt = self._create_review_prompt(source_text, translated_text, context)
        started = time.monotonic()
        content, model, tokens = await self._complete(context.ai_provider, context.ai_model, prompt, 0.1)
        payload = _parse_json_response(content)
        return map_review_payload(
            payload,
            model=model,
            token_count=tokens,
            latency_ms=(time.monotonic() - started) * 1000,
        )

    async def _complete(
        self,
        provider: Optional[str],
        model: Optional[str],
        prompt: str,
        temperature: float,
    ) -> Tuple[str, str, int]:
        provider = (provider or self.default_provider).lower()
        if provider not in self.DEFAULT_MODELS:
            raise ProviderError(f"Unsupported provider: {provider}", provider=provider)
        model = model or self.DEFAULT_MODELS[provider]
        try:
            if provider == "openai":
                return await self._complete_with_openai(model, prompt, temperature)
            if provider == "anthropic":
                return await self._complete_with_anthropic(model, prompt, temperature)
            return await self._complete_with_google(model, prompt)
        except ProviderError:
            raise
        except Exception as exc:
            logger.error("LLM call failed", provider=provider, model=model, error=str(exc))
            raise ProviderError(f"{provider} request failed: {exc}", provider=provider) from exc

    async def _complete_with_openai(self, model: str, prompt: str, temperature: float) -> Tuple[str, str, int]:
        if not self.openai_client:
            raise ProviderError("OpenAI client is not configured", provider="openai")
        response = await self.openai_client.chat.completions.create(
            model=model,
            messages=[{"role": "user", "content": prompt}],
            temperature=temperature,
        )
        usage = getattr(response, "usage", None)
        tokens = getattr(usage, "total_tokens", 0) or 0
        return response.choices[0].message.content or "", model, tokens

    async def _complete_with_anthropic(self, model: str, prompt: str, temperature: float) -> Tuple[str, str, int]:
        if not self.anthropic_client:
            raise ProviderError("Anthropic client is not configured", provider="anthropic")
        response = await self.anthropic_client.messages.create(
            model=model,
            max_tokens=2000,
            temperature=temperature,
            messages=[{"role": "user", "content": prompt}],
        )
        usage = getattr(response, "usage", None)
        tokens = (getattr(usage, "input_tokens", 0) or 0) + (getattr(usage, "output_tokens", 0) or 0)
        return response.content[0].text, model, tokens

    async def _complete_with_google(self, model: str, prompt: str) -> Tuple[str, str, int]:
        if not self.google_configured:
            raise ProviderError("Google Generative AI is not configured", provider="google")
        response = await genai.GenerativeModel(model).generate_content_async(prompt)
        usage = getattr(response, "usage_metadata", None)
        tokens = getattr(usage, "total_token_count", 0) or 0
        return response.text, model, tokens

    def _create_translation_prompt(
        self,
        text: str,
        source_lang: str,
        target_lang: str,
        context: TranslationContext,
    ) -> str:
        """Create a translation prompt."""

        base_prompt = f"Translate the following text from {source_lang} to {target_lang}:"
        if context.domain:
            base_prompt += f"\n\nDomain: {context.domain}"
        base_prompt += self._terminology_block(context)
        if context.preceding or context.following:
            base_prompt += "\n\nSurrounding text (do not translate):"
            for line in context.preceding:
                base_prompt += f"\n< {line}"
            for line in context.following:
                base_prompt += f"\n> {line}"
        base_prompt += f"\n\nText: {text}"
        base_prompt += "\n\nProvide only the translation, maintaining the original tone and style."
        return base_prompt

    def _create_review_prompt(
        self,
        source_text: str,
        translated_text: str,
        context: TranslationContext,
    ) -> str:
        issue_types = "|".join(item.value for item in IssueType)
        severities = "|".join(item.value for item in IssueSeverity)
        score_types = "|".join(item.value for item in ReviewScoreType)
        return (
            "Review this translation and report concrete problems.\n\n"
            f"Source: {source_text}\n"
            f"Translation: {translated_text}"
            f"{self._terminology_block(context)}\n\n"
            "Respond in JSON format:\n"
            "{\n"
            '  "issues": [{"type": "<' + issue_types + '>", "severity": "<' + severities + '>",'
            ' "description": "...", "position": {"start": 0, "end": 0}, "suggestion": "..."}],\n'
            '  "suggestedTranslation": "...",\n'
            '  "scores": [{"type": "<' + score_types + '>", "score": <0-100>, "details": "..."}]\n'
            "}"
        )

    @staticmethod
    def _terminology_block(context: TranslationContext) -> str:
        if not context.terminology:
            return ""
        lines: List[str] = [f"{term.source} => {term.target}" for term in context.terminology]
        return "\n\nRequired terminology:\n" + "\n".join(lines)
