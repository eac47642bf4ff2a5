"""Pytest configuration and shared fixtures for the workflow core tests."""
from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import List, Optional, Set

import pytest

# Ensure the repository root is on ``sys.path`` so that ``tms_workflow`` can be
# imported when the test suite is executed without installing the package.
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tms_workflow.bootstrap import build_services, register_file, register_project  # noqa: E402
from tms_workflow.errors import ProviderError  # noqa: E402
from tms_workflow.llm_service import map_review_payload  # noqa: E402
from tms_workflow.models import FileCreate, ProjectCreate, ProviderTranslation  # noqa: E402

MANAGER = "pm"
REVIEWER = "rev"
TRANSLATOR = "tr"
OUTSIDER = "guest"


class FakeTranslator:
    """Deterministic translation capability that records every call."""

    def __init__(self) -> None:
        self.calls: List[str] = []
        self.contexts = []
        self.fail_on: Set[str] = set()
        self.gate: Optional[asyncio.Event] = None
        self.in_flight = 0
        self.max_in_flight = 0

    async def translate(self, source_text, source_lang, target_lang, context) -> ProviderTranslation:
        self.calls.append(source_text)
        self.contexts.append(context)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
            if source_text in self.fail_on:
                raise ProviderError(f"fake outage for {source_text!r}", provider="fake")
            return ProviderTranslation(
                translated_text=f"[{target_lang}] {source_text}",
                model="fake-mt",
                token_count=7,
                latency_ms=1.5,
            )
        finally:
            self.in_flight -= 1


class FakeReviewer:
    """Review capability returning a configurable raw payload."""

    def __init__(self) -> None:
        self.payload = {"issues": [], "scores": []}
        self.error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.calls: List[str] = []

    async def review(self, source_text, translated_text, context):
        self.calls.append(translated_text)
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return map_review_payload(self.payload, model="fake-review", token_count=11, latency_ms=2.0)


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def translator() -> FakeTranslator:
    return FakeTranslator()


@pytest.fixture
def reviewer() -> FakeReviewer:
    return FakeReviewer()


@pytest.fixture
def events() -> list:
    return []


@pytest.fixture
def services(translator, reviewer, events):
    async def record(event, segment):
        events.append((event, segment.id, segment.status))

    return build_services(translation_provider=translator, review_provider=reviewer, notifier=record)


@pytest.fixture
def project(services):
    return register_project(
        services,
        ProjectCreate(
            id="proj-1",
            name="Product docs",
            source_language="en",
            target_language="fr",
            manager_id=MANAGER,
            reviewer_ids=[REVIEWER],
            translator_ids=[TRANSLATOR],
        ),
    )


@pytest.fixture
def make_file(services, project):
    def _make(texts, name="guide.txt"):
        return register_file(services, project.id, FileCreate(name=name, segments=list(texts)), MANAGER)

    return _make
