"""Translation memory and term base services."""
from __future__ import annotations

import os
from datetime import datetime
from difflib import SequenceMatcher
from typing import List, Optional
from uuid import uuid4

import structlog

from .errors import ValidationError
from .models import TermEntry, TMMatch, TranslationMemoryEntry
from .state import State

logger = structlog.get_logger(__name__)

EXACT_MATCH_SCORE = 100.0


class TranslationMemoryService:
    """Exact and fuzzy lookup of prior translations, scoped by language pair and project."""

    def __init__(
        self,
        state: State,
        fuzzy_threshold: Optional[float] = None,
        max_matches: int = 5,
    ) -> None:
        self._state = state
        if fuzzy_threshold is None:
            fuzzy_threshold = float(os.getenv("TMS_TM_FUZZY_THRESHOLD", "75"))
        self._fuzzy_threshold = fuzzy_threshold
        self._max_matches = max_matches

    def add_entry(
        self,
        source_language: str,
        target_language: str,
        source_text: str,
        target_text: str,
        project_id: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> TranslationMemoryEntry:
        """Insert a new pair or refresh the existing one for the same source text."""

        if not source_language or not target_language or not source_text or not target_text:
            raise ValidationError(
                "source_language, target_language, source_text and target_text are required"
            )
        now = datetime.utcnow()
        existing = self._find_exact(source_language, target_language, source_text, project_id)
        if existing is not None:
            existing.target_text = target_text
            existing.usage_count += 1
            existing.last_used_at = now
            logger.debug("Translation memory entry refreshed", entry_id=existing.id, project_id=project_id)
            return self._state.update_translation_memory_entry(existing)

        entry = TranslationMemoryEntry(
            id=str(uuid4()),
            project_id=project_id,
            source_language=source_language,
            target_language=target_language,
            source_text=source_text,
            target_text=target_text,
            usage_count=1,
            created_by=created_by,
            created_at=now,
            last_used_at=now,
        )
        logger.info("Translation memory entry added", entry_id=entry.id, project_id=project_id)
        return self._state.add_translation_memory_entry(entry)

    def find_matches(
        self,
        source_text: str,
        source_language: str,
        target_language: str,
        project_id: Optional[str] = None,
    ) -> List[TMMatch]:
        """Return matches ordered by score, exact (100) first. No match is not an error."""

        entries = self._scoped_entries(source_language, target_language, project_id)
        if not entries or not source_text:
            return []

        matches: List[TMMatch] = []
        exact = [entry for entry in entries if entry.source_text == source_text]
        exact.sort(key=lambda entry: entry.last_used_at or entry.created_at, reverse=True)
        for entry in exact:
            matches.append(
                TMMatch(
                    entry_id=entry.id,
                    source_text=entry.source_text,
                    target_text=entry.target_text,
                    score=EXACT_MATCH_SCORE,
                )
            )
        if exact:
            self._record_usage(exact[0])

        fuzzy: List[TMMatch] = []
        for entry in entries:
            if entry.source_text == source_text:
                continue
            ratio = SequenceMatcher(a=entry.source_text, b=source_text).ratio() * 100
            # Only identical strings count as authoritative
            score = min(round(ratio, 2), 99.99)
            if score >= self._fuzzy_threshold:
                fuzzy.append(
                    TMMatch(
                        entry_id=entry.id,
                        source_text=entry.source_text,
                        target_text=entry.target_text,
                        score=score,
                    )
                )
        fuzzy.sort(key=lambda match: match.score, reverse=True)
        matches.extend(fuzzy)
        return matches[: self._max_matches]

    def list_entries(self, source_language: str, target_language: str) -> List[TranslationMemoryEntry]:
        return self._state.list_translation_memory(source_language, target_language)

    def _scoped_entries(
        self, source_language: str, target_language: str, project_id: Optional[str]
    ) -> List[TranslationMemoryEntry]:
        entries = self._state.list_translation_memory(source_language, target_language)
        if project_id is None:
            return entries
        return [entry for entry in entries if entry.project_id == project_id]

    def _find_exact(
        self,
        source_language: str,
        target_language: str,
        source_text: str,
        project_id: Optional[str],
    ) -> Optional[TranslationMemoryEntry]:
        for entry in self._state.list_translation_memory(source_language, target_language):
            if entry.source_text == source_text and entry.project_id == project_id:
                return entry
        return None

    def _record_usage(self, entry: TranslationMemoryEntry) -> None:
        entry.usage_count += 1
        entry.last_used_at = datetime.utcnow()
        try:
            self._state.update_translation_memory_entry(entry)
        except KeyError:
            logger.warning("Translation memory entry vanished before usage update", entry_id=entry.id)


class TermBaseService:
    """Project-scoped terminology used as translation and review constraints."""

    def __init__(self, state: State) -> None:
        self._state = state

    def add_entry(
        self,
        project_id: str,
        source: str,
        target: str,
        notes: Optional[str] = None,
    ) -> TermEntry:
        if not source or not target:
            raise ValidationError("Both source and target terms are required")
        entry = TermEntry(
            id=str(uuid4()),
            project_id=project_id,
            source=source,
            target=target,
            notes=notes,
        )
        return self._state.add_term_entry(entry)

    def lookup(self, project_id: str) -> List[TermEntry]:
        return self._state.list_term_entries(project_id)

    def lookup_in_text(self, project_id: str, source_text: str) -> List[TermEntry]:
        lowered = source_text.lower()
        return [entry for entry in self.lookup(project_id) if entry.source.lower() in lowered]
