"""In-memory store for projects, files, segments, TM and term base."""
from __future__ import annotations

from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime
from threading import Lock
from typing import TYPE_CHECKING, Dict, Iterator, List, Optional, Sequence, Tuple

from .models import (
    FileProgress,
    FileRecord,
    FileStatus,
    ProjectProgress,
    ProjectRecord,
    ProjectStatus,
    Segment,
    TermEntry,
    TranslationMemoryEntry,
)

if TYPE_CHECKING:
    from .storage import SqlStore


class State:
    """Stores workflow records with coarse locking plus one lock per segment.

    Every read returns a deep copy taken under the store lock and every write
    replaces the stored record wholesale, so readers only ever observe fully
    committed records. Lookups of unknown ids raise ``KeyError``.

    With a store attached, writes are persisted under the same lock before
    the in-memory record changes: SQL sees writes in memory order, and a
    failed write leaves memory untouched.
    """

    def __init__(self, store: Optional["SqlStore"] = None) -> None:
        self._projects: Dict[str, ProjectRecord] = {}
        self._files: Dict[str, FileRecord] = {}
        self._segments: Dict[str, Segment] = {}
        self._file_segments: Dict[str, List[str]] = defaultdict(list)
        self._translation_memory: Dict[str, List[TranslationMemoryEntry]] = defaultdict(list)
        self._term_base: Dict[str, List[TermEntry]] = defaultdict(list)
        self._segment_locks: Dict[str, Lock] = {}
        self._lock = Lock()
        self._store = store

    def attach_store(self, store: "SqlStore") -> None:
        """Start mirroring writes into ``store`` (after it was loaded)."""
        self._store = store

    # Project operations ---------------------------------------------------
    def add_project(self, project: ProjectRecord) -> ProjectRecord:
        with self._lock:
            self._persist("persist_project", project)
            self._projects[project.id] = project.model_copy(deep=True)
        return project

    def get_project(self, project_id: str) -> ProjectRecord:
        with self._lock:
            project = self._projects.get(project_id)
            if project is None:
                raise KeyError(project_id)
            return project.model_copy(deep=True)

    def list_projects(self) -> List[ProjectRecord]:
        with self._lock:
            return [project.model_copy(deep=True) for project in self._projects.values()]

    def update_project_progress(
        self, project_id: str, progress: ProjectProgress, status: ProjectStatus
    ) -> ProjectRecord:
        with self._lock:
            project = self._projects.get(project_id)
            if project is None:
                raise KeyError(project_id)
            stored = project.model_copy(deep=True)
            stored.progress = progress.model_copy(deep=True)
            stored.status = status
            stored.updated_at = datetime.utcnow()
            self._persist("persist_project", stored)
            self._projects[project_id] = stored.model_copy(deep=True)
        return stored

    # File operations ------------------------------------------------------
    def add_file(self, file: FileRecord, segments: Sequence[Segment] = ()) -> FileRecord:
        with self._lock:
            if file.project_id not in self._projects:
                raise KeyError(file.project_id)
            ordered = sorted(segments, key=lambda item: item.index)
            self._persist("persist_file", file)
            for segment in ordered:
                self._persist("persist_segment", segment)
            self._files[file.id] = file.model_copy(deep=True)
            for segment in ordered:
                self._segments[segment.id] = segment.model_copy(deep=True)
                self._file_segments[file.id].append(segment.id)
        return file

    def get_file(self, file_id: str) -> FileRecord:
        with self._lock:
            file = self._files.get(file_id)
            if file is None:
                raise KeyError(file_id)
            return file.model_copy(deep=True)

    def list_files(self, project_id: str) -> List[FileRecord]:
        with self._lock:
            return [
                file.model_copy(deep=True)
                for file in self._files.values()
                if file.project_id == project_id
            ]

    def update_file_progress(
        self,
        file_id: str,
        progress: Optional[FileProgress] = None,
        status: Optional[FileStatus] = None,
        error_details: Optional[str] = None,
        clear_error: bool = False,
    ) -> FileRecord:
        with self._lock:
            file = self._files.get(file_id)
            if file is None:
                raise KeyError(file_id)
            stored = file.model_copy(deep=True)
            if progress is not None:
                stored.progress = progress.model_copy(deep=True)
            if status is not None:
                stored.status = status
            if error_details is not None:
                stored.error_details = error_details
            elif clear_error:
                stored.error_details = None
            stored.updated_at = datetime.utcnow()
            self._persist("persist_file", stored)
            self._files[file_id] = stored.model_copy(deep=True)
        return stored

    # Segment operations ---------------------------------------------------
    def get_segment(self, segment_id: str) -> Segment:
        with self._lock:
            segment = self._segments.get(segment_id)
            if segment is None:
                raise KeyError(segment_id)
            return segment.model_copy(deep=True)

    def list_segments(self, file_id: str) -> List[Segment]:
        """Return the file's segments in document order."""

        with self._lock:
            if file_id not in self._files:
                raise KeyError(file_id)
            segments = [self._segments[segment_id] for segment_id in self._file_segments.get(file_id, [])]
            return [segment.model_copy(deep=True) for segment in sorted(segments, key=lambda s: s.index)]

    def neighbor_segments(self, segment: Segment, window: int) -> Tuple[List[Segment], List[Segment]]:
        """Return up to ``window`` segments before and after ``segment``."""

        if window <= 0:
            return [], []
        siblings = self.list_segments(segment.file_id)
        preceding = [item for item in siblings if segment.index - window <= item.index < segment.index]
        following = [item for item in siblings if segment.index < item.index <= segment.index + window]
        return preceding, following

    def save_segment(self, segment: Segment) -> Segment:
        with self._lock:
            if segment.id not in self._segments:
                raise KeyError(segment.id)
            segment.updated_at = datetime.utcnow()
            self._persist("persist_segment", segment)
            self._segments[segment.id] = segment.model_copy(deep=True)
        return segment

    @contextmanager
    def segment_lock(self, segment_id: str) -> Iterator[None]:
        """Serialise state-mutating sections for a single segment.

        Callers must never await an external call while holding it.
        """

        with self._lock:
            lock = self._segment_locks.get(segment_id)
            if lock is None:
                lock = Lock()
                self._segment_locks[segment_id] = lock
        with lock:
            yield

    # Translation memory operations ---------------------------------------
    def add_translation_memory_entry(self, entry: TranslationMemoryEntry) -> TranslationMemoryEntry:
        key = self._tm_key(entry.source_language, entry.target_language)
        with self._lock:
            self._persist("persist_tm_entry", entry)
            self._translation_memory[key].append(entry.model_copy(deep=True))
        return entry

    def update_translation_memory_entry(self, entry: TranslationMemoryEntry) -> TranslationMemoryEntry:
        key = self._tm_key(entry.source_language, entry.target_language)
        with self._lock:
            entries = self._translation_memory[key]
            for position, existing in enumerate(entries):
                if existing.id == entry.id:
                    break
            else:
                raise KeyError(entry.id)
            self._persist("persist_tm_entry", entry)
            entries[position] = entry.model_copy(deep=True)
        return entry

    def list_translation_memory(self, source_language: str, target_language: str) -> List[TranslationMemoryEntry]:
        key = self._tm_key(source_language, target_language)
        with self._lock:
            return [entry.model_copy(deep=True) for entry in self._translation_memory.get(key, [])]

    # Term base operations -------------------------------------------------
    def add_term_entry(self, entry: TermEntry) -> TermEntry:
        with self._lock:
            self._persist("persist_term_entry", entry)
            self._term_base[entry.project_id].append(entry.model_copy(deep=True))
        return entry

    def list_term_entries(self, project_id: str) -> List[TermEntry]:
        with self._lock:
            return [entry.model_copy(deep=True) for entry in self._term_base.get(project_id, [])]

    # Internal utilities ---------------------------------------------------
    def _persist(self, method: str, record) -> None:
        if self._store is None:
            return
        getattr(self._store, method)(record)

    @staticmethod
    def _tm_key(source_language: str, target_language: str) -> str:
        return f"{source_language.lower()}::{target_language.lower()}"
