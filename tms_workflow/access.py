"""Entity loading and project-relationship checks shared by the services."""
from __future__ import annotations

from typing import Tuple

from .errors import ForbiddenError, NotFoundError
from .models import FileRecord, ProjectRecord, Segment
from .state import State


class ProjectAccess:
    """Resolves segments, files and projects and checks actor relationships."""

    def __init__(self, state: State) -> None:
        self._state = state

    def segment(self, segment_id: str) -> Segment:
        try:
            return self._state.get_segment(segment_id)
        except KeyError:
            raise NotFoundError(f"Segment {segment_id} not found") from None

    def file(self, file_id: str) -> FileRecord:
        try:
            return self._state.get_file(file_id)
        except KeyError:
            raise NotFoundError(f"File {file_id} not found") from None

    def project(self, project_id: str) -> ProjectRecord:
        try:
            return self._state.get_project(project_id)
        except KeyError:
            raise NotFoundError(f"Project {project_id} not found") from None

    def parents(self, segment: Segment) -> Tuple[FileRecord, ProjectRecord]:
        return self.file(segment.file_id), self.project(segment.project_id)

    def file_in_project(self, project_id: str, file_id: str) -> FileRecord:
        file = self.file(file_id)
        if file.project_id != project_id:
            raise NotFoundError(f"File {file_id} not found in project {project_id}")
        return file

    @staticmethod
    def require_member(project: ProjectRecord, actor_id: str, action: str) -> None:
        if not project.is_member(actor_id):
            raise ForbiddenError(f"User {actor_id} is not allowed to {action}")

    @staticmethod
    def require_reviewer(project: ProjectRecord, actor_id: str, action: str) -> None:
        if not project.can_review(actor_id):
            raise ForbiddenError(f"Only the project manager or a reviewer may {action}")

    @staticmethod
    def require_manager(project: ProjectRecord, actor_id: str, action: str) -> None:
        if actor_id != project.manager_id:
            raise ForbiddenError(f"Only the project manager may {action}")
