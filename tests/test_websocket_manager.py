"""Segment event fan-out to project rooms."""
from __future__ import annotations

import json

from conftest import MANAGER, REVIEWER, TRANSLATOR, run

from tms_workflow.bootstrap import build_services, register_file, register_project
from tms_workflow.models import FileCreate, ProjectCreate


class RecordingSocket:
    def __init__(self, fail: bool = False) -> None:
        self.sent = []
        self.fail = fail

    async def accept(self) -> None:
        return None

    async def send_text(self, text: str) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(json.loads(text))


def test_segment_events_reach_project_room(translator, reviewer) -> None:
    services = build_services(translation_provider=translator, review_provider=reviewer)
    project = register_project(
        services,
        ProjectCreate(id="room", name="Room", source_language="en", target_language="fr", manager_id=MANAGER),
    )
    file = register_file(services, project.id, FileCreate(name="a.txt", segments=["Hi"]), MANAGER)
    segment = services.state.list_segments(file.id)[0]
    watcher, stale, elsewhere = RecordingSocket(), RecordingSocket(fail=True), RecordingSocket()
    connections = services.connections

    async def scenario():
        await connections.connect(watcher, REVIEWER)
        await connections.connect(stale, TRANSLATOR)
        await connections.connect(elsewhere, "other")
        connections.join("room", REVIEWER)
        connections.join("room", TRANSLATOR)
        connections.join("another", "other")
        await services.workflow.translate_segment(segment.id, MANAGER)

    run(scenario())

    assert [message["type"] for message in watcher.sent] == ["segment_translated"]
    assert watcher.sent[0]["segment_id"] == segment.id
    assert watcher.sent[0]["status"] == "translated"
    assert elsewhere.sent == []
    # Failed sends drop the connection
    assert TRANSLATOR not in connections.active_connections
    assert connections.get_project_users("room") == [REVIEWER]
