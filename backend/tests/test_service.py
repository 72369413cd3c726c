"""Tests for the IndexService facade and its event channel."""

import pytest
import pytest_asyncio
from sqlalchemy.exc import OperationalError

from codeseek.core.models import FileEvent
from codeseek.service import (
    EVENT_ERROR,
    EVENT_INDEXING_COMPLETE,
    EVENT_INDEXING_PROGRESS,
    EVENT_INDEXING_START,
    EVENT_READY,
    EventChannel,
    IndexService,
    ServiceEvent,
    Subscription,
)


def _drain(sub):
    events = []
    while True:
        event = sub.get_nowait()
        if event is None:
            return events
        events.append(event)


@pytest_asyncio.fixture
async def service(overrides):
    service = IndexService(overrides)
    yield service
    await service.dispose()


@pytest_asyncio.fixture
async def ready_service(service, project):
    result = await service.initialize(project)
    assert result == {"ready": True}
    return service


class TestIndexService:
    """Test cases for IndexService."""

    @pytest.mark.asyncio
    async def test_initialize_and_reindex_events(self, service, project):
        sub = service.events.subscribe()

        assert await service.initialize(project) == {"ready": True}
        result = await service.reindex()

        assert result["success"] is True
        assert result["summary"]["files_total"] == 5
        assert result["summary"]["files_succeeded"] == 4

        events = _drain(sub)
        types = [e.type for e in events]
        assert types[0] == EVENT_READY
        assert types[1] == EVENT_INDEXING_START
        assert types[-1] == EVENT_INDEXING_COMPLETE
        assert types[2:-1] == [EVENT_INDEXING_PROGRESS] * 5
        assert events[1].data == {"total_files": 5}
        assert [e.data["files_processed"] for e in events[2:-1]] == [1, 2, 3, 4, 5]
        complete = events[-1].data
        assert complete["chunks_indexed"] > 0
        assert complete["files_failed"] == 0
        assert complete["cancelled"] is False
        assert complete["elapsed_ms"] >= 0

    @pytest.mark.asyncio
    async def test_status(self, ready_service, project):
        await ready_service.reindex()

        status = await ready_service.get_status()

        assert status["ready"] is True
        assert status["indexing"] is False
        assert status["error"] is None
        assert status["project_path"] == str(project.resolve())
        assert status["stats"]["total_files"] == 4
        assert status["stats"]["total_chunks"] == status["stats"]["total_embeddings"] > 0

    @pytest.mark.asyncio
    async def test_status_before_initialize(self, service):
        status = await service.get_status()
        assert status["ready"] is False
        assert status["stats"] is None

    @pytest.mark.asyncio
    async def test_search(self, ready_service):
        await ready_service.reindex()

        response = await ready_service.search("multiply numbers", limit=3)

        assert response["success"] is True
        assert response["results"][0]["file_path"] == "src/math_utils.py"
        assert len(response["results"]) <= 3

    @pytest.mark.asyncio
    async def test_search_rejects_empty_query(self, ready_service):
        response = await ready_service.search("   ")
        assert response["success"] is False
        assert response["results"] == []
        assert response["error"]

    @pytest.mark.asyncio
    async def test_search_before_initialize(self, service):
        response = await service.search("anything")
        assert response == {"success": False, "results": [], "error": "Index not initialized"}

    @pytest.mark.asyncio
    async def test_disabled(self, overrides, project):
        service = IndexService(dict(overrides, enabled=False))
        try:
            assert await service.initialize(project) == {"ready": False, "error": "not enabled"}
            assert service.store is None
        finally:
            await service.dispose()

    @pytest.mark.asyncio
    async def test_missing_project(self, service, tmp_path):
        result = await service.initialize(tmp_path / "nope")
        assert result["ready"] is False
        assert "does not exist" in result["error"]

    @pytest.mark.asyncio
    async def test_unopenable_store_reports_error(self, service, project):
        (project / ".codeseek").write_text("not a directory")
        sub = service.events.subscribe()

        result = await service.initialize(project)

        assert result["ready"] is False
        assert [e.type for e in _drain(sub)] == [EVENT_ERROR]
        assert service.store is None

    @pytest.mark.asyncio
    async def test_unknown_model_backend(self, overrides, project):
        service = IndexService(dict(overrides, embedding={"backend": "nope"}))
        try:
            result = await service.initialize(project)
            assert result["ready"] is False
            assert "nope" in result["error"]
        finally:
            await service.dispose()

    @pytest.mark.asyncio
    async def test_auto_index_on_initialize(self, overrides, project):
        service = IndexService(dict(overrides, auto_index=True))
        try:
            assert (await service.initialize(project))["ready"] is True
            # Joins the build started by initialize
            result = await service.reindex()
            assert result["success"] is True
            assert service.last_summary is not None
            assert service.last_summary.files_succeeded == 4
        finally:
            await service.dispose()

    @pytest.mark.asyncio
    async def test_file_events(self, ready_service, project):
        added = await ready_service.handle_file_event(
            FileEvent("add", "src/new_module.py", content="def brand_new():\n    return 1\n")
        )
        assert added == {"success": True, "chunks_indexed": 1}

        (project / "src" / "math_utils.py").write_text("def subtract(a, b):\n    return a - b\n")
        changed = await ready_service.handle_file_event(FileEvent("change", "src/math_utils.py"))
        assert changed["success"] is True
        assert changed["chunks_indexed"] > 0

        removed = await ready_service.handle_file_event(FileEvent("unlink", "src/new_module.py"))
        assert removed == {"success": True, "chunks_removed": 1}

        dir_added = await ready_service.handle_file_event(FileEvent("addDir", "web"))
        assert dir_added["success"] is True
        assert dir_added["chunks_indexed"] > 0

        dir_removed = await ready_service.handle_file_event(FileEvent("unlinkDir", "web"))
        assert dir_removed == {"success": True, "files_removed": 1}

        unknown = await ready_service.handle_file_event(FileEvent("rename", "web"))
        assert unknown["success"] is False

        records = {r.file_path for r in ready_service.store.list_file_records()}
        assert records == {"src/math_utils.py"}

    @pytest.mark.asyncio
    async def test_file_event_outside_project(self, ready_service, tmp_path):
        sub = ready_service.events.subscribe()
        outside = tmp_path / "outside.py"
        outside.write_text("x = 1\n")

        result = await ready_service.handle_file_event(FileEvent("add", str(outside)))

        assert result["success"] is False
        assert [e.type for e in _drain(sub)] == [EVENT_ERROR]
        assert ready_service.ready is True

    @pytest.mark.asyncio
    async def test_file_event_store_error(self, ready_service, monkeypatch):
        sub = ready_service.events.subscribe()

        def _locked(file_path):
            raise OperationalError("SELECT", {}, Exception("database is locked"))

        monkeypatch.setattr(ready_service.store, "get_file_record", _locked)
        result = await ready_service.handle_file_event(FileEvent("change", "src/math_utils.py"))

        assert result["success"] is False
        assert "database is locked" in result["error"]
        events = _drain(sub)
        assert [e.type for e in events] == [EVENT_ERROR]
        assert events[0].data["path"] == "src/math_utils.py"
        assert ready_service.ready is True

    @pytest.mark.asyncio
    async def test_clear_index(self, ready_service):
        await ready_service.reindex()

        assert await ready_service.clear_index() == {"success": True}

        status = await ready_service.get_status()
        assert status["stats"]["total_files"] == 0
        assert status["stats"]["total_embeddings"] == 0
        assert await ready_service.search("parse configuration file") == {"success": True, "results": []}

    @pytest.mark.asyncio
    async def test_unexpected_build_error_is_reported(self, ready_service, monkeypatch):
        sub = ready_service.events.subscribe()

        async def _crash(**kwargs):
            raise RuntimeError("disk vanished")

        monkeypatch.setattr(ready_service.indexer, "index_directory", _crash)
        result = await ready_service.reindex()

        assert result == {"success": False, "error": "RuntimeError: disk vanished"}
        assert [e.type for e in _drain(sub)] == [EVENT_ERROR]
        assert ready_service.ready is True

    @pytest.mark.asyncio
    async def test_store_query_failure(self, ready_service, monkeypatch):
        await ready_service.reindex()

        def _corrupt(**kwargs):
            raise RuntimeError("segment is corrupt")

        monkeypatch.setattr(ready_service.store.client, "query_points", _corrupt)
        response = await ready_service.search("multiply numbers")

        assert response["success"] is False
        assert response["results"] == []
        assert "segment is corrupt" in response["error"]

    @pytest.mark.asyncio
    async def test_missing_grammars_reported_at_initialize(self, service, project, monkeypatch):
        monkeypatch.setattr(
            "codeseek.service.check_grammars", lambda: {"python": "RuntimeError: grammar download failed"}
        )

        result = await service.initialize(project)

        assert result["ready"] is True
        assert len(result["warnings"]) == 1
        assert "'python'" in result["warnings"][0]
        assert (await service.get_status())["warnings"] == result["warnings"]

    @pytest.mark.asyncio
    async def test_cancel_when_idle(self, ready_service):
        assert await ready_service.cancel_indexing() is False


class TestSubscription:
    """Test cases for the bounded per-subscriber queue."""

    def _event(self, kind, n=0):
        return ServiceEvent(type=kind, data={"n": n})

    def test_full_queue_drops_oldest_progress(self):
        sub = Subscription(3)
        sub.put(self._event(EVENT_READY))
        sub.put(self._event(EVENT_INDEXING_PROGRESS, 1))
        sub.put(self._event(EVENT_INDEXING_PROGRESS, 2))
        sub.put(self._event(EVENT_INDEXING_PROGRESS, 3))
        sub.put(self._event(EVENT_INDEXING_COMPLETE))

        events = _drain(sub)
        assert [(e.type, e.data["n"]) for e in events] == [
            (EVENT_READY, 0),
            (EVENT_INDEXING_PROGRESS, 3),
            (EVENT_INDEXING_COMPLETE, 0),
        ]
        assert sub.dropped == 2

    def test_non_progress_events_are_never_dropped(self):
        sub = Subscription(2)
        sub.put(self._event(EVENT_READY))
        sub.put(self._event(EVENT_ERROR))
        sub.put(self._event(EVENT_INDEXING_PROGRESS, 1))
        sub.put(self._event(EVENT_INDEXING_COMPLETE))

        assert [e.type for e in _drain(sub)] == [EVENT_READY, EVENT_ERROR, EVENT_INDEXING_COMPLETE]
        assert sub.dropped == 1

    @pytest.mark.asyncio
    async def test_async_iteration_ends_on_close(self):
        sub = Subscription(10)
        sub.put(self._event(EVENT_READY))
        sub.put(self._event(EVENT_INDEXING_START))
        sub.close()

        assert [e.type async for e in sub] == [EVENT_READY, EVENT_INDEXING_START]
        assert await sub.get() is None


class TestEventChannel:
    """Test cases for EventChannel."""

    def test_fan_out_and_unsubscribe(self):
        channel = EventChannel(queue_size=8)
        first, second = channel.subscribe(), channel.subscribe()
        channel.publish(EVENT_READY, {"project_path": "/tmp/p"})
        channel.unsubscribe(second)
        channel.publish(EVENT_ERROR, {"error": "boom"})

        assert [e.type for e in _drain(first)] == [EVENT_READY, EVENT_ERROR]
        assert [e.type for e in _drain(second)] == [EVENT_READY]
        assert second.closed

    def test_failing_listener_does_not_stop_publishing(self):
        channel = EventChannel()
        seen = []

        def broken(event):
            raise RuntimeError("listener bug")

        channel.add_listener(broken)
        channel.add_listener(seen.append)
        event = channel.publish(EVENT_READY)

        assert seen == [event]
        channel.remove_listener(seen.append)
        channel.publish(EVENT_READY)
        assert seen == [event]
