"""Integration tests for library endpoints."""

from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import FakeBookProvider, RecordingEmitter, ffprobe_output
from db.models import Library
from main import app
from services.library_scan import ScanType
from services.library_scanner import LibraryScanner
from services.providers import BookMatch


class TestLibraryCrud:
    @pytest.mark.asyncio
    async def test_create_and_list(self, client: AsyncClient) -> None:
        response = await client.post("/library", json={"name": "Podcasts", "media_type": "podcast"})

        assert response.status_code == 201
        created = response.json()
        assert created["name"] == "Podcasts"
        assert created["media_type"] == "podcast"
        assert created["provider"] == "audible"

        response = await client.get("/library")
        assert response.status_code == 200
        assert [lib["id"] for lib in response.json()] == [created["id"]]

    @pytest.mark.asyncio
    async def test_create_requires_name(self, client: AsyncClient) -> None:
        response = await client.post("/library", json={"media_type": "book"})
        assert response.status_code == 422


class TestScanEndpoints:
    @pytest.mark.asyncio
    async def test_scan_runs_in_background(
        self,
        client: AsyncClient,
        library: Library,
        emitter: RecordingEmitter,
        make_item_folder,
    ) -> None:
        scan_data = make_item_folder("Jane Doe/Book One", audio={"a.mp3": ffprobe_output()})

        response = await client.post(f"/library/{library.id}/scan", json=[scan_data.model_dump(mode="json")])

        assert response.status_code == 202
        assert response.json()["status"] == "queued"
        completed = emitter.of_type("scan_complete")
        assert len(completed) == 1
        assert completed[0]["results"]["added"] == 1

        response = await client.get(f"/library/{library.id}/filter-data")
        assert response.status_code == 200
        assert [a["name"] for a in response.json()["authors"]] == ["Jane Doe"]

    @pytest.mark.asyncio
    async def test_scan_unknown_library(self, client: AsyncClient) -> None:
        response = await client.post(f"/library/{uuid4()}/scan", json=[])
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_scan_while_scanning_conflicts(
        self,
        client: AsyncClient,
        library: Library,
        library_scanner: LibraryScanner,
    ) -> None:
        library_scanner._begin(library, ScanType.SCAN)
        try:
            response = await client.post(f"/library/{library.id}/scan", json=[])
            assert response.status_code == 409

            response = await client.post(f"/library/{library.id}/match")
            assert response.status_code == 409

            response = await client.get("/library/scans")
            scans = response.json()
            assert [(s["library_id"], s["type"], s["state"]) for s in scans] == [(str(library.id), "scan", "running")]

            response = await client.post(f"/library/{library.id}/scan/cancel")
            assert response.json()["status"] == "cancel_requested"
        finally:
            library_scanner._end(library.id)

    @pytest.mark.asyncio
    async def test_cancel_when_idle(self, client: AsyncClient, library: Library) -> None:
        response = await client.post(f"/library/{library.id}/scan/cancel")

        assert response.status_code == 200
        assert response.json() == {"library_id": str(library.id), "status": "not_running"}

    @pytest.mark.asyncio
    async def test_filter_data_unknown_library(self, client: AsyncClient) -> None:
        response = await client.get(f"/library/{uuid4()}/filter-data")
        assert response.status_code == 404


class TestMatchEndpoints:
    @pytest.mark.asyncio
    async def test_match_item(
        self,
        client: AsyncClient,
        test_session: AsyncSession,
        library: Library,
        library_scanner: LibraryScanner,
        book_provider: FakeBookProvider,
        make_item_folder,
    ) -> None:
        await library_scanner.scan_library(
            test_session, library, [make_item_folder("Jane Doe/Book One", audio={"a.mp3": ffprobe_output()})]
        )
        item_id = library_scanner.emitter.of_type("item_added")[0]["id"]
        book_provider.results = [BookMatch(description="Matched description")]

        response = await client.post(f"/library/items/{item_id}/match", json={})

        assert response.status_code == 200
        data = response.json()
        assert data["updated"] is True
        assert data["item"]["media"]["description"] == "Matched description"

    @pytest.mark.asyncio
    async def test_match_item_while_scanning_conflicts(
        self,
        client: AsyncClient,
        test_session: AsyncSession,
        library: Library,
        library_scanner: LibraryScanner,
        book_provider: FakeBookProvider,
        make_item_folder,
    ) -> None:
        await library_scanner.scan_library(
            test_session, library, [make_item_folder("Jane Doe/Book One", audio={"a.mp3": ffprobe_output()})]
        )
        item_id = library_scanner.emitter.of_type("item_added")[0]["id"]
        book_provider.results = [BookMatch(description="Matched description")]

        library_scanner._begin(library, ScanType.MATCH)
        try:
            response = await client.post(f"/library/items/{item_id}/match", json={})
        finally:
            library_scanner._end(library.id)

        assert response.status_code == 409
        assert book_provider.queries == []

    @pytest.mark.asyncio
    async def test_match_unknown_item(self, client: AsyncClient) -> None:
        response = await client.post(f"/library/items/{uuid4()}/match", json={})
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_match_library_queued(
        self,
        client: AsyncClient,
        library: Library,
        emitter: RecordingEmitter,
    ) -> None:
        response = await client.post(f"/library/{library.id}/match")

        assert response.status_code == 202
        # Empty library: nothing to match, so no scan is started
        assert emitter.of_type("scan_start") == []


def test_events_websocket() -> None:
    with TestClient(app) as test_client:
        with test_client.websocket_connect("/library/events") as websocket:
            assert websocket.receive_json() == {"type": "connected"}
            websocket.send_text("ping")
            assert websocket.receive_text() == "pong"
