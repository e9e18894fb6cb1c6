import logging
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, WebSocket, WebSocketDisconnect
from sqlalchemy import select
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from api.schemas import (
    ActiveScanResponse,
    FilterDataResponse,
    QuickMatchResponse,
    ScanCancelResponse,
    ScanQueuedResponse,
)
from db.models import Library, LibraryCreate, LibraryItem, LibraryRead
from db.session import async_session_maker, get_session
from services.library_matcher import QuickMatchOptions
from services.library_scanner import LibraryScanner, ScanInProgressError
from services.scan_data import LibraryItemScanData
from services.websocket_manager import EVENTS_RESOURCE, WebSocketManager, library_resource

router = APIRouter(tags=["library"])
logger = logging.getLogger(__name__)

ws_manager = WebSocketManager()
library_scanner = LibraryScanner(emitter=ws_manager)


def get_library_scanner() -> LibraryScanner:
    return library_scanner


def get_session_maker():
    """Session factory for work that outlives the request."""
    return async_session_maker


async def _get_library_or_404(session: AsyncSession, library_id: UUID) -> Library:
    library = await session.get(Library, library_id)
    if library is None:
        raise HTTPException(status_code=404, detail="Library not found")
    return library


async def run_library_scan(
    scanner: LibraryScanner,
    session_maker,
    library_id: UUID,
    scan_datas: list[LibraryItemScanData],
    force: bool,
) -> None:
    async with session_maker() as session:
        library = await session.get(Library, library_id)
        if library is None:
            logger.error("Library %s disappeared before its scan started", library_id)
            return
        try:
            await scanner.scan_library(session, library, scan_datas, force_rescan=force)
        except ScanInProgressError as e:
            logger.warning("%s", e)
        except (OperationalError, InterfaceError):
            logger.exception("Library scan %s aborted: database unavailable", library_id)


async def run_library_match(scanner: LibraryScanner, session_maker, library_id: UUID) -> None:
    async with session_maker() as session:
        library = await session.get(Library, library_id)
        if library is None:
            logger.error("Library %s disappeared before its match started", library_id)
            return
        try:
            await scanner.match_library(session, library)
        except ScanInProgressError as e:
            logger.warning("%s", e)
        except (OperationalError, InterfaceError):
            logger.exception("Library match %s aborted: database unavailable", library_id)


@router.post("", response_model=LibraryRead, status_code=201)
async def create_library(
    payload: LibraryCreate,
    session: AsyncSession = Depends(get_session),
) -> Library:
    library = Library.model_validate(payload)
    session.add(library)
    await session.commit()
    await session.refresh(library)
    logger.info("Created library \"%s\" (%s)", library.name, library.id)
    return library


@router.get("", response_model=list[LibraryRead])
async def list_libraries(session: AsyncSession = Depends(get_session)) -> list[Library]:
    result = await session.execute(select(Library).order_by(Library.created_at))
    return list(result.scalars().all())


@router.get("/scans", response_model=list[ActiveScanResponse])
async def list_active_scans(
    scanner: LibraryScanner = Depends(get_library_scanner),
) -> list[ActiveScanResponse]:
    """Scans and matches currently running."""
    return [
        ActiveScanResponse(
            id=scan.id,
            library_id=scan.library_id,
            library_name=scan.library_name,
            type=scan.type.value,
            state=scan.state.value,
            started_at=scan.started_at,
            results=scan.results(),
        )
        for scan in scanner.active_scans
    ]


@router.get("/{library_id}/filter-data", response_model=FilterDataResponse)
async def get_filter_data(
    library_id: UUID,
    session: AsyncSession = Depends(get_session),
    scanner: LibraryScanner = Depends(get_library_scanner),
) -> FilterDataResponse:
    await _get_library_or_404(session, library_id)
    index = await scanner.get_filter_index(session, library_id)
    return FilterDataResponse.model_validate(index.to_dict())


@router.post("/{library_id}/scan", response_model=ScanQueuedResponse, status_code=202)
async def scan_library(
    library_id: UUID,
    scan_datas: list[LibraryItemScanData],
    background_tasks: BackgroundTasks,
    force: bool = False,
    session: AsyncSession = Depends(get_session),
    scanner: LibraryScanner = Depends(get_library_scanner),
    session_maker=Depends(get_session_maker),
) -> ScanQueuedResponse:
    """Queue a scan of the given items. Progress is published on the events websocket."""
    library = await _get_library_or_404(session, library_id)
    if scanner.is_scanning(library_id):
        raise HTTPException(status_code=409, detail=f"Library \"{library.name}\" is already being scanned")

    background_tasks.add_task(run_library_scan, scanner, session_maker, library_id, scan_datas, force)
    return ScanQueuedResponse(
        library_id=library_id,
        status="queued",
        message=f"Scan of {len(scan_datas)} items queued.",
    )


@router.post("/{library_id}/scan/cancel", response_model=ScanCancelResponse)
async def cancel_library_scan(
    library_id: UUID,
    scanner: LibraryScanner = Depends(get_library_scanner),
) -> ScanCancelResponse:
    if scanner.cancel(library_id):
        return ScanCancelResponse(library_id=library_id, status="cancel_requested")
    return ScanCancelResponse(library_id=library_id, status="not_running")


@router.post("/{library_id}/match", response_model=ScanQueuedResponse, status_code=202)
async def match_library(
    library_id: UUID,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    scanner: LibraryScanner = Depends(get_library_scanner),
    session_maker=Depends(get_session_maker),
) -> ScanQueuedResponse:
    """Queue a quick match of every item in the library."""
    library = await _get_library_or_404(session, library_id)
    if scanner.is_scanning(library_id):
        raise HTTPException(status_code=409, detail=f"Library \"{library.name}\" is already being scanned")

    background_tasks.add_task(run_library_match, scanner, session_maker, library_id)
    return ScanQueuedResponse(library_id=library_id, status="queued", message="Library match queued.")


@router.post("/items/{item_id}/match", response_model=QuickMatchResponse)
async def quick_match_item(
    item_id: UUID,
    options: QuickMatchOptions,
    session: AsyncSession = Depends(get_session),
    scanner: LibraryScanner = Depends(get_library_scanner),
) -> QuickMatchResponse:
    item = await session.get(LibraryItem, item_id)
    if item is None:
        raise HTTPException(status_code=404, detail="Library item not found")

    try:
        result = await scanner.quick_match_item(session, item, options)
    except ScanInProgressError:
        raise HTTPException(status_code=409, detail="Library is already being scanned")
    return QuickMatchResponse(updated=result.updated, warning=result.warning, item=result.item)


@router.websocket("/events")
async def library_events(websocket: WebSocket) -> None:
    """WebSocket stream of scan and library item events."""
    await ws_manager.connect(websocket, EVENTS_RESOURCE)
    try:
        await websocket.send_json({"type": "connected"})
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        pass
    finally:
        ws_manager.disconnect(websocket, EVENTS_RESOURCE)


@router.websocket("/{library_id}/events")
async def single_library_events(websocket: WebSocket, library_id: UUID) -> None:
    """WebSocket stream of events for one library."""
    resource_id = library_resource(library_id)
    await ws_manager.connect(websocket, resource_id)
    try:
        await websocket.send_json({"type": "connected", "library_id": str(library_id)})
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        pass
    finally:
        ws_manager.disconnect(websocket, resource_id)
