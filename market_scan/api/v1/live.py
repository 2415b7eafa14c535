from __future__ import annotations

import asyncio
import json

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError as SchemaValidationError

from market_scan.dependencies import get_persistence, get_redis, get_settings, get_submitter
from market_scan.middleware.auth import owner_from_headers
from market_scan.schemas.scans import HistoryListCommand, ScanCreateRequest
from market_scan.services.active_pointer import ActiveScanPointer
from market_scan.services.history import HistoryBrowser
from market_scan.services.panel import AnalysisPanel
from market_scan.services.persistence import PersistenceAdapter
from market_scan.services.submitter import JobRequestSubmitter
from market_scan.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/scans", tags=["Market Scans"])

# Sentinel queued when the panel state changed
_STATE = object()


def _state_frame(panel: AnalysisPanel) -> dict:
    notice = panel.pop_notice()
    return {
        "type": "state",
        "view": panel.view(),
        "notice": (
            {"level": notice.level, "message": notice.message, "code": notice.code}
            if notice
            else None
        ),
    }


async def _pump(websocket: WebSocket, panel: AnalysisPanel, outbox: asyncio.Queue) -> None:
    """Single writer for the socket: state frames and command replies."""
    while True:
        item = await outbox.get()
        if item is _STATE:
            await websocket.send_json(_state_frame(panel))
        else:
            await websocket.send_json(item)


async def _handle_command(panel: AnalysisPanel, message: dict, outbox: asyncio.Queue) -> None:
    action = message.get("action")

    if action == "submit":
        try:
            body = ScanCreateRequest.model_validate(message)
        except SchemaValidationError as e:
            outbox.put_nowait(
                {"type": "error", "code": "ValidationError", "message": str(e.errors()[0]["msg"])}
            )
            return
        await panel.submit(body.vehicles)
    elif action == "dismiss":
        await panel.dismiss()
    elif action == "resubscribe":
        await panel.resubscribe()
    elif action == "list_history":
        try:
            command = HistoryListCommand.model_validate(message)
        except SchemaValidationError as e:
            outbox.put_nowait(
                {"type": "error", "code": "ValidationError", "message": str(e.errors()[0]["msg"])}
            )
            return
        jobs = await panel.list_history(command.status or None)
        outbox.put_nowait(
            {"type": "history", "jobs": [j.model_dump(mode="json") for j in jobs]}
        )
    elif action == "open_history":
        await panel.open_history(str(message.get("job_id", "")))
    elif action == "return_to_live":
        panel.return_to_live()
    else:
        outbox.put_nowait(
            {"type": "error", "code": "UnknownAction", "message": f"Unknown action '{action}'"}
        )
        return
    outbox.put_nowait(_STATE)


@router.websocket("/live")
async def live_panel(
    websocket: WebSocket,
    session: str = Query(..., min_length=1, max_length=128),
    settings=Depends(get_settings),
    redis=Depends(get_redis),
    persistence: PersistenceAdapter = Depends(get_persistence),
    submitter: JobRequestSubmitter = Depends(get_submitter),
) -> None:
    """Analysis panel for one browser session.

    Resumes the session's running scan on connect and pushes a state frame
    after every change.
    """
    owner_id = owner_from_headers(websocket.headers, settings.OWNER_HEADER)
    if owner_id is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()

    panel = AnalysisPanel(
        owner_id,
        submitter,
        persistence,
        redis,
        ActiveScanPointer(redis, f"{owner_id}:{session}", ttl=settings.ACTIVE_POINTER_TTL),
        history=HistoryBrowser(
            persistence, limit=settings.HISTORY_LIMIT, label_items=settings.HISTORY_LABEL_ITEMS
        ),
        default_currency=settings.DEFAULT_CURRENCY,
    )
    outbox: asyncio.Queue = asyncio.Queue()
    panel.on_change(lambda: outbox.put_nowait(_STATE))

    await panel.resume()
    outbox.put_nowait(_STATE)
    sender = asyncio.create_task(_pump(websocket, panel, outbox))
    logger.info("Analysis panel connected", owner_id=owner_id, session=session)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                message = None
            if not isinstance(message, dict):
                outbox.put_nowait(
                    {"type": "error", "code": "BadFrame", "message": "Expected a JSON object"}
                )
                continue
            await _handle_command(panel, message, outbox)
    except WebSocketDisconnect:
        logger.info("Analysis panel disconnected", owner_id=owner_id, session=session)
    finally:
        sender.cancel()
        try:
            await sender
        except (asyncio.CancelledError, RuntimeError, WebSocketDisconnect):
            pass
        await panel.close()
