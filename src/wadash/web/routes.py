from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Response, WebSocket, WebSocketDisconnect, status

from ..exceptions import NotConnectedError, WadashError
from ..qr import pairing_code_svg
from ..service import DashboardService
from ..store import Message
from .dependencies import get_service
from .schemas import (
    ActionResponse,
    ChatListResponse,
    ChatOut,
    MessageListResponse,
    MessageOut,
    SendMessageRequest,
    SettingsOut,
    SettingsUpdateRequest,
    StarRequest,
    StatusOut,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["dashboard"])


@router.get("/status", response_model=StatusOut)
async def get_status(service: DashboardService = Depends(get_service)) -> StatusOut:
    return StatusOut.model_validate(service.manager.status().to_dict())


@router.get("/status/qr.svg")
async def get_pairing_qr(service: DashboardService = Depends(get_service)) -> Response:
    code = service.manager.status().pairing_code
    if not code:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No pairing code")
    return Response(content=pairing_code_svg(code), media_type="image/svg+xml")


@router.post("/connection/disconnect", response_model=ActionResponse)
async def disconnect(service: DashboardService = Depends(get_service)) -> ActionResponse:
    await service.manager.disconnect()
    return ActionResponse(success=True)


@router.post("/connection/reconnect", response_model=ActionResponse)
async def reconnect(service: DashboardService = Depends(get_service)) -> ActionResponse:
    await service.manager.reconnect()
    return ActionResponse(success=True)


@router.post("/connection/restart", response_model=ActionResponse)
async def restart(service: DashboardService = Depends(get_service)) -> ActionResponse:
    started = await service.manager.restart()
    return ActionResponse(success=started)


@router.get("/settings", response_model=SettingsOut)
async def get_settings(service: DashboardService = Depends(get_service)) -> SettingsOut:
    return SettingsOut.model_validate(await service.store.get_settings())


@router.patch("/settings", response_model=SettingsOut)
async def update_settings(
    payload: SettingsUpdateRequest,
    service: DashboardService = Depends(get_service),
) -> SettingsOut:
    settings = await service.store.update_settings(**payload.model_dump(exclude_none=True))
    return SettingsOut.model_validate(settings)


@router.get("/chats", response_model=ChatListResponse)
async def list_chats(service: DashboardService = Depends(get_service)) -> ChatListResponse:
    chats = await service.store.get_chats()
    return ChatListResponse(chats=[ChatOut.model_validate(c) for c in chats])


@router.get("/chats/{jid}/messages", response_model=MessageListResponse)
async def list_messages(
    jid: str,
    service: DashboardService = Depends(get_service),
) -> MessageListResponse:
    messages = await service.store.get_messages(jid)
    return MessageListResponse(messages=[_to_message(m) for m in messages])


@router.post("/messages", status_code=status.HTTP_201_CREATED, response_model=MessageOut)
async def send_message(
    payload: SendMessageRequest,
    service: DashboardService = Depends(get_service),
) -> MessageOut:
    try:
        message = await service.outbound.send_message(
            payload.chat_jid,
            payload.content,
            kind=payload.kind,
            attachment_ref=payload.attachment_ref,
            attachment_name=payload.attachment_name,
        )
    except NotConnectedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except WadashError as e:
        logger.warning("Send to %s failed: %s", payload.chat_jid, e)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to send message"
        ) from e
    return _to_message(message)


@router.post("/messages/{message_id}/star", response_model=MessageOut)
async def star_message(
    message_id: str,
    payload: StarRequest,
    service: DashboardService = Depends(get_service),
) -> MessageOut:
    message = await service.outbound.star_message(message_id, payload.starred)
    if message is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
    return _to_message(message)


@router.delete("/messages/{message_id}", response_model=ActionResponse)
async def delete_message(
    message_id: str,
    service: DashboardService = Depends(get_service),
) -> ActionResponse:
    if not await service.outbound.delete_message(message_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
    return ActionResponse(success=True)


ws_router = APIRouter(tags=["realtime"])


@ws_router.websocket("/ws")
async def realtime(websocket: WebSocket) -> None:
    service: DashboardService = websocket.app.state.service
    await websocket.accept()
    await service.broadcaster.join(websocket)
    try:
        # Inbound frames carry nothing; reading keeps the disconnect observable.
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        service.broadcaster.leave(websocket)


def _to_message(message: Message) -> MessageOut:
    return MessageOut.model_validate(message)
