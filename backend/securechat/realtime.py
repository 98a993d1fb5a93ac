import json
import logging
import threading
from typing import Dict, Iterable, Optional, Set

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError
from pymongo.database import Database

from .auth import decode_token
from .core import ConversationManager, MessageManager
from .db import get_db
from .errors import ChatError
from .models import utcnow
from .schemas import SendMessageIn

logger = logging.getLogger(__name__)

router = APIRouter()


class ConnectionManager:
    """Tracks open sockets per username; a user may be connected from several devices."""

    def __init__(self):
        self.connections: Dict[str, Set[WebSocket]] = {}
        self.lock = threading.Lock()

    async def connect(self, username: str, websocket: WebSocket):
        await websocket.accept()
        with self.lock:
            self.connections.setdefault(username, set()).add(websocket)
        logger.debug("WS connect: %s", username)

    def disconnect(self, username: str, websocket: Optional[WebSocket] = None):
        with self.lock:
            if username in self.connections:
                if websocket:
                    self.connections[username].discard(websocket)
                if not self.connections[username]:
                    del self.connections[username]
        logger.debug("WS disconnect: %s", username)

    def is_online(self, username: str) -> bool:
        with self.lock:
            return bool(self.connections.get(username))

    async def send_to_user(self, username: str, payload: dict):
        with self.lock:
            sockets = list(self.connections.get(username, []))
        dead = []
        for ws in sockets:
            try:
                await ws.send_text(json.dumps(payload, default=str))
            except Exception as e:
                logger.warning("Dropping socket for %s after failed push: %s", username, e)
                dead.append(ws)
        if dead:
            with self.lock:
                for d in dead:
                    self.connections.get(username, set()).discard(d)

    async def broadcast(self, usernames: Iterable[str], payload: dict, exclude: str = None):
        for u in set(usernames):
            if u != exclude:
                await self.send_to_user(u, payload)


manager = ConnectionManager()


def event(event_type: str, **data) -> dict:
    return {"type": event_type, "timestamp": utcnow().isoformat(), **data}


async def _reply(websocket: WebSocket, payload: dict):
    await websocket.send_text(json.dumps(payload, default=str))


async def announce_status(db: Database, username: str, online: bool):
    """Tell everyone who shares a conversation with ``username`` that it came or went."""
    partners = await run_in_threadpool(ConversationManager(db).partners_of, username)
    await manager.broadcast(partners, event("user_status", user=username, status="online" if online else "offline"))


async def handle_frame(db: Database, username: str, websocket: WebSocket, frame: dict):
    kind = frame.get("type")
    payload = frame.get("payload")
    if not isinstance(payload, dict):
        payload = {}
    messages = MessageManager(db)

    if kind == "ping":
        await _reply(websocket, event("pong"))

    elif kind == "message":
        try:
            data = SendMessageIn.model_validate(payload)
        except ValidationError:
            await _reply(websocket, event("error", error="invalid_payload"))
            return
        message = await run_in_threadpool(
            messages.send,
            data.conversation_id,
            username,
            data.encrypted_content,
            data.attachments,
            data.integrity_hash,
            data.expires_at,
            data.is_ephemeral,
        )
        await _reply(websocket, event("message_sent", messageId=message.id, conversationId=message.conversation))
        conversation = await run_in_threadpool(messages.conversations.get, message.conversation)
        if conversation is not None:
            await manager.broadcast(
                conversation.participants, event("new_message", message=message.to_api()), exclude=username,
            )

    elif kind == "typing":
        conversation = await run_in_threadpool(messages.conversations.get, payload.get("conversationId"))
        if conversation is None or not conversation.is_participant(username):
            await _reply(websocket, event("error", error="conversation_not_found"))
            return
        await manager.broadcast(conversation.participants, event(
            "typing",
            conversationId=conversation.id,
            user=username,
            isTyping=bool(payload.get("isTyping", True)),
        ), exclude=username)

    elif kind == "read":
        message, changed = await run_in_threadpool(messages.mark_read_by, payload.get("messageId"), username)
        if changed:
            conversation = await run_in_threadpool(messages.conversations.get, message.conversation)
            if conversation is not None:
                await manager.broadcast(conversation.participants, event(
                    "message_read", messageId=message.id, conversationId=message.conversation, user=username,
                ))

    else:
        await _reply(websocket, event(
            "error", error="unknown_message_type", detail=f"Unknown message type: {kind}",
        ))


@router.websocket("/ws")
async def ws_endpoint(websocket: WebSocket, db: Database = Depends(get_db)):
    token = websocket.query_params.get("token")
    try:
        username = decode_token(token) if token else None
    except HTTPException:
        username = None
    if not username:
        # 1008: policy violation
        await websocket.close(code=1008)
        logger.info("WS rejected: missing or invalid token")
        return

    await manager.connect(username, websocket)
    await announce_status(db, username, online=True)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
                if not isinstance(frame, dict):
                    raise ValueError("frame must be an object")
            except ValueError:
                await _reply(websocket, event("error", error="invalid_json"))
                continue
            try:
                await handle_frame(db, username, websocket, frame)
            except ChatError as e:
                await _reply(websocket, event("error", error=type(e).__name__, detail=e.detail))
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("WS handler for %s crashed", username)
    finally:
        manager.disconnect(username, websocket)
        # other devices may still be connected
        if not manager.is_online(username):
            await announce_status(db, username, online=False)
