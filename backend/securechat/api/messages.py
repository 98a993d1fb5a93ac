from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query

from . import get_messages
from .. import config
from ..auth import auth_required
from ..core import MessageManager
from ..realtime import event, manager
from ..schemas import SendMessageIn

router = APIRouter(prefix="/messages", tags=["messages"])


@router.get("/conversation/{conversation_id}")
def list_messages(
    conversation_id: str,
    limit: int = Query(config.DEFAULT_PAGE_SIZE, ge=1, le=config.MAX_PAGE_SIZE),
    before: Optional[datetime] = None,
    me: str = Depends(auth_required),
    messages: MessageManager = Depends(get_messages),
):
    if before is not None and before.tzinfo is not None:
        # stored timestamps are naive UTC
        before = before.astimezone(timezone.utc).replace(tzinfo=None)
    page = messages.list_by_conversation(conversation_id, me, limit, before)
    return {
        "success": True,
        "messages": [m.to_api() for m in page.messages],
        "hasMore": page.has_more,
    }


@router.post("", status_code=201)
def send_message(
    data: SendMessageIn,
    background: BackgroundTasks,
    me: str = Depends(auth_required),
    messages: MessageManager = Depends(get_messages),
):
    message = messages.send(
        data.conversation_id,
        me,
        data.encrypted_content,
        data.attachments,
        data.integrity_hash,
        data.expires_at,
        data.is_ephemeral,
    )
    conversation = messages.conversations.get(message.conversation)
    if conversation is not None:
        background.add_task(manager.broadcast, conversation.participants, event("new_message", message=message.to_api()))
    return {"success": True, "message": message.to_api()}


@router.patch("/{message_id}/read")
def mark_read(
    message_id: str,
    background: BackgroundTasks,
    me: str = Depends(auth_required),
    messages: MessageManager = Depends(get_messages),
):
    message, changed = messages.mark_read_by(message_id, me)
    if changed:
        conversation = messages.conversations.get(message.conversation)
        if conversation is not None:
            background.add_task(manager.broadcast, conversation.participants, event(
                "message_read", messageId=message.id, conversationId=message.conversation, user=me,
            ))
    return {"success": True, "message": "Message marked as read", "status": message.status}


@router.delete("/{message_id}")
def delete_message(
    message_id: str,
    background: BackgroundTasks,
    me: str = Depends(auth_required),
    messages: MessageManager = Depends(get_messages),
):
    message = messages.delete(message_id, me)
    conversation = messages.conversations.get(message.conversation)
    if conversation is not None:
        background.add_task(manager.broadcast, conversation.participants, event(
            "message_deleted", messageId=message.id, conversationId=message.conversation,
            lastMessage=conversation.last_message,
        ))
    return {"success": True, "message": "Message deleted"}
