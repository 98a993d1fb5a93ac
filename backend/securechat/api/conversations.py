from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Response

from . import get_conversations
from ..auth import auth_required
from ..core import ConversationManager
from ..errors import Forbidden, NotFound
from ..models import Conversation
from ..realtime import event, manager
from ..schemas import (
    ConversationUpdateIn,
    DirectConversationIn,
    GroupConversationIn,
    ParticipantIn,
    RotateKeyIn,
)

router = APIRouter(prefix="/conversations", tags=["conversations"])


def conversation_out(conversations: ConversationManager, conversation: Conversation) -> dict:
    out = conversation.to_api()
    last = conversations.resolve_last_message(conversation)
    out["lastMessage"] = last.to_api() if last else None
    return out


@router.get("")
def list_conversations(
    archived: Optional[bool] = None,
    me: str = Depends(auth_required),
    conversations: ConversationManager = Depends(get_conversations),
):
    items = conversations.list_for_user(me, archived)
    return {"success": True, "conversations": [conversation_out(conversations, c) for c in items]}


@router.post("/direct")
def create_direct(
    data: DirectConversationIn,
    response: Response,
    me: str = Depends(auth_required),
    conversations: ConversationManager = Depends(get_conversations),
):
    recipient = data.recipient.strip()
    if recipient != me and not conversations.users.exists(recipient):
        raise NotFound("recipient not found")

    conversation, created = conversations.find_or_create_direct(me, recipient)
    response.status_code = 201 if created else 200
    return {"success": True, "conversation": conversation_out(conversations, conversation), "isNew": created}


@router.post("/group", status_code=201)
def create_group(
    data: GroupConversationIn,
    background: BackgroundTasks,
    me: str = Depends(auth_required),
    conversations: ConversationManager = Depends(get_conversations),
):
    conversation = conversations.create_group(
        me,
        data.name,
        data.participant_ids,
        data.group_key,
        security_level=data.security_level,
        icon=data.icon,
        color=data.color,
        description=data.description,
        message_retention=data.message_retention,
        is_screenshot_allowed=data.is_screenshot_allowed,
        is_forwarding_allowed=data.is_forwarding_allowed,
    )
    background.add_task(
        manager.broadcast, conversation.participants,
        event("conversation_created", conversationId=conversation.id), exclude=me,
    )
    return {"success": True, "conversation": conversation_out(conversations, conversation)}


@router.get("/{conversation_id}")
def get_conversation(
    conversation_id: str,
    me: str = Depends(auth_required),
    conversations: ConversationManager = Depends(get_conversations),
):
    conversation = conversations.get_for(conversation_id, me)
    return {"success": True, "conversation": conversation_out(conversations, conversation)}


@router.patch("/{conversation_id}")
def update_conversation(
    conversation_id: str,
    data: ConversationUpdateIn,
    background: BackgroundTasks,
    me: str = Depends(auth_required),
    conversations: ConversationManager = Depends(get_conversations),
):
    conversation = conversations.update(conversation_id, me, data.model_dump(exclude_unset=True))
    background.add_task(
        manager.broadcast, conversation.participants,
        event("conversation_updated", conversationId=conversation.id),
    )
    return {"success": True, "conversation": conversation_out(conversations, conversation)}


@router.delete("/{conversation_id}")
def delete_conversation(
    conversation_id: str,
    background: BackgroundTasks,
    me: str = Depends(auth_required),
    conversations: ConversationManager = Depends(get_conversations),
):
    conversation, removed = conversations.delete(conversation_id, me)
    background.add_task(
        manager.broadcast, conversation.participants,
        event("conversation_deleted", conversationId=conversation.id), exclude=me,
    )
    return {"success": True, "deletedMessages": removed}


@router.post("/{conversation_id}/participants")
def add_participant(
    conversation_id: str,
    data: ParticipantIn,
    background: BackgroundTasks,
    me: str = Depends(auth_required),
    conversations: ConversationManager = Depends(get_conversations),
):
    username = data.username.strip()
    conversation = conversations.add_participant(conversation_id, me, username)
    background.add_task(manager.broadcast, conversation.participants, event(
        "participant_added", conversationId=conversation.id, user=username,
    ))
    return {"success": True, "conversation": conversation_out(conversations, conversation)}


@router.delete("/{conversation_id}/participants/{username}")
def remove_participant(
    conversation_id: str,
    username: str,
    background: BackgroundTasks,
    me: str = Depends(auth_required),
    conversations: ConversationManager = Depends(get_conversations),
):
    conversation = conversations.remove_participant(conversation_id, me, username)
    background.add_task(manager.broadcast, conversation.participants + [username], event(
        "participant_removed", conversationId=conversation.id, user=username, admins=conversation.admins,
    ))
    return {"success": True, "conversation": conversation_out(conversations, conversation)}


@router.post("/{conversation_id}/rotate-key")
def rotate_key(
    conversation_id: str,
    data: RotateKeyIn,
    background: BackgroundTasks,
    me: str = Depends(auth_required),
    conversations: ConversationManager = Depends(get_conversations),
):
    current = conversations.get_for(conversation_id, me)
    if current.is_group and not current.is_admin(me):
        raise Forbidden("only admins can rotate the group key")

    conversation = conversations.rotate_key(conversation_id, data.group_key, actor=me)
    background.add_task(manager.broadcast, conversation.participants, event(
        "key_rotated",
        conversationId=conversation.id,
        keyRotationTimestamp=conversation.encryption_keys.key_rotation_timestamp.isoformat(),
    ))
    return {"success": True, "conversation": conversation_out(conversations, conversation)}
