"""Message lifecycle: send, read receipts, paging and deletion."""
import logging
from datetime import datetime
from typing import List, NamedTuple, Optional, Sequence, Tuple

from bson import ObjectId
from pymongo.database import Database

from .. import config
from ..audit import log_event
from ..errors import Forbidden, InvalidArgument, NotFound
from ..models import (
    Attachment,
    Conversation,
    EncryptedContent,
    Message,
    MessageStatus,
    ReadReceipt,
    SecurityMetadata,
    utcnow,
)
from .conversations import set_last_message
from .store import ConversationStore, MessageStore, apply_with_retry

logger = logging.getLogger(__name__)


class MessagePage(NamedTuple):
    messages: List[Message]
    # true when the page is full; more messages may or may not exist
    has_more: bool


def new_message(
    conversation: Conversation,
    sender: str,
    encrypted_content: EncryptedContent,
    attachments: Sequence[Attachment] = (),
    integrity_hash: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    is_ephemeral: bool = False,
    now: datetime = None,
) -> Message:
    if not conversation.is_participant(sender):
        raise Forbidden("not authorized to send messages to this conversation")
    now = now or utcnow()
    return Message(
        conversation=conversation.id,
        sender=sender,
        encrypted_content=encrypted_content,
        attachments=list(attachments),
        read_by=[ReadReceipt(user=sender, timestamp=now)],
        security_metadata=SecurityMetadata(
            integrity_hash=integrity_hash,
            security_level=conversation.security_level,
        ),
        status=MessageStatus.SENT,
        expires_at=expires_at,
        is_ephemeral=is_ephemeral,
        created_at=now,
        updated_at=now,
    )


def is_read_by(message: Message, user: str) -> bool:
    return any(receipt.user == user for receipt in message.read_by)


def mark_read_by(message: Message, user: str, now: datetime = None) -> Message:
    """Add a read receipt for ``user``; returns ``message`` itself if one exists."""
    if is_read_by(message, user):
        return message
    now = now or utcnow()
    return message.evolve(
        read_by=message.read_by + [ReadReceipt(user=user, timestamp=now)],
        status=MessageStatus.READ,
        updated_at=now,
    )


def _recency(message: Message):
    return message.created_at, ObjectId(message.id)


def advance_last_message(conversation: Conversation, message: Message, current: Optional[Message]) -> Conversation:
    """Point the conversation at ``message`` unless ``current`` is newer.

    ``current`` is whatever the stored pointer resolves to, or None when it is
    unset or dangling.
    """
    if current is not None and _recency(current) > _recency(message):
        return conversation
    if conversation.last_message == message.id:
        return conversation
    return set_last_message(conversation, message.id)


def repair_last_message(conversation: Conversation, deleted_id: str, replacement: Optional[Message]) -> Conversation:
    if conversation.last_message != deleted_id:
        return conversation
    return set_last_message(conversation, replacement.id if replacement else None)


class MessageManager:
    def __init__(self, db: Database, max_retries: int = None):
        self.db = db
        self.conversations = ConversationStore(db)
        self.messages = MessageStore(db)
        self.max_retries = max_retries or config.MAX_WRITE_RETRIES

    def get(self, message_id: str) -> Message:
        return self.messages.require(message_id)

    def _pointed_at(self, conversation: Conversation) -> Optional[Message]:
        if not conversation.last_message:
            return None
        return self.messages.get(conversation.last_message)

    def get_for(self, message_id: str, viewer: str) -> Tuple[Message, Conversation]:
        message = self.get(message_id)
        conversation = self.conversations.get(message.conversation)
        if conversation is None:
            raise NotFound("message not found")
        if not conversation.is_participant(viewer):
            raise Forbidden("not authorized to access this message")
        return message, conversation

    def send(
        self,
        conversation_id: str,
        sender: str,
        encrypted_content: EncryptedContent,
        attachments: Sequence[Attachment] = (),
        integrity_hash: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        is_ephemeral: bool = False,
    ) -> Message:
        """Store a message and point the conversation at it.

        If the pointer cannot be updated the message is removed again and the
        error propagates, so a failed send never leaves a visible message.
        """
        conversation = self.conversations.require(conversation_id)
        message = self.messages.insert(new_message(
            conversation, sender, encrypted_content, attachments,
            integrity_hash, expires_at, is_ephemeral,
        ))

        try:
            updated = apply_with_retry(
                lambda: self.conversations.get(conversation_id),
                lambda c: advance_last_message(c, message, self._pointed_at(c)),
                self.conversations.replace,
                self.max_retries,
            )
            if updated is None:
                raise NotFound("conversation not found")
        except Exception:
            logger.warning("Rolling back message %s: conversation %s was not updated", message.id, conversation_id)
            self.messages.delete(message.id)
            raise

        logger.info("Message %s sent by %s to %s", message.id, sender, conversation_id)
        return message

    def mark_read_by(self, message_id: str, user: str) -> Tuple[Message, bool]:
        """Returns the message and whether a new receipt was recorded."""
        message, _ = self.get_for(message_id, user)
        if is_read_by(message, user):
            return message, False

        # the last transition run decides; a racing request may have added the receipt first
        outcome = {"changed": False}

        def transition(current: Message) -> Message:
            result = mark_read_by(current, user)
            outcome["changed"] = result is not current
            return result

        updated = apply_with_retry(
            lambda: self.messages.get(message_id),
            transition,
            self.messages.replace,
            self.max_retries,
        )
        if updated is None:
            raise NotFound("message not found")
        if outcome["changed"]:
            logger.info("Message %s read by %s", message_id, user)
        return updated, outcome["changed"]

    def list_by_conversation(
        self,
        conversation_id: str,
        viewer: str,
        limit: int = config.DEFAULT_PAGE_SIZE,
        before: Optional[datetime] = None,
    ) -> MessagePage:
        if limit < 1:
            raise InvalidArgument("limit must be at least 1")
        limit = min(limit, config.MAX_PAGE_SIZE)

        conversation = self.conversations.require(conversation_id)
        if not conversation.is_participant(viewer):
            raise Forbidden("not authorized to access this conversation")

        rows = self.messages.newest_first(conversation.id, limit, before)
        return MessagePage(messages=list(reversed(rows)), has_more=len(rows) == limit)

    def delete(self, message_id: str, actor: str) -> Message:
        message = self.get(message_id)
        if message.sender != actor:
            raise Forbidden("not authorized to delete this message")

        def repair(conversation: Conversation) -> Conversation:
            if conversation.last_message != message.id:
                return conversation
            return repair_last_message(conversation, message.id, self.messages.latest(conversation.id))

        self.messages.delete(message.id)
        apply_with_retry(
            lambda: self.conversations.get(message.conversation),
            repair,
            self.conversations.replace,
            self.max_retries,
        )
        log_event(self.db, actor, "DELETE_MESSAGE", {"message": message.id, "conversation": message.conversation})
        return message
