"""Conversation lifecycle: creation, membership, admin rights, keys, settings.

The module-level functions are pure transitions. They take a Conversation
snapshot and return a new one (or the same object when nothing changes) and
never touch the database. ``ConversationManager`` loads snapshots, applies a
transition and saves the result through the compare-and-swap loop in
``core.store``.
"""
import logging
from datetime import datetime
from typing import Iterable, List, Optional, Set, Tuple

from pymongo.database import Database

from .. import config
from ..audit import log_event
from ..errors import Conflict, Forbidden, InvalidArgument, InvalidInput, InvalidOperation, NotFound
from ..models import (
    Conversation,
    ConversationMetadata,
    ConversationSettings,
    ConversationType,
    EncryptionKeys,
    Message,
    SecurityLevel,
    utcnow,
)
from .store import ConversationStore, MessageStore, UserStore, apply_with_retry

logger = logging.getLogger(__name__)

DESCRIPTIVE_FIELDS = ("name", "icon", "color", "description")
SETTINGS_FIELDS = (
    "security_level",
    "message_retention",
    "is_encryption_enabled",
    "is_screenshot_allowed",
    "is_forwarding_allowed",
)
VIEW_FIELDS = ("is_archived", "is_pinned")


def direct_key(user_a: str, user_b: str) -> str:
    return "|".join(sorted((user_a, user_b)))


def _security_level(value) -> str:
    try:
        return SecurityLevel(value).value
    except ValueError:
        raise InvalidArgument(f"invalid security level: {value!r}")


def _retention(value) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidArgument("messageRetention must be a non-negative number of days")
    return value


# --- pure transitions ---

def new_direct_conversation(user_a: str, user_b: str, now: datetime = None) -> Conversation:
    if user_a == user_b:
        raise InvalidArgument("cannot start a conversation with yourself")
    now = now or utcnow()
    return Conversation(
        participants=[user_a, user_b],
        type=ConversationType.DIRECT,
        encryption_keys=EncryptionKeys(key_rotation_timestamp=now),
        created_at=now,
        updated_at=now,
    )


def new_group_conversation(
    creator: str,
    name: str,
    participant_ids: Iterable[str],
    group_key: Optional[str] = None,
    options: dict = None,
    now: datetime = None,
) -> Conversation:
    """Build a group owned by ``creator``.

    ``participant_ids`` are expected to be known users already; duplicates are
    dropped keeping first-seen order and the creator is appended if missing.
    """
    options = {k: v for k, v in (options or {}).items() if v is not None}
    if not name or not name.strip():
        raise InvalidInput("group name is required")

    participants: List[str] = []
    for uid in participant_ids:
        if uid and uid not in participants:
            participants.append(uid)
    if not [p for p in participants if p != creator]:
        raise InvalidInput("at least one other participant is required")
    if creator not in participants:
        participants.append(creator)

    now = now or utcnow()
    return Conversation(
        participants=participants,
        type=ConversationType.GROUP,
        name=name.strip(),
        admins=[creator],
        encryption_keys=EncryptionKeys(group_key=group_key, key_rotation_timestamp=now),
        security_level=_security_level(options.get("security_level", SecurityLevel.HIGH)),
        metadata=ConversationMetadata(
            icon=options.get("icon"),
            color=options.get("color"),
            description=options.get("description"),
        ),
        settings=ConversationSettings(
            message_retention=_retention(options.get("message_retention", 0)),
            is_screenshot_allowed=bool(options.get("is_screenshot_allowed", False)),
            is_forwarding_allowed=bool(options.get("is_forwarding_allowed", True)),
        ),
        created_at=now,
        updated_at=now,
    )


def append_participant(conversation: Conversation, user: str, now: datetime = None) -> Conversation:
    """Low-level helper: add ``user`` if absent, otherwise return unchanged."""
    if conversation.is_participant(user):
        return conversation
    return conversation.evolve(
        participants=conversation.participants + [user],
        updated_at=now or utcnow(),
    )


def require_group_admin(conversation: Conversation, actor: str, action: str = "add participants"):
    if not conversation.is_group:
        raise InvalidOperation(f"cannot {action} in a direct conversation")
    if not conversation.is_admin(actor):
        raise Forbidden(f"only admins can {action}")


def add_participant(conversation: Conversation, actor: str, new_user: str, now: datetime = None) -> Conversation:
    require_group_admin(conversation, actor)
    if conversation.is_participant(new_user):
        raise Conflict("user is already a participant")
    return append_participant(conversation, new_user, now)


def ensure_admin(conversation: Conversation) -> Conversation:
    """Promote the first participant when a non-empty group has no admins."""
    if not conversation.is_group or conversation.admins or not conversation.participants:
        return conversation
    return conversation.evolve(admins=[conversation.participants[0]])


def remove_participant(conversation: Conversation, actor: str, target: str, now: datetime = None) -> Conversation:
    if not conversation.is_group:
        raise InvalidOperation("cannot remove participants from a direct conversation")
    if not conversation.is_admin(actor) and actor != target:
        raise Forbidden("not authorized to remove participants")
    if not conversation.is_participant(target):
        raise NotFound("user is not a participant")

    updated = conversation.evolve(
        participants=[p for p in conversation.participants if p != target],
        admins=[a for a in conversation.admins if a != target],
        updated_at=now or utcnow(),
    )
    return ensure_admin(updated)


def rotate_key(conversation: Conversation, new_key: str, now: datetime = None) -> Conversation:
    now = now or utcnow()
    return conversation.evolve(
        encryption_keys=EncryptionKeys(group_key=new_key, key_rotation_timestamp=now),
        updated_at=now,
    )


def update_conversation(conversation: Conversation, actor: str, fields: dict, now: datetime = None) -> Conversation:
    """Apply a partial update requested by ``actor``.

    Descriptive fields and settings need admin rights in a group; descriptive
    fields are ignored for direct conversations. Archive and pin are open to
    every participant. Unknown keys and None values are ignored.
    """
    if not conversation.is_participant(actor):
        raise Forbidden("not authorized to update this conversation")

    fields = {k: v for k, v in fields.items() if v is not None}
    descriptive = {k: fields[k] for k in DESCRIPTIVE_FIELDS if k in fields}
    settings = {k: fields[k] for k in SETTINGS_FIELDS if k in fields}
    view = {k: fields[k] for k in VIEW_FIELDS if k in fields}

    if conversation.is_group and (descriptive or settings) and not conversation.is_admin(actor):
        raise Forbidden("only admins can update group details")
    if not conversation.is_group:
        descriptive = {}
    if not (descriptive or settings or view):
        return conversation

    changes = {}
    metadata = conversation.metadata.model_dump()
    new_settings = conversation.settings.model_dump()

    if "name" in descriptive:
        if not str(descriptive["name"]).strip():
            raise InvalidArgument("group name cannot be empty")
        changes["name"] = str(descriptive.pop("name")).strip()
    metadata.update(descriptive)
    metadata.update({k: bool(v) for k, v in view.items()})

    if "security_level" in settings:
        changes["security_level"] = _security_level(settings.pop("security_level"))
    if "message_retention" in settings:
        settings["message_retention"] = _retention(settings["message_retention"])
    new_settings.update({k: v if k == "message_retention" else bool(v) for k, v in settings.items()})

    changes["metadata"] = metadata
    changes["settings"] = new_settings
    changes["updated_at"] = now or utcnow()
    return conversation.evolve(**changes)


def set_last_message(conversation: Conversation, message_id: Optional[str], now: datetime = None) -> Conversation:
    return conversation.evolve(last_message=message_id, updated_at=now or utcnow())


# --- manager ---

class ConversationManager:
    def __init__(self, db: Database, max_retries: int = None):
        self.db = db
        self.conversations = ConversationStore(db)
        self.messages = MessageStore(db)
        self.users = UserStore(db)
        self.max_retries = max_retries or config.MAX_WRITE_RETRIES

    def _mutate(self, conversation_id: str, transition) -> Conversation:
        conversation = apply_with_retry(
            lambda: self.conversations.get(conversation_id),
            transition,
            self.conversations.replace,
            self.max_retries,
        )
        if conversation is None:
            raise NotFound("conversation not found")
        return conversation

    def get(self, conversation_id: str) -> Conversation:
        return self.conversations.require(conversation_id)

    def get_for(self, conversation_id: str, viewer: str) -> Conversation:
        conversation = self.get(conversation_id)
        if not conversation.is_participant(viewer):
            raise Forbidden("not authorized to access this conversation")
        return conversation

    def list_for_user(self, user: str, archived: Optional[bool] = None) -> List[Conversation]:
        return self.conversations.find_for_user(user, archived)

    def partners_of(self, user: str) -> Set[str]:
        """Everyone sharing at least one conversation with ``user``."""
        partners = set()
        for conversation in self.conversations.find_for_user(user):
            partners.update(conversation.participants)
        partners.discard(user)
        return partners

    def resolve_last_message(self, conversation: Conversation) -> Optional[Message]:
        if not conversation.last_message:
            return None
        message = self.messages.get(conversation.last_message)
        if message is None or message.conversation != conversation.id:
            logger.warning("Conversation %s points at missing message %s", conversation.id, conversation.last_message)
            return None
        return message

    def find_or_create_direct(self, user_a: str, user_b: str) -> Tuple[Conversation, bool]:
        candidate = new_direct_conversation(user_a, user_b)
        conversation, created = self.conversations.find_or_insert_direct(candidate, direct_key(user_a, user_b))
        if created:
            logger.info("Created direct conversation %s between %s and %s", conversation.id, user_a, user_b)
        return conversation, created

    def create_group(
        self,
        creator: str,
        name: str,
        participant_ids: Iterable[str],
        group_key: Optional[str] = None,
        **options,
    ) -> Conversation:
        requested = [uid.strip() for uid in participant_ids if uid and uid.strip()]
        if not name or not name.strip():
            raise InvalidInput("group name is required")
        if not [uid for uid in requested if uid != creator]:
            raise InvalidInput("at least one participant is required")

        known = self.users.existing(requested)
        resolved = [uid for uid in requested if uid in known and uid != creator]
        if not resolved:
            raise NotFound("no valid participants found")

        conversation = self.conversations.insert(
            new_group_conversation(creator, name, resolved, group_key, options)
        )
        log_event(self.db, creator, "CREATE_GROUP", {
            "conversation": conversation.id,
            "participants": conversation.participants,
        })
        return conversation

    def add_participant(self, conversation_id: str, actor: str, new_user: str) -> Conversation:
        require_group_admin(self.get(conversation_id), actor)
        if not self.users.exists(new_user):
            raise NotFound("user not found")

        conversation = self._mutate(conversation_id, lambda c: add_participant(c, actor, new_user))
        log_event(self.db, actor, "ADD_PARTICIPANT", {"conversation": conversation_id, "user": new_user})
        return conversation

    def remove_participant(self, conversation_id: str, actor: str, target: str) -> Conversation:
        conversation = self._mutate(conversation_id, lambda c: remove_participant(c, actor, target))
        log_event(self.db, actor, "REMOVE_PARTICIPANT", {
            "conversation": conversation_id,
            "user": target,
            "admins": conversation.admins,
        })
        return conversation

    def rotate_key(self, conversation_id: str, new_key: str, actor: str = None) -> Conversation:
        conversation = self._mutate(conversation_id, lambda c: rotate_key(c, new_key))
        log_event(self.db, actor or "system", "ROTATE_KEY", {"conversation": conversation_id})
        return conversation

    def update(self, conversation_id: str, actor: str, fields: dict) -> Conversation:
        return self._mutate(conversation_id, lambda c: update_conversation(c, actor, fields))

    def delete(self, conversation_id: str, actor: str) -> Tuple[Conversation, int]:
        """Delete a conversation and every message in it.

        Returns the removed conversation and the number of messages removed.
        """
        conversation = self.get_for(conversation_id, actor)
        if conversation.is_group and not conversation.is_admin(actor):
            raise Forbidden("only admins can delete a group")

        self.conversations.delete(conversation.id)
        removed = self.messages.delete_for_conversation(conversation.id)
        log_event(self.db, actor, "DELETE_CONVERSATION", {"conversation": conversation.id, "messages": removed})
        return conversation, removed
