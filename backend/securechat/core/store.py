"""MongoDB access for conversations, messages and user lookups.

Every write of an existing record is a compare-and-swap on its ``version``
field: ``replace`` only succeeds if nobody else saved the record since it was
read. ``apply_with_retry`` wraps that in a reload-and-reapply loop so callers
express an update as a pure ``old -> new`` function.
"""
import logging
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Set, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from ..errors import ConcurrencyError, NotFound
from ..models import Conversation, Message

logger = logging.getLogger(__name__)

# newest first; the id breaks ties between messages created in the same millisecond
NEWEST_FIRST = [("createdAt", DESCENDING), ("_id", DESCENDING)]


class StaleWriteError(Exception):
    """The stored version no longer matches the one the update was based on."""


def to_object_id(value: str, what: str = "record") -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise NotFound(f"{what} not found")


def apply_with_retry(load: Callable, transition: Callable, save: Callable, attempts: int):
    """Run ``save(transition(load()))`` until the compare-and-swap wins.

    ``load`` may return None when the record is gone, in which case nothing is
    written and None is returned. A transition returning its input unchanged
    is a no-op and skips the write.
    """
    for attempt in range(1, attempts + 1):
        current = load()
        if current is None:
            return None
        updated = transition(current)
        if updated is current:
            return current
        try:
            return save(updated)
        except StaleWriteError:
            logger.debug("Lost write race on %s (attempt %d/%d)", current.id, attempt, attempts)
    logger.warning("Giving up after %d conflicting writes", attempts)
    raise ConcurrencyError("record is being modified concurrently, try again")


class _VersionedCollection:
    model = None
    what = "record"

    def __init__(self, collection):
        self.collection = collection

    def get(self, record_id: str):
        doc = self.collection.find_one({"_id": to_object_id(record_id, self.what)})
        return self.model.from_document(doc) if doc else None

    def require(self, record_id: str):
        record = self.get(record_id)
        if record is None:
            raise NotFound(f"{self.what} not found")
        return record

    def insert(self, record):
        doc = record.to_document()
        doc.pop("_id", None)
        result = self.collection.insert_one(doc)
        return record.evolve(id=str(result.inserted_id))

    def replace(self, record):
        oid = to_object_id(record.id, self.what)
        saved = record.evolve(version=record.version + 1)
        doc = saved.to_document()
        doc.pop("_id")
        result = self.collection.update_one(
            {"_id": oid, "version": record.version},
            {"$set": doc},
        )
        if result.matched_count == 0:
            if self.collection.find_one({"_id": oid}, {"_id": 1}) is None:
                raise NotFound(f"{self.what} not found")
            raise StaleWriteError(record.id)
        return saved

    def delete(self, record_id: str) -> bool:
        result = self.collection.delete_one({"_id": to_object_id(record_id, self.what)})
        return result.deleted_count == 1


class ConversationStore(_VersionedCollection):
    model = Conversation
    what = "conversation"

    def __init__(self, db: Database):
        super().__init__(db.conversations)

    def find_or_insert_direct(self, conversation: Conversation, direct_key: str) -> Tuple[Conversation, bool]:
        """Insert ``conversation`` unless a record with ``direct_key`` exists.

        Returns the stored record and whether this call created it. Two racing
        callers both end up with the single winning record.
        """
        existing = self.collection.find_one({"directKey": direct_key})
        if existing:
            return Conversation.from_document(existing), False

        doc = conversation.to_document()
        doc.pop("_id", None)
        created = False
        try:
            result = self.collection.update_one(
                {"directKey": direct_key},
                {"$setOnInsert": doc},
                upsert=True,
            )
            created = result.upserted_id is not None
        except DuplicateKeyError:
            logger.debug("Direct conversation %s created concurrently", direct_key)

        stored = self.collection.find_one({"directKey": direct_key})
        return Conversation.from_document(stored), created

    def find_for_user(self, user: str, archived: Optional[bool] = None) -> List[Conversation]:
        query = {"participants": user}
        if archived is not None:
            query["metadata.isArchived"] = archived
        cursor = self.collection.find(query).sort([
            ("metadata.isPinned", DESCENDING),
            ("updatedAt", DESCENDING),
        ])
        return [Conversation.from_document(doc) for doc in cursor]


class MessageStore(_VersionedCollection):
    model = Message
    what = "message"

    def __init__(self, db: Database):
        super().__init__(db.messages)

    def latest(self, conversation_id: str) -> Optional[Message]:
        doc = next(iter(self.collection.find({"conversation": conversation_id}).sort(NEWEST_FIRST).limit(1)), None)
        return Message.from_document(doc) if doc else None

    def newest_first(self, conversation_id: str, limit: int, before: Optional[datetime] = None) -> List[Message]:
        query = {"conversation": conversation_id}
        if before is not None:
            query["createdAt"] = {"$lt": before}
        cursor = self.collection.find(query).sort(NEWEST_FIRST).limit(limit)
        return [Message.from_document(doc) for doc in cursor]

    def delete_for_conversation(self, conversation_id: str) -> int:
        return self.collection.delete_many({"conversation": conversation_id}).deleted_count


class UserStore:
    def __init__(self, db: Database):
        self.collection = db.users

    def exists(self, username: str) -> bool:
        return self.collection.find_one({"username": username}, {"_id": 1}) is not None

    def existing(self, usernames: Iterable[str]) -> Set[str]:
        cursor = self.collection.find({"username": {"$in": list(usernames)}}, {"username": 1})
        return {u["username"] for u in cursor}

    def list_usernames(self, exclude: str = None) -> List[str]:
        query = {"username": {"$ne": exclude}} if exclude else {}
        cursor = self.collection.find(query, {"username": 1}).sort("username", ASCENDING)
        return [u["username"] for u in cursor]
