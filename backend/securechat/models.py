from datetime import datetime
from enum import Enum
from typing import List, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    # MongoDB stores milliseconds; truncating keeps stored and in-memory values equal
    now = datetime.utcnow()
    return now.replace(microsecond=now.microsecond - now.microsecond % 1000)


class ConversationType(str, Enum):
    DIRECT = "direct"
    GROUP = "group"


class SecurityLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class MessageStatus(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class Document(BaseModel):
    """Immutable value object persisted with camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        use_enum_values=True,
        validate_default=True,
    )

    def evolve(self, **changes):
        """Return a validated copy with ``changes`` applied."""
        data = self.model_dump()
        data.update(changes)
        return type(self).model_validate(data)


class StoredDocument(Document):
    id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    # revision counter for compare-and-swap writes
    version: int = 0

    def to_document(self) -> dict:
        doc = self.model_dump(by_alias=True, exclude={"id"})
        if self.id:
            doc["_id"] = ObjectId(self.id)
        return doc

    def to_api(self) -> dict:
        return self.model_dump(by_alias=True, exclude={"version"})

    @classmethod
    def from_document(cls, doc: dict):
        data = {k: v for k, v in doc.items() if k not in ("_id", "directKey")}
        data["id"] = str(doc["_id"])
        return cls.model_validate(data)


# --- conversation ---

class EncryptionKeys(Document):
    group_key: Optional[str] = None
    key_rotation_timestamp: datetime = Field(default_factory=utcnow)


class ConversationSettings(Document):
    message_retention: int = Field(default=0, ge=0)  # days, 0 keeps forever
    is_encryption_enabled: bool = True
    is_screenshot_allowed: bool = False
    is_forwarding_allowed: bool = True


class ConversationMetadata(Document):
    icon: Optional[str] = None
    color: Optional[str] = None
    description: Optional[str] = None
    is_archived: bool = False
    is_pinned: bool = False


class Conversation(StoredDocument):
    participants: List[str]
    type: ConversationType = ConversationType.DIRECT
    name: Optional[str] = None
    last_message: Optional[str] = None
    encryption_keys: EncryptionKeys = Field(default_factory=EncryptionKeys)
    security_level: SecurityLevel = SecurityLevel.HIGH
    admins: List[str] = Field(default_factory=list)
    settings: ConversationSettings = Field(default_factory=ConversationSettings)
    metadata: ConversationMetadata = Field(default_factory=ConversationMetadata)

    @property
    def is_group(self) -> bool:
        return self.type == ConversationType.GROUP

    def is_participant(self, user: str) -> bool:
        return user in self.participants

    def is_admin(self, user: str) -> bool:
        return user in self.admins


# --- message ---

class EncryptedContent(Document):
    data: str
    nonce: str
    algorithm: str = "XChaCha20-Poly1305"


class Attachment(Document):
    encrypted_data: Optional[str] = None
    nonce: Optional[str] = None
    mime_type: Optional[str] = None
    filename: Optional[str] = None
    size: Optional[int] = None


class ReadReceipt(Document):
    user: str
    timestamp: datetime = Field(default_factory=utcnow)


class SecurityMetadata(Document):
    integrity_hash: Optional[str] = None
    signature_valid: bool = True
    security_level: SecurityLevel = SecurityLevel.HIGH


class Message(StoredDocument):
    conversation: str
    sender: str
    encrypted_content: EncryptedContent
    attachments: List[Attachment] = Field(default_factory=list)
    read_by: List[ReadReceipt] = Field(default_factory=list)
    security_metadata: SecurityMetadata = Field(default_factory=SecurityMetadata)
    status: MessageStatus = MessageStatus.SENT
    expires_at: Optional[datetime] = None
    is_ephemeral: bool = False
