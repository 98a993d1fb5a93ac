from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .models import Attachment, EncryptedContent, SecurityLevel


class CamelIn(BaseModel):
    # accepts both camelCase and snake_case keys; anything else is dropped
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class RegisterIn(BaseModel):
    username: str
    password: str


class LoginIn(BaseModel):
    username: str
    password: str


class TokenOut(BaseModel):
    token: str
    username: str


class UserOut(BaseModel):
    username: str


class DirectConversationIn(CamelIn):
    recipient: str


class GroupConversationIn(CamelIn):
    name: str = ""
    participant_ids: List[str] = Field(default_factory=list)
    group_key: Optional[str] = None
    security_level: Optional[SecurityLevel] = None
    icon: Optional[str] = None
    color: Optional[str] = None
    description: Optional[str] = None
    message_retention: Optional[int] = Field(default=None, ge=0)
    is_screenshot_allowed: Optional[bool] = None
    is_forwarding_allowed: Optional[bool] = None


class ConversationUpdateIn(CamelIn):
    name: Optional[str] = None
    icon: Optional[str] = None
    color: Optional[str] = None
    description: Optional[str] = None
    is_archived: Optional[bool] = None
    is_pinned: Optional[bool] = None
    security_level: Optional[SecurityLevel] = None
    message_retention: Optional[int] = Field(default=None, ge=0)
    is_encryption_enabled: Optional[bool] = None
    is_screenshot_allowed: Optional[bool] = None
    is_forwarding_allowed: Optional[bool] = None


class ParticipantIn(CamelIn):
    username: str


class RotateKeyIn(CamelIn):
    group_key: str


class SendMessageIn(CamelIn):
    conversation_id: str
    encrypted_content: EncryptedContent
    attachments: List[Attachment] = Field(default_factory=list)
    integrity_hash: Optional[str] = None
    expires_at: Optional[datetime] = None
    is_ephemeral: bool = False
