from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Optional, Union, Literal

from pydantic import BaseModel, BeforeValidator, Field, TypeAdapter, field_validator


ATTACHMENT_FIELDS = ("fileUrl", "fileName", "fileSize")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _number_to_str(value):
    # Clients may send numeric ids; ids are always handled as strings
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


EntityId = Annotated[str, BeforeValidator(_number_to_str)]
entity_id = TypeAdapter(EntityId)


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    LINK = "link"


class Identity(BaseModel):
    userId: str
    name: str
    avatar: Optional[str] = None
    role: Optional[str] = None


class PresenceEntry(BaseModel):
    userId: str
    connectionId: str
    name: str
    avatar: Optional[str] = None


class SenderInfo(BaseModel):
    id: str
    name: Optional[str] = None
    avatar: Optional[str] = None
    role: Optional[str] = None


class CommunityTarget(BaseModel):
    kind: Literal["community"] = "community"
    communityId: str


class DirectTarget(BaseModel):
    kind: Literal["direct"] = "direct"
    receiverId: str


MessageTarget = Annotated[Union[CommunityTarget, DirectTarget], Field(discriminator="kind")]


class ChatMessage(BaseModel):
    """A persisted chat message.

    The target is either a community or a single receiver. On the wire and in
    the store that shows up as exactly one of ``community`` / ``receiver``.
    """

    id: str
    sender: SenderInfo
    target: MessageTarget
    content: str
    type: MessageType = MessageType.TEXT
    fileUrl: Optional[str] = None
    fileName: Optional[str] = None
    fileSize: Optional[int] = None
    read: bool = False
    readAt: Optional[datetime] = None
    createdAt: datetime = Field(default_factory=utc_now)

    @property
    def isPrivate(self) -> bool:
        return isinstance(self.target, DirectTarget)

    def to_wire(self) -> dict:
        data = self.model_dump(mode="json", exclude={"target", *ATTACHMENT_FIELDS})
        for name in ATTACHMENT_FIELDS:
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        if isinstance(self.target, CommunityTarget):
            data["community"] = self.target.communityId
        else:
            data["receiver"] = self.target.receiverId
        data["isPrivate"] = self.isPrivate
        return data

    def to_document(self) -> dict:
        # Only the sender id is stored; display fields are filled in on load
        data = self.to_wire()
        data["sender"] = self.sender.id
        return data

    @classmethod
    def from_document(cls, document: dict, sender: Optional[SenderInfo] = None) -> "ChatMessage":
        document = dict(document)
        if document.get("community"):
            target = CommunityTarget(communityId=document.pop("community"))
        else:
            target = DirectTarget(receiverId=document.pop("receiver"))
        document.pop("isPrivate", None)
        sender_id = document.pop("sender")
        return cls(target=target, sender=sender or SenderInfo(id=sender_id), **document)


class _MessageBody(BaseModel):
    content: str
    type: MessageType = MessageType.TEXT
    fileUrl: Optional[str] = None
    fileName: Optional[str] = None
    fileSize: Optional[int] = None

    @field_validator("content")
    @classmethod
    def content_required(cls, value: str) -> str:
        if not value:
            raise ValueError("Message content is required")
        return value

    @field_validator("type", mode="before")
    @classmethod
    def default_type(cls, value):
        return value or MessageType.TEXT

    def attachments(self) -> dict:
        return {name: getattr(self, name) for name in ATTACHMENT_FIELDS if getattr(self, name) is not None}


class CommunityMessageRequest(_MessageBody):
    communityId: EntityId


class PrivateMessageRequest(_MessageBody):
    receiverId: EntityId


class TypingRequest(BaseModel):
    communityId: Optional[EntityId] = None
    receiverId: Optional[EntityId] = None


class ReadReceiptRequest(BaseModel):
    messageId: EntityId


class NotificationRelayRequest(BaseModel):
    userId: EntityId
    notification: Any = None


class Frame(BaseModel):
    """One JSON frame on the socket, in either direction."""

    event: str
    data: Any = None


class MessageListResponse(BaseModel):
    success: bool = True
    messages: list[dict]


class OnlineUsersResponse(BaseModel):
    success: bool = True
    users: list[PresenceEntry]
