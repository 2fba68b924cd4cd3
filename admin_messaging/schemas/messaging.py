from typing import List, Optional

from pydantic import BaseModel, Field


class DirectConversationRequest(BaseModel):

    recipient_id: str = Field(alias="recipientId")
    title: Optional[str] = Field(default=None, max_length=200)

    model_config = {"populate_by_name": True}


class TextMessageRequest(BaseModel):

    content: str
    reply_to: Optional[str] = Field(default=None, alias="replyTo")
    mentions: List[str] = Field(default_factory=list)
    priority: str = "normal"

    model_config = {"populate_by_name": True}


class MarkReadRequest(BaseModel):

    message_ids: Optional[List[str]] = Field(default=None, alias="messageIds")

    model_config = {"populate_by_name": True}


class EditMessageRequest(BaseModel):

    content: str


class ParticipantRequest(BaseModel):

    user_id: str = Field(alias="userId")

    model_config = {"populate_by_name": True}
