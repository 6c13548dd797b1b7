from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class LegacyMessageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    email: str | None = None
    text: str | None = None
    image_url: str | None = Field(default=None, alias="imageUrl")
    sync: bool = False


class MessageAcceptedResponse(BaseModel):
    status: Literal["ok"] = "ok"


class PollResponse(BaseModel):
    messages: list[dict[str, Any]] = Field(default_factory=list)


class OutboundSendRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    to: str = Field(min_length=1)
    text: str | None = None
    media_url: str | None = Field(default=None, alias="mediaUrl")
    account_id: str | None = Field(default=None, alias="accountId")


class OutboundSendResponse(BaseModel):
    status: Literal["sent", "queued"]
    tier: str
