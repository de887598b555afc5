from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class VoteDirection(str, Enum):
    UP = "up"
    DOWN = "down"


class RequestStatus(str, Enum):
    PENDING = "pending"
    PUBLISHED = "published"


class FeatureRequest(BaseModel):
    id: int
    author_tg_id: Optional[int] = None
    author_username: Optional[str] = None
    title: str = ""
    description: str = ""
    tags: list[str] = Field(default_factory=list)
    domain: str = ""
    status: RequestStatus = RequestStatus.PENDING
    vote_count: int = 0
    priority_boost: int = 0
    has_priority: bool = False
    channel_chat_id: Optional[str] = None
    channel_message_id: Optional[int] = None

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data):
        # Nullable columns fall back to field defaults
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data

    @field_validator("channel_chat_id", mode="before")
    @classmethod
    def _chat_id_as_str(cls, value):
        return str(value)

    @property
    def is_bound(self) -> bool:
        return bool(self.channel_chat_id and self.channel_message_id)


class Vote(BaseModel):
    request_id: int
    voter_tg_id: int
    direction: VoteDirection


class Payment(BaseModel):
    charge_id: str
    request_id: int
    payer_tg_id: int
    amount: int
    currency: str = "XTR"
    kind: str
    boost: int
    boost_applied: bool = False
    provider_charge_id: Optional[str] = None


class PaymentKind(BaseModel):
    """A purchasable boost: price in Stars and the votes it adds once."""
    name: str
    title: str
    description: str
    price: int
    boost: int


class PublishResult(BaseModel):
    request_id: int
    channel_message_id: Optional[int] = None
    channel_chat_id: Optional[str] = None


# API Request/Response models

class SubmitRequest(BaseModel):
    """
    Body of POST /submit.

    Field aliases match what the dialog SaaS sends (request_type,
    request_text, user_id, user_name).
    """
    title: Optional[str] = None
    request_type: Optional[str] = None
    request_title: Optional[str] = None
    description: Optional[str] = None
    request_text: Optional[str] = None
    text: Optional[str] = None
    tags: Optional[list] = None
    domain: Optional[str] = None
    author_tg_id: Optional[int | str] = None
    user_id: Optional[int | str] = None
    author_username: Optional[str] = None
    user_name: Optional[str] = None

    def resolved_title(self) -> str:
        value = self.title or self.request_type or self.request_title or ""
        return str(value).strip()

    def resolved_description(self) -> str:
        value = self.description or self.request_text or self.text or ""
        return str(value).strip()

    def resolved_author_id(self) -> Optional[int]:
        for value in (self.author_tg_id, self.user_id):
            try:
                return int(value)
            except (TypeError, ValueError):
                continue
        return None

    def resolved_username(self) -> Optional[str]:
        return self.author_username or self.user_name


class SubmitResponse(BaseModel):
    ok: bool = True
    request_id: int
    channel_message_id: Optional[int] = None
    channel_chat_id: Optional[str] = None
