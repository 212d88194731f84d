# replai/schemas.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from replai.models import ReviewStatus, TransactionType


class CabinetRef(BaseModel):
    cabinet_id: Optional[int] = None


class CabinetRequired(BaseModel):
    cabinet_id: int


class SyncOut(BaseModel):
    success: bool = True
    fetched: int
    inserted: int
    drafted: int = 0
    auto_sent: int = 0
    errors: list[str] = Field(default_factory=list)


class ArchiveOut(BaseModel):
    success: bool = True
    fetched: int
    inserted: int


class ChatSyncOut(BaseModel):
    success: bool = True
    chats: int
    inserted_chats: int
    fetched_events: int
    inserted_messages: int
    adopted_messages: int


class GenerateReplyIn(BaseModel):
    review_id: int


class GenerateReplyOut(BaseModel):
    success: bool = True
    draft: str


class SendReplyIn(BaseModel):
    review_id: int
    answer_text: Optional[str] = None


class SendReplyOut(BaseModel):
    success: bool = True
    review_id: int
    status: ReviewStatus
    charged: bool
    already_replied: bool = False
    balance: Optional[int] = None


class SendChatMessageIn(BaseModel):
    # id interno (int) o el del marketplace (str)
    chat_id: Union[int, str]
    message: str


class ChatMessageOut(BaseModel):
    id: int
    chat_id: int
    event_id: str
    sender: str
    text: Optional[str] = None
    attachments: list[Any] = Field(default_factory=list)
    sent_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SendChatMessageOut(BaseModel):
    success: bool = True
    message: ChatMessageOut


class ValidateApiKeyIn(BaseModel):
    cabinet_id: int
    api_key: str = ""


class ValidateApiKeyOut(BaseModel):
    valid: bool
    masked_key: Optional[str] = None
    chat_access: bool = False
    archive_imported: bool = False
    archive: Optional[ArchiveOut] = None
    error: Optional[str] = None


class CreatePaymentIn(BaseModel):
    amount: Decimal
    tokens: int


class CreatePaymentOut(BaseModel):
    url: str
    inv_id: int


class BalanceOut(BaseModel):
    balance: int


class TransactionOut(BaseModel):
    id: int
    amount: int
    type: TransactionType
    description: Optional[str] = None
    review_id: Optional[int] = None
    payment_inv_id: Optional[int] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TransactionListOut(BaseModel):
    items: list[TransactionOut]


class AdminBalanceIn(BaseModel):
    user_id: str = Field(min_length=1)
    amount: int = Field(gt=0)
    type: TransactionType
    description: Optional[str] = None


class AdminBalanceOut(BaseModel):
    success: bool = True
    new_balance: int


class AdminStatusIn(BaseModel):
    status: ReviewStatus


class AdminStatusOut(BaseModel):
    success: bool = True
    review_id: int
    status: ReviewStatus


class ArchiveRunOut(BaseModel):
    success: bool = True
    archived: int


class RecomputeOut(BaseModel):
    user_id: str
    balance: int
    folded: int
