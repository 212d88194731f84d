# replai/marketplace/dto.py
"""
DTOs del API del marketplace. Todo campo es opcional: el proveedor omite
claves según el tipo de feedback/evento y a veces cambia el casing
(chatID / chatId). Nada de dicts crudos fuera del cliente.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class _DTO(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, coerce_numbers_to_str=True)


class PhotoLink(_DTO):
    full_size: Optional[str] = Field(default=None, alias="fullSize")
    mini_size: Optional[str] = Field(default=None, alias="miniSize")


class Video(_DTO):
    preview_image: Optional[str] = Field(default=None, alias="previewImage")
    link: Optional[str] = None


class ProductDetails(_DTO):
    nm_id: Optional[int] = Field(default=None, alias="nmId")
    product_name: Optional[str] = Field(default=None, alias="productName")
    brand_name: Optional[str] = Field(default=None, alias="brandName")
    supplier_article: Optional[str] = Field(default=None, alias="supplierArticle")


class FeedbackAnswer(_DTO):
    text: Optional[str] = None


class FeedbackDTO(_DTO):
    id: str
    text: Optional[str] = None
    pros: Optional[str] = None
    cons: Optional[str] = None
    product_valuation: Optional[int] = Field(default=None, alias="productValuation")
    created_date: Optional[datetime] = Field(default=None, alias="createdDate")
    user_name: Optional[str] = Field(default=None, alias="userName")
    subject_name: Optional[str] = Field(default=None, alias="subjectName")
    nm_id: Optional[int] = Field(default=None, alias="nmId")
    product_details: Optional[ProductDetails] = Field(default=None, alias="productDetails")
    photo_links: Optional[list[PhotoLink]] = Field(default=None, alias="photoLinks")
    video: Optional[Video] = None
    answer: Optional[FeedbackAnswer] = None

    @property
    def rating(self) -> int:
        v = self.product_valuation or 5
        return min(max(int(v), 1), 5)

    @property
    def product_name(self) -> str:
        details = self.product_details
        return (details and details.product_name) or self.subject_name or "Товар"

    @property
    def product_article(self) -> str:
        details = self.product_details
        nm_id = (details and details.nm_id) or self.nm_id
        return str(nm_id) if nm_id else ""

    @property
    def brand_name(self) -> str:
        details = self.product_details
        return (details and details.brand_name) or ""

    @property
    def has_video(self) -> bool:
        return bool(self.video and (self.video.link or self.video.preview_image))

    @property
    def answer_text(self) -> Optional[str]:
        return (self.answer and self.answer.text) or None


class GoodCard(_DTO):
    nm_id: Optional[int] = Field(default=None, validation_alias=AliasChoices("nmID", "nmId"))
    name: Optional[str] = None


class ChatDTO(_DTO):
    chat_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("chatID", "chatId"))
    reply_sign: Optional[str] = Field(default=None, alias="replySign")
    client_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("clientName", "userName")
    )
    nm_id: Optional[int] = Field(default=None, validation_alias=AliasChoices("nmId", "productNmId"))
    product_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("productName", "subjectName")
    )
    good_card: Optional[GoodCard] = Field(default=None, alias="goodCard")

    @property
    def product_nm_id(self) -> Optional[int]:
        return self.nm_id or (self.good_card and self.good_card.nm_id) or None


class EventMessage(_DTO):
    text: Optional[str] = None
    sender_type: Optional[str] = Field(default=None, alias="senderType")
    attachments: Optional[Any] = None


class EventFile(_DTO):
    id: Optional[str] = None
    type: Optional[str] = None
    name: Optional[str] = None


class ChatEventDTO(_DTO):
    event_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("eventID", "eventId", "id")
    )
    chat_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("chatID", "chatId"))
    sender: Optional[str] = None
    is_manager: Optional[bool] = Field(
        default=None, validation_alias=AliasChoices("isManager", "is_manager")
    )
    direction: Optional[str] = None
    sender_type: Optional[str] = Field(default=None, alias="senderType")
    # a veces llega como texto plano en vez de objeto
    message: Union[EventMessage, str, None] = None
    text: Optional[str] = None
    file: Optional[EventFile] = None
    images: Optional[list[Any]] = None
    created_at: Optional[datetime] = Field(
        default=None, validation_alias=AliasChoices("addTime", "createdAt", "created_at", "addTimestamp")
    )

    @property
    def sender_role(self) -> str:
        if (
            self.is_manager
            or self.sender == "seller"
            or self.direction == "out"
            or self.sender_type == "seller"
            or (isinstance(self.message, EventMessage) and self.message.sender_type == "seller")
        ):
            return "seller"
        return "client"

    @property
    def message_text(self) -> Optional[str]:
        if isinstance(self.message, str):
            return self.message or self.text or None
        return (self.message and self.message.text) or self.text or None

    def attachment_list(self) -> list[dict]:
        out = []
        if self.file:
            out.append({"type": self.file.type or "file", "id": self.file.id or "", "name": self.file.name or ""})
        for img in self.images or []:
            if isinstance(img, dict):
                out.append({"type": "image", "id": str(img.get("id") or ""), "name": img.get("name") or ""})
            else:
                out.append({"type": "image", "id": str(img), "name": ""})
        return out
