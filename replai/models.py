# replai/models.py
import enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from replai.db import Base
from replai.utils import utcnow


class ReviewStatus(str, enum.Enum):
    new = "new"
    pending = "pending"
    answered = "answered"
    sent = "sent"
    auto = "auto"
    archived = "archived"


class PaymentStatus(str, enum.Enum):
    pending = "pending"
    completed = "completed"


class TransactionType(str, enum.Enum):
    bonus = "bonus"
    purchase = "purchase"
    usage = "usage"
    admin_topup = "admin_topup"
    admin_deduct = "admin_deduct"


class Cabinet(Base):
    """Cuenta de vendedor en el marketplace (credencial + config de IA)."""

    __tablename__ = "cabinets"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)

    name = Column(String(200), nullable=False, default="")
    brand_name = Column(String(200), nullable=False, default="")

    api_key = Column(Text, nullable=True)
    api_key_valid = Column(Boolean, nullable=False, default=False)

    # Capas del prompt: default global -> reglas -> ejemplos
    ai_prompt_rules = Column(Text, nullable=False, default="")
    ai_prompt_examples = Column(Text, nullable=False, default="")

    # {"1": "manual", ..., "5": "auto"}
    reply_modes = Column(JSON, nullable=False, default=dict)

    is_active = Column(Boolean, nullable=False, default=False)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class GlobalSetting(Base):
    __tablename__ = "global_settings"

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=False, default="")
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class UserRole(Base):
    __tablename__ = "user_roles"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    role = Column(String(20), nullable=False, default="user")

    __table_args__ = (UniqueConstraint("user_id", "role", name="uq_user_roles_user_role"),)


class ProductRecommendation(Base):
    __tablename__ = "product_recommendations"

    id = Column(Integer, primary_key=True)
    cabinet_id = Column(Integer, ForeignKey("cabinets.id"), nullable=False, index=True)
    source_article = Column(String(64), nullable=False, index=True)
    target_article = Column(String(64), nullable=False)
    target_name = Column(String(300), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Review(Base):
    __tablename__ = "reviews"

    id = Column(Integer, primary_key=True, index=True)

    # id del marketplace; único por cabinet
    external_id = Column(String(64), nullable=False)
    user_id = Column(String(64), nullable=False, index=True)
    cabinet_id = Column(Integer, ForeignKey("cabinets.id"), nullable=False)

    rating = Column(Integer, nullable=False)
    author_name = Column(String(200), nullable=False, default="")
    brand_name = Column(String(200), nullable=False, default="")
    product_name = Column(String(500), nullable=False, default="")
    product_article = Column(String(64), nullable=False, default="")

    text = Column(Text, nullable=True)
    pros = Column(Text, nullable=True)
    cons = Column(Text, nullable=True)
    photo_links = Column(JSON, nullable=False, default=list)
    has_video = Column(Boolean, nullable=False, default=False)
    is_edited = Column(Boolean, nullable=False, default=False)

    status = Column(Enum(ReviewStatus), nullable=False, default=ReviewStatus.new)
    ai_draft = Column(Text, nullable=True)
    sent_answer = Column(Text, nullable=True)

    created_date = Column(DateTime(timezone=True), nullable=True)
    fetched_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("cabinet_id", "external_id", name="uq_reviews_cabinet_external"),
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_reviews_rating_range"),
        Index("ix_reviews_status_updated", "status", "updated_at"),
    )

    def __repr__(self):
        return f"<Review(id={self.id}, external_id='{self.external_id}', status='{self.status}')>"


class Chat(Base):
    __tablename__ = "chats"

    id = Column(Integer, primary_key=True, index=True)
    external_id = Column(String(128), nullable=False)
    user_id = Column(String(64), nullable=False, index=True)
    cabinet_id = Column(Integer, ForeignKey("cabinets.id"), nullable=False)

    client_name = Column(String(200), nullable=False, default="")
    product_name = Column(String(500), nullable=False, default="")
    product_nm_id = Column(Integer, nullable=True)

    last_message_text = Column(Text, nullable=True)
    last_message_at = Column(DateTime(timezone=True), nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)

    # token del proveedor necesario para responder
    reply_sign = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    messages = relationship(
        "ChatMessage", back_populates="chat", order_by="ChatMessage.sent_at"
    )

    __table_args__ = (
        UniqueConstraint("cabinet_id", "external_id", name="uq_chats_cabinet_external"),
    )


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id = Column(Integer, primary_key=True, index=True)
    chat_id = Column(Integer, ForeignKey("chats.id"), nullable=False, index=True)

    event_id = Column(String(128), nullable=False)
    sender = Column(String(16), nullable=False, default="client")  # seller | client
    text = Column(Text, nullable=True)
    attachments = Column(JSON, nullable=False, default=list)
    sent_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    chat = relationship("Chat", back_populates="messages")

    __table_args__ = (
        UniqueConstraint("chat_id", "event_id", name="uq_chat_messages_chat_event"),
    )


class Payment(Base):
    __tablename__ = "payments"

    # InvId de la pasarela: secuencial
    inv_id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)

    amount = Column(Numeric(12, 2), nullable=False)
    tokens = Column(Integer, nullable=False)
    status = Column(Enum(PaymentStatus), nullable=False, default=PaymentStatus.pending)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("tokens > 0", name="ck_payments_tokens_positive"),
    )


class TokenBalance(Base):
    """Proyección del saldo. La fuente de verdad es token_transactions."""

    __tablename__ = "token_balances"

    user_id = Column(String(64), primary_key=True)
    balance = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_token_balances_non_negative"),
    )


class TokenTransaction(Base):
    __tablename__ = "token_transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)

    amount = Column(Integer, nullable=False)  # con signo
    type = Column(Enum(TransactionType), nullable=False)
    description = Column(Text, nullable=True)

    review_id = Column(Integer, nullable=True)
    payment_inv_id = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


Index("ix_token_transactions_user_type", TokenTransaction.user_id, TokenTransaction.type)
