# replai/reviews/drafts.py
"""
Borradores de respuesta con IA.

System prompt = capas en orden fijo: prompt global -> reglas del cabinet ->
ejemplos del cabinet. El mensaje de usuario se arma con la reseña, los
adjuntos, el nombre del comprador y las instrucciones condicionales
(rechazo, marca, recomendaciones, reseña vacía).
"""
from __future__ import annotations

import logging
from typing import Any, Optional, Union

import openai
from openai import OpenAI
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from replai.config import Settings
from replai.errors import ConfigurationError, EmptyGenerationError, InvalidTransition, NotFound, UpstreamError
from replai.models import Cabinet, GlobalSetting, ProductRecommendation, Review, ReviewStatus
from replai.reviews.state import DRAFTABLE, can_transition
from replai.utils import utcnow

logger = logging.getLogger(__name__)

DEFAULT_PROMPT = (
    "Ты — менеджер бренда на Wildberries. Напиши вежливый ответ на отзыв покупателя. 2-4 предложения."
)
GLOBAL_PROMPT_KEY = "ai_default_prompt"

MAX_IMAGES = 5
DEFAULT_AUTHOR = "Покупатель"

REFUSAL_KEYWORDS = (
    "отказ", "вернул", "вернула", "возврат",
    "не выкупил", "не выкупила", "не забрал", "не забрала",
    "отдал предпочтение", "отдала предпочтение",
    "не подошёл", "не подошла", "не подошло", "не подошел",
    "отправил обратно", "отправила обратно",
    "выбрал другой", "выбрала другую", "выбрала другой",
)


class CompletionClient:
    """
    Cliente OpenAI-compatible (OpenRouter por defecto) vía SDK oficial.
    Sin reintentos del SDK: un fallo se devuelve al llamador como UpstreamError.
    """

    def __init__(self, api_key: str, base_url: str, *, timeout: float = 60, client: Optional[OpenAI] = None):
        self._client = client or OpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=0,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "CompletionClient":
        if not (settings.openrouter_api_key or "").strip():
            raise ConfigurationError("OPENROUTER_API_KEY не настроен")
        return cls(
            settings.openrouter_api_key,
            settings.completion_base_url,
            timeout=settings.completion_timeout_seconds,
        )

    def complete(self, *, model: str, messages: list[dict], max_tokens: int, temperature: float) -> str:
        try:
            resp = self._client.chat.completions.create(
                model=model,
                messages=messages,
                max_tokens=max_tokens,
                temperature=temperature,
            )
        except openai.APIStatusError as e:
            raise UpstreamError(e.status_code, _error_body(e), source="completion") from e
        except openai.APIConnectionError as e:
            # incluye APITimeoutError
            raise UpstreamError(None, str(e), source="completion") from e

        choices = getattr(resp, "choices", None) or []
        content = choices[0].message.content if choices and choices[0].message else None
        text = (content or "").strip()
        if not text:
            raise EmptyGenerationError("AI returned empty response")
        return text


def _error_body(e: "openai.APIStatusError") -> str:
    return getattr(e.response, "text", "") or str(e)


# ---------------------------
# Construcción del prompt
# ---------------------------
def get_global_prompt(db: Session) -> str:
    row = db.get(GlobalSetting, GLOBAL_PROMPT_KEY)
    value = (row.value if row else "") or ""
    return value.strip() or DEFAULT_PROMPT


def build_system_prompt(db: Session, cabinet: Optional[Cabinet]) -> str:
    layers = [get_global_prompt(db)]
    if cabinet:
        layers.append((cabinet.ai_prompt_rules or "").strip())
        layers.append((cabinet.ai_prompt_examples or "").strip())
    return "\n\n".join(x for x in layers if x)


def detect_refusal(*parts: Optional[str]) -> bool:
    combined = " ".join(p for p in parts if p).lower()
    return any(kw in combined for kw in REFUSAL_KEYWORDS)


def photo_word(count: int) -> str:
    if count == 1:
        return "фотографию"
    if count < 5:
        return "фотографии"
    return "фотографий"


def attachment_summary(photo_count: int, has_video: bool) -> str:
    """'2 фотографии и видео', '1 фотографию', 'видео' o ''."""
    parts = []
    if photo_count > 0:
        parts.append(f"{photo_count} {photo_word(photo_count)}")
    if has_video:
        parts.append("видео")
    return " и ".join(parts)


def review_content(review: Review) -> str:
    parts = []
    if review.text:
        parts.append(f"Комментарий: {review.text}")
    if review.pros:
        parts.append(f"Плюсы: {review.pros}")
    if review.cons:
        parts.append(f"Недостатки: {review.cons}")
    return "\n\n".join(parts)


def is_empty_review(review: Review) -> bool:
    return not (review.text or review.pros or review.cons)


def _photos(review: Review) -> list[dict]:
    return [p for p in (review.photo_links or []) if isinstance(p, dict)]


def build_user_message(
    review: Review,
    *,
    brand_name: str = "",
    recommendations: Optional[list[ProductRecommendation]] = None,
) -> str:
    msg = "ВАЖНО: строго следуй всем правилам из системного промпта."

    if detect_refusal(review.text, review.pros, review.cons):
        msg += (
            "\n\n[ВНИМАНИЕ: Покупатель НЕ выкупил товар. НЕ благодари за покупку. "
            "Поблагодари за внимание к бренду, вырази сожаление и пригласи вернуться.]"
        )

    if brand_name:
        msg += (
            f"\n\nНазвание бренда продавца: {brand_name}. "
            "Используй это название при обращении к покупателю."
        )

    content = review_content(review) or "(Без текста, только оценка)"
    msg += f'\n\nОтзыв ({review.rating} из 5 звёзд) на товар "{review.product_name}":\n\n{content}'

    photo_count = len(_photos(review))
    summary = attachment_summary(photo_count, bool(review.has_video))
    if summary:
        if photo_count > 0:
            msg += (
                f"\n\n[Покупатель приложил {summary} к отзыву. Фотографии прикреплены ниже — "
                "проанализируй их и учти в ответе, если это уместно.]"
            )
        else:
            msg += f"\n\n[Покупатель приложил {summary} к отзыву.]"

    author = (review.author_name or "").strip()
    if author and author != DEFAULT_AUTHOR:
        msg += f"\n\nИмя покупателя: {author}. Обратись к покупателю по имени в ответе."

    if recommendations and review.rating >= 4:
        rec_list = "\n".join(
            f"- Артикул {r.target_article}" + (f': "{r.target_name}"' if r.target_name else "")
            for r in recommendations
        )
        msg += (
            "\n\nРЕКОМЕНДАЦИИ: В конце ответа ненавязчиво предложи покупателю обратить внимание "
            f"на другие наши товары:\n{rec_list}\nУпомяни артикулы, чтобы покупатель мог их найти на WB."
        )

    if is_empty_review(review):
        if review.rating >= 4:
            msg += (
                f"\n\n[Это пустой отзыв без текста. Покупатель поставил только оценку {review.rating} из 5.\n"
                "Напиши КОРОТКУЮ благодарность за отзыв и высокую оценку. Максимум 1-2 предложения.]"
            )
        else:
            msg += (
                f"\n\n[Это пустой отзыв без текста. Покупатель поставил низкую оценку {review.rating} из 5 "
                "без пояснения.\nВырази сожаление. Предложи написать в чат с продавцом.\n"
                "Максимум 1-2 предложения.]"
            )

    return msg


def build_user_content(review: Review, message: str) -> Union[str, list[dict[str, Any]]]:
    """Con fotos: texto + hasta 5 image_url. Sin fotos: solo texto."""
    urls = []
    for p in _photos(review)[:MAX_IMAGES]:
        url = p.get("miniSize") or p.get("fullSize")
        if url:
            urls.append(url)
    if not urls:
        return message
    return [{"type": "text", "text": message}] + [
        {"type": "image_url", "image_url": {"url": u}} for u in urls
    ]


def choose_model(review: Review, settings: Settings) -> str:
    if _photos(review):
        return settings.ai_model_vision
    if review.rating >= 4:
        return settings.ai_model_light
    return settings.ai_model_default


def get_recommendations(db: Session, review: Review) -> list[ProductRecommendation]:
    if not review.product_article or review.rating < 4:
        return []
    stmt = (
        select(ProductRecommendation)
        .where(ProductRecommendation.cabinet_id == review.cabinet_id)
        .where(ProductRecommendation.source_article == review.product_article)
        .order_by(ProductRecommendation.id.asc())
    )
    return list(db.execute(stmt).scalars().all())


def build_messages(db: Session, review: Review, cabinet: Optional[Cabinet]) -> list[dict]:
    brand = review.brand_name or (cabinet.brand_name if cabinet else "") or ""
    message = build_user_message(review, brand_name=brand, recommendations=get_recommendations(db, review))
    return [
        {"role": "system", "content": build_system_prompt(db, cabinet)},
        {"role": "user", "content": build_user_content(review, message)},
    ]


def generate_draft(db: Session, completion: CompletionClient, review_id: int, user_id: str, settings: Settings) -> str:
    review = db.get(Review, review_id)
    if not review or review.user_id != user_id:
        raise NotFound("Review not found")

    current = ReviewStatus(review.status)
    if not can_transition(current, ReviewStatus.pending):
        raise InvalidTransition(current.value, ReviewStatus.pending.value)

    cabinet = db.get(Cabinet, review.cabinet_id)
    model = choose_model(review, settings)
    max_tokens = settings.ai_max_tokens_empty if is_empty_review(review) else settings.ai_max_tokens

    draft = completion.complete(
        model=model,
        messages=build_messages(db, review, cabinet),
        max_tokens=max_tokens,
        temperature=settings.ai_temperature,
    )

    # condicional: si el dispatcher la envió mientras generábamos, no se pisa
    res = db.execute(
        update(Review)
        .where(Review.id == review.id, Review.status.in_(DRAFTABLE))
        .values(ai_draft=draft, status=ReviewStatus.pending, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        db.rollback()
        db.refresh(review)
        raise InvalidTransition(ReviewStatus(review.status).value, ReviewStatus.pending.value)
    db.commit()
    db.refresh(review)

    logger.info("[drafts] review=%s model=%s chars=%d", review.id, model, len(draft))
    return draft
