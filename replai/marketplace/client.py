# replai/marketplace/client.py
from __future__ import annotations

import logging
from typing import Any, Optional

import requests
from pydantic import ValidationError

from replai.errors import UpstreamError
from .dto import ChatDTO, ChatEventDTO, FeedbackDTO

logger = logging.getLogger(__name__)

PAGE_SIZE = 50

FEEDBACKS_PATH = "/api/v1/feedbacks"
CHATS_PATH = "/api/v1/seller/chats"
EVENTS_PATH = "/api/v1/seller/events"
MESSAGE_PATH = "/api/v1/seller/message"


class MarketplaceClient:
    """
    Acceso HTTP al API de reseñas y chats del marketplace.
    Solo I/O: sin estado, sin reintentos (la política de reintento vive en el reconciler).
    """

    def __init__(
        self,
        feedbacks_url: str,
        chat_url: str,
        *,
        timeout: float = 30,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.feedbacks_url = feedbacks_url.rstrip("/")
        self.chat_url = chat_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings) -> "MarketplaceClient":
        return cls(
            settings.marketplace_feedbacks_url,
            settings.marketplace_chat_url,
            timeout=settings.marketplace_timeout_seconds,
        )

    def _request(self, method: str, url: str, api_key: str, **kwargs) -> requests.Response:
        try:
            r = self.session.request(
                method,
                url,
                headers={"Authorization": api_key},
                timeout=self.timeout,
                **kwargs,
            )
        except requests.RequestException as e:
            # timeout / red: reintentable por el llamador
            raise UpstreamError(None, repr(e), source="marketplace") from e

        logger.debug("[marketplace] %s %s -> %s", method, url, r.status_code)

        if not 200 <= r.status_code < 300:
            raise UpstreamError(r.status_code, r.text or "", source="marketplace")
        return r

    def _json(self, r: requests.Response) -> Any:
        if not r.content:
            return {}
        try:
            return r.json()
        except ValueError as e:
            raise UpstreamError(r.status_code, f"non-JSON body: {(r.text or '')[:200]}", source="marketplace") from e

    # ---------------------------
    # Reseñas
    # ---------------------------
    def fetch_reviews_page(
        self,
        api_key: str,
        skip: int = 0,
        take: int = PAGE_SIZE,
        *,
        is_answered: bool = False,
    ) -> list[FeedbackDTO]:
        r = self._request(
            "GET",
            self.feedbacks_url + FEEDBACKS_PATH,
            api_key,
            params={
                "isAnswered": "true" if is_answered else "false",
                "take": take,
                "skip": skip,
            },
        )
        data = self._json(r)
        items = ((data or {}).get("data") or {}).get("feedbacks") or []
        return _parse_list(FeedbackDTO, items)

    def send_reply_to_review(self, api_key: str, external_id: str, text: str) -> None:
        self._request(
            "PATCH",
            self.feedbacks_url + FEEDBACKS_PATH,
            api_key,
            json={"id": external_id, "text": text},
        )

    def ping(self, api_key: str) -> None:
        """Prueba barata de credencial (take=1)."""
        self.fetch_reviews_page(api_key, skip=0, take=1)

    # ---------------------------
    # Chats
    # ---------------------------
    def fetch_chats_page(self, api_key: str) -> list[ChatDTO]:
        r = self._request("GET", self.chat_url + CHATS_PATH, api_key)
        data = self._json(r) or {}
        items = data.get("chats") or data.get("result") or []
        return _parse_list(ChatDTO, items)

    def fetch_chat_events_page(
        self, api_key: str, next_cursor: Optional[int] = None
    ) -> tuple[list[ChatEventDTO], Optional[int]]:
        params = {"next": next_cursor} if next_cursor else None
        r = self._request("GET", self.chat_url + EVENTS_PATH, api_key, params=params)
        data = self._json(r) or {}
        container = data.get("result") or data
        events = _parse_list(ChatEventDTO, container.get("events") or [])
        return events, (container.get("next") or None)

    def send_chat_message(self, api_key: str, reply_sign: str, text: str) -> None:
        # multipart/form-data: (None, valor) = campo de formulario, no archivo
        self._request(
            "POST",
            self.chat_url + MESSAGE_PATH,
            api_key,
            files={"replySign": (None, reply_sign), "message": (None, text)},
        )


class Page(list):
    """Lista de DTOs que recuerda cuántos items crudos trajo la página."""

    raw_count = 0


def _parse_list(model, items: list) -> Page:
    out = Page()
    out.raw_count = len(items)
    for raw in items:
        try:
            out.append(model.model_validate(raw))
        except ValidationError as e:
            # un item malformado no tumba la página entera
            logger.warning("[marketplace] skipping malformed %s: %s", model.__name__, e.errors()[:1])
    return out
