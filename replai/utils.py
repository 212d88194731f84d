from __future__ import annotations

import time
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def pause(seconds: float) -> None:
    """Backoff cooperativo entre páginas; no es un lock."""
    if seconds > 0:
        time.sleep(seconds)


def mask_api_key(key: str) -> str:
    key = (key or "").strip()
    if len(key) > 8:
        return key[:4] + "****...****" + key[-4:]
    return "****"


def parse_origins(s: str) -> list[str]:
    """Convierte 'a,b,c' en lista de orígenes sin barras finales."""
    out = []
    for part in (s or "").split(","):
        o = part.strip().rstrip("/")
        if o:
            out.append(o)
    return out


def as_utc(dt: datetime | None) -> datetime | None:
    """Naive -> se asume UTC (así vuelven de sqlite). Aware -> convertido a UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
