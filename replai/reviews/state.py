# replai/reviews/state.py
from __future__ import annotations

import logging
from typing import Union

from replai.errors import ValidationFailed
from replai.models import Review, ReviewStatus as S

admin_logger = logging.getLogger("replai.admin")

# origen -> destinos permitidos. answered y archived son terminales.
TRANSITIONS: dict[S, frozenset[S]] = {
    S.new: frozenset({S.pending, S.sent, S.auto}),
    S.pending: frozenset({S.pending, S.sent, S.auto, S.answered}),
    S.sent: frozenset({S.archived}),
    S.auto: frozenset({S.archived}),
    S.answered: frozenset(),
    S.archived: frozenset(),
}


def sources_for(target: S) -> tuple[S, ...]:
    """Estados desde los que se puede llegar a `target`, para los WHERE condicionales."""
    return tuple(s for s in S if target in TRANSITIONS[s])


# ya respondida en el marketplace: reenviar sería duplicar
REPLIED = frozenset({S.sent, S.auto, S.answered, S.archived})
SENDABLE = sources_for(S.sent)
DRAFTABLE = sources_for(S.pending)
ARCHIVABLE = sources_for(S.archived)


def can_transition(current: S, target: S) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def force_status(review: Review, status: Union[S, str], *, actor: str) -> Review:
    """Bypass administrativo: cualquier estado, siempre con log propio."""
    try:
        target = S(status)
    except ValueError:
        raise ValidationFailed(f"Estado desconocido: {status}")

    previous = S(review.status)
    review.status = target
    admin_logger.warning(
        "[admin] force_status review=%s %s -> %s actor=%s",
        review.id, previous.value, target.value, actor,
    )
    return review
