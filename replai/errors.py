from __future__ import annotations


class ReplaiError(Exception):
    """Base de todos los errores de dominio. `status_code` lo usa el handler HTTP."""

    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(ReplaiError):
    """Faltan credenciales o secretos. No se reintenta automáticamente."""

    status_code = 503


class AuthorizationError(ReplaiError):
    status_code = 401


class Forbidden(AuthorizationError):
    status_code = 403


class NotFound(ReplaiError):
    status_code = 404


class ValidationFailed(ReplaiError):
    status_code = 400


class SignatureMismatch(ValidationFailed):
    pass


class InvalidTransition(ReplaiError):
    status_code = 409

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Transición no permitida: {current} -> {target}")
        self.current = current
        self.target = target


class InsufficientBalance(ReplaiError):
    status_code = 402

    def __init__(self, user_id: str, balance: int, required: int) -> None:
        super().__init__(f"Saldo insuficiente: {balance} < {required}")
        self.user_id = user_id
        self.balance = balance
        self.required = required


class UpstreamError(ReplaiError):
    """Respuesta no-2xx (o timeout / red) de marketplace, pasarela o completion API."""

    status_code = 502
    retryable = True

    def __init__(self, status: int | None, body: str, *, source: str = "upstream") -> None:
        label = status if status is not None else "network"
        super().__init__(f"{source} error {label}: {body}")
        self.status = status
        self.body = body
        self.source = source


class EmptyGenerationError(ReplaiError):
    """La completion API respondió OK pero sin texto."""

    status_code = 502


class SyncAborted(ReplaiError):
    status_code = 502

    def __init__(self, fetched: int, inserted: int, cause: Exception) -> None:
        super().__init__(f"Sync abortado tras fetched={fetched} inserted={inserted}: {cause}")
        self.fetched = fetched
        self.inserted = inserted
        self.cause = cause


class ArchivalAborted(ReplaiError):
    def __init__(self, archived: int, cause: Exception) -> None:
        super().__init__(f"Archivado abortado tras {archived} filas: {cause}")
        self.archived = archived
        self.cause = cause
