"""
Errores del motor de caja.

Cada error lleva un código estable (para que el cliente pueda distinguir
"ya hay una caja abierta" de un fallo genérico) y el status HTTP con el que
lo expone el handler registrado en app.main.
"""
from uuid import UUID
from fastapi import status


class CashSessionError(Exception):
    """Base de los errores de sesión de caja."""
    code = "cash_error"
    status_code = status.HTTP_400_BAD_REQUEST
    retryable = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class AlreadyOpen(CashSessionError):
    """Ya existe una sesión abierta para la organización."""
    code = "already_open"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, organization_id: UUID):
        self.organization_id = organization_id
        super().__init__("Ya existe una sesión de caja abierta en tu organización")


class SessionNotFound(CashSessionError):
    code = "session_not_found"
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, session_id: UUID = None):
        self.session_id = session_id
        if session_id is None:
            super().__init__("No hay sesión de caja abierta en tu organización")
        else:
            super().__init__("Sesión de caja no encontrada")


class SessionNotOpen(CashSessionError):
    """Escritura contra una sesión cerrada: el llamador debe refrescar su estado."""
    code = "session_not_open"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, session_id: UUID):
        self.session_id = session_id
        super().__init__("La sesión de caja está cerrada; actualiza el estado e intenta de nuevo")


class SessionAlreadyClosed(CashSessionError):
    code = "session_already_closed"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, session_id: UUID):
        self.session_id = session_id
        super().__init__("La sesión de caja ya está cerrada")


class SessionStillOpen(CashSessionError):
    """El arqueo por denominación solo se registra con la sesión cerrada."""
    code = "session_still_open"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, session_id: UUID):
        self.session_id = session_id
        super().__init__("La sesión de caja sigue abierta; ciérrala antes de registrar el arqueo")


class InvalidAmount(CashSessionError):
    code = "invalid_amount"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class StoreUnavailable(CashSessionError):
    """Fallo del almacenamiento. Único error que admite reintento con backoff."""
    code = "store_unavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True

    def __init__(self, message: str = "El almacenamiento de caja no está disponible"):
        super().__init__(message)
