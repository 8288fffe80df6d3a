"""
Bitácora de auditoría de caja (fire-and-forget).

Un fallo al despachar el evento se registra y se descarta: nunca debe hacer
fallar la apertura, el cierre o el movimiento que lo originó.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict
from uuid import UUID

from app.core.config import settings

logger = logging.getLogger(__name__)

SESSION_OPENED = "cash.session.opened"
SESSION_CLOSED = "cash.session.closed"
MOVEMENT_RECORDED = "cash.movement.recorded"
COUNTS_REPLACED = "cash.counts.replaced"
DISCREPANCY_REPORTED = "cash.discrepancy.reported"


class AuditSink(ABC):

    def emit(self, event_type: str, organization_id: UUID, actor_id: UUID, payload: Dict[str, Any]) -> None:
        try:
            self._dispatch(event_type, str(organization_id), str(actor_id), payload)
        except Exception as e:
            logger.warning(f"Audit event {event_type} dropped: {e}")

    @abstractmethod
    def _dispatch(self, event_type: str, organization_id: str, actor_id: str, payload: Dict[str, Any]) -> None:
        ...


class CeleryAuditSink(AuditSink):
    """Encola el evento en la tarea record_cash_event."""

    def _dispatch(self, event_type, organization_id, actor_id, payload):
        from app.modules.cash.tasks import record_cash_event
        record_cash_event.delay(event_type, organization_id, actor_id, payload)


class NullAuditSink(AuditSink):

    def _dispatch(self, event_type, organization_id, actor_id, payload):
        logger.debug(f"Audit disabled, skipping {event_type}")


def get_audit_sink() -> AuditSink:
    if settings.CASH_AUDIT_ENABLED:
        return CeleryAuditSink()
    return NullAuditSink()
