"""
Tareas asíncronas de Celery para la bitácora de auditoría de caja.
"""
import logging
from typing import Any, Dict
from app.core.celery import celery_app

logger = logging.getLogger("app.audit.cash")


@celery_app.task(bind=True, max_retries=3, ignore_result=True)
def record_cash_event(self, event_type: str, organization_id: str, actor_id: str, payload: Dict[str, Any]):
    """
    Registra un evento de caja (apertura, cierre, movimiento) en la bitácora.
    """
    try:
        logger.info(
            f"{event_type} org={organization_id} actor={actor_id} payload={payload}"
        )
        return {"status": "recorded", "event_type": event_type}
    except Exception as exc:
        logger.error(f"Audit event {event_type} failed: {str(exc)}")
        if self.request.retries < self.max_retries:
            raise self.retry(exc=exc, countdown=30 * (2 ** self.request.retries))
        return {"status": "failed", "event_type": event_type, "error": str(exc)}
