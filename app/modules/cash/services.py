"""
Servicio de sesiones de caja (lado de escritura)

CashSessionService coordina el ciclo de vida de una sesión:
- Apertura: una sola sesión abierta por organización
- Movimientos: ledger append-only contra sesiones abiertas
- Cierre: arqueo recalculado desde los movimientos + cierre condicional
- Arqueo por denominación y reportes de diferencia

Los stores se inyectan (SessionStore / MovementStore); el servicio no abre
transacciones ni guarda saldos derivados.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Iterable, List, Optional
from uuid import UUID

from app.core.config import settings
from app.modules.cash import audit as audit_events
from app.modules.cash.audit import AuditSink, NullAuditSink
from app.modules.cash.exceptions import (
    InvalidAmount, SessionAlreadyClosed, SessionNotFound, SessionStillOpen
)
from app.modules.cash.models import (
    CashCount, CashDiscrepancy, CashMovement, CashSession,
    CashSessionStatus, DiscrepancyType, MovementType
)
from app.modules.cash.reconciliation import MAX_STORABLE_AMOUNT, compute_expected, to_money
from app.modules.cash.schemas import CountsOut, CashCountOut, SessionSummaryOut
from app.modules.cash.stores import ClosingFields, MovementStore, SessionStore

logger = logging.getLogger(__name__)

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def clean_reason(reason: Optional[str]) -> Optional[str]:
    """Quita caracteres de control y recorta el motivo al largo permitido."""
    if reason is None:
        return None
    cleaned = _CONTROL_CHARS.sub("", reason).strip()
    return cleaned[:settings.CASH_REASON_MAX_LENGTH] or None


@dataclass(frozen=True)
class RecordedMovement:
    movement: CashMovement
    created: bool


class CashSessionService:
    """Coordinador de apertura, movimientos y cierre de caja"""

    def __init__(self, sessions: SessionStore, movements: MovementStore,
                 audit: Optional[AuditSink] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.sessions = sessions
        self.movements = movements
        self.audit = audit or NullAuditSink()
        self.clock = clock

    # ===== APERTURA =====

    def open_session(self, organization_id: UUID, caller_id: UUID,
                     opening_amount, notes: Optional[str] = None) -> CashSession:
        """Abrir sesión de caja. AlreadyOpen si la organización ya tiene una."""
        amount = self._non_negative(opening_amount, "El monto de apertura no puede ser negativo")

        session = CashSession(
            tenant_id=organization_id,
            status=CashSessionStatus.OPEN,
            opening_amount=amount,
            opened_by=caller_id,
            opened_at=self.clock(),
            notes=notes
        )
        session = self.sessions.insert_session_if_none_open(session)

        logger.info(f"Cash session {session.id} opened for org {organization_id} with {amount}")
        self.audit.emit(audit_events.SESSION_OPENED, organization_id, caller_id, {
            "session_id": str(session.id),
            "opening_amount": str(amount),
        })
        return session

    # ===== MOVIMIENTOS =====

    def record_movement(self, organization_id: UUID, session_id: UUID,
                        movement_type, amount, caller_id: UUID,
                        reason: Optional[str] = None,
                        reference_type: Optional[str] = None,
                        reference_id: Optional[str] = None) -> RecordedMovement:
        """
        Registrar movimiento en una sesión abierta.

        IN/OUT/SALE/RETURN llevan monto positivo; ADJUSTMENT lleva signo.
        Con reference_type + reference_id el registro es idempotente: un
        reintento devuelve el movimiento existente con created=False.
        """
        movement_type = MovementType(getattr(movement_type, "value", movement_type))
        amount = self._movement_amount(movement_type, amount)

        guard = None
        if movement_type == MovementType.ADJUSTMENT and amount < 0:
            def guard(session: CashSession, current: List[CashMovement]) -> None:
                balance = compute_expected(session.opening_amount, current)
                if balance + amount < 0:
                    raise InvalidAmount("El ajuste no puede dejar el saldo por debajo de 0")

        movement = CashMovement(
            tenant_id=organization_id,
            session_id=session_id,
            type=movement_type,
            amount=amount,
            reason=clean_reason(reason),
            reference_type=reference_type or None,
            reference_id=reference_id or None,
            created_by=caller_id,
            created_at=self.clock()
        )
        saved, created = self.movements.append_movement(movement, guard)

        if not created:
            logger.info(
                f"Duplicate movement {reference_type}:{reference_id} on session {session_id}, returning {saved.id}"
            )
            return RecordedMovement(movement=saved, created=False)

        logger.debug(f"Movement {saved.id} {movement_type.value} {amount} on session {session_id}")
        self.audit.emit(audit_events.MOVEMENT_RECORDED, organization_id, caller_id, {
            "session_id": str(session_id),
            "movement_id": str(saved.id),
            "type": movement_type.value,
            "amount": str(amount),
        })
        return RecordedMovement(movement=saved, created=True)

    # ===== CIERRE =====

    def close_session(self, organization_id: UUID, session_id: UUID, caller_id: UUID,
                      closing_amount, notes: Optional[str] = None,
                      counts: Optional[Iterable] = None) -> SessionSummaryOut:
        """Cerrar sesión con arqueo. Dos cierres concurrentes: solo uno gana."""
        amount = self._non_negative(closing_amount, "El monto de cierre no puede ser negativo")

        session = self.sessions.get_session(organization_id, session_id)
        if session is None:
            raise SessionNotFound(session_id)
        if session.status == CashSessionStatus.CLOSED:
            raise SessionAlreadyClosed(session_id)

        count_rows = self._build_counts(organization_id, session_id, counts or [])
        closed = self.sessions.close_session_if_open(
            organization_id,
            session_id,
            ClosingFields(closing_amount=amount, closed_by=caller_id, closed_at=self.clock(), notes=notes),
            count_rows
        )

        # Con la sesión cerrada el ledger ya no cambia: el arqueo es definitivo
        movements = self.movements.list_movements(session_id)
        summary = SessionSummaryOut.build(
            closed,
            movements,
            self.sessions.list_counts([session_id]),
            self.sessions.list_discrepancies([session_id])
        )

        logger.info(
            f"Cash session {session_id} closed: expected={summary.expected_amount} "
            f"counted={amount} discrepancy={summary.discrepancy_amount}"
        )
        self.audit.emit(audit_events.SESSION_CLOSED, organization_id, caller_id, {
            "session_id": str(session_id),
            "closing_amount": str(amount),
            "expected_amount": str(summary.expected_amount),
            "discrepancy_amount": str(summary.discrepancy_amount),
        })
        return summary

    def close_current_session(self, organization_id: UUID, caller_id: UUID,
                              closing_amount, notes: Optional[str] = None,
                              counts: Optional[Iterable] = None) -> SessionSummaryOut:
        """Cerrar la sesión abierta de la organización, sin conocer su id."""
        self._non_negative(closing_amount, "El monto de cierre no puede ser negativo")
        session = self.sessions.find_open_session(organization_id)
        if session is None:
            raise SessionNotFound()
        return self.close_session(organization_id, session.id, caller_id, closing_amount, notes, counts)

    # ===== ARQUEO Y DIFERENCIAS =====

    def replace_counts(self, organization_id: UUID, session_id: UUID,
                       counts: Iterable, caller_id: UUID) -> CountsOut:
        """Reemplaza el arqueo por denominación de una sesión cerrada."""
        session = self.sessions.get_session(organization_id, session_id)
        if session is None:
            raise SessionNotFound(session_id)
        if session.status == CashSessionStatus.OPEN:
            raise SessionStillOpen(session_id)

        rows = self.sessions.replace_counts(
            organization_id, session_id, self._build_counts(organization_id, session_id, counts)
        )
        counted_total = sum((to_money(r.total) for r in rows), Decimal("0.00"))

        self.audit.emit(audit_events.COUNTS_REPLACED, organization_id, caller_id, {
            "session_id": str(session_id),
            "counted_total": str(counted_total),
        })
        return CountsOut(
            session_id=session_id,
            counts=[CashCountOut.model_validate(r) for r in rows],
            counted_total=counted_total
        )

    def report_discrepancy(self, organization_id: UUID, session_id: UUID,
                           discrepancy_type, amount, caller_id: UUID,
                           explanation: Optional[str] = None) -> CashDiscrepancy:
        amount = self._non_negative(amount, "El monto de la diferencia no puede ser negativo")
        if self.sessions.get_session(organization_id, session_id) is None:
            raise SessionNotFound(session_id)

        discrepancy = self.sessions.add_discrepancy(CashDiscrepancy(
            tenant_id=organization_id,
            session_id=session_id,
            type=DiscrepancyType(getattr(discrepancy_type, "value", discrepancy_type)),
            amount=amount,
            explanation=explanation,
            reported_by=caller_id
        ))

        logger.info(f"Discrepancy {discrepancy.type.value} of {amount} reported on session {session_id}")
        self.audit.emit(audit_events.DISCREPANCY_REPORTED, organization_id, caller_id, {
            "session_id": str(session_id),
            "type": discrepancy.type.value,
            "amount": str(amount),
        })
        return discrepancy

    # ===== VALIDACIONES =====

    @staticmethod
    def _non_negative(value, message: str) -> Decimal:
        if value is None:
            raise InvalidAmount("El monto es obligatorio")
        amount = to_money(value)
        if amount < 0:
            raise InvalidAmount(message)
        if amount > MAX_STORABLE_AMOUNT:
            raise InvalidAmount(f"Monto demasiado alto: el máximo es {MAX_STORABLE_AMOUNT}")
        return amount

    @staticmethod
    def _movement_amount(movement_type: MovementType, value) -> Decimal:
        if value is None:
            raise InvalidAmount("El monto es obligatorio")
        amount = to_money(value)
        if movement_type == MovementType.ADJUSTMENT:
            if amount == 0:
                raise InvalidAmount("El ajuste no puede ser 0")
        elif amount <= 0:
            raise InvalidAmount("El monto debe ser mayor a cero para este tipo de movimiento")
        if abs(amount) > settings.CASH_MAX_MOVEMENT_AMOUNT:
            raise InvalidAmount(f"Monto demasiado alto: el máximo es {settings.CASH_MAX_MOVEMENT_AMOUNT}")
        return amount

    @staticmethod
    def _build_counts(organization_id: UUID, session_id: UUID, counts: Iterable) -> List[CashCount]:
        rows = []
        for count in counts:
            denomination = to_money(count.denomination)
            if denomination <= 0:
                raise InvalidAmount("La denominación debe ser mayor a cero")
            if denomination > MAX_STORABLE_AMOUNT:
                raise InvalidAmount("Denominación demasiado alta")
            if count.quantity < 0:
                raise InvalidAmount("La cantidad no puede ser negativa")
            total = to_money(denomination * count.quantity)
            if total > MAX_STORABLE_AMOUNT:
                raise InvalidAmount("El total del arqueo excede el máximo almacenable")
            rows.append(CashCount(
                tenant_id=organization_id,
                session_id=session_id,
                denomination=denomination,
                quantity=count.quantity,
                total=total
            ))
        return rows
