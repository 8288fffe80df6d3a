"""
Esquemas Pydantic para el módulo de Caja

Los campos viajan en camelCase (openingAmount, sessionId, ...) y también se
aceptan en snake_case. Los montos son Decimal; nunca float.
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel
from decimal import Decimal
from typing import Iterable, List, Optional
from uuid import UUID
from datetime import datetime
from enum import Enum

from app.modules.cash.reconciliation import reconcile, signed_amount, summarize, to_money


class CashSessionStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class MovementType(str, Enum):
    IN = "IN"
    OUT = "OUT"
    SALE = "SALE"
    RETURN = "RETURN"
    ADJUSTMENT = "ADJUSTMENT"


class DiscrepancyType(str, Enum):
    SHORTAGE = "SHORTAGE"
    OVERAGE = "OVERAGE"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ===== REQUESTS =====

class CashCountIn(CamelModel):
    """Conteo de una denominación; el total se calcula en el servidor"""
    denomination: Decimal = Field(..., gt=0, max_digits=15, decimal_places=2, description="Valor de la denominación")
    quantity: int = Field(..., ge=0, description="Cantidad de billetes/monedas")


class CashSessionOpen(CamelModel):
    """Esquema para abrir sesión de caja"""
    opening_amount: Decimal = Field(..., ge=0, max_digits=15, decimal_places=2, description="Saldo inicial de apertura")
    notes: Optional[str] = Field(None, max_length=500, description="Notas de apertura")


class CashSessionClose(CamelModel):
    """Esquema para cerrar sesión de caja"""
    closing_amount: Decimal = Field(..., ge=0, max_digits=15, decimal_places=2, description="Saldo final contado")
    notes: Optional[str] = Field(None, max_length=500, description="Notas de cierre")
    counts: Optional[List[CashCountIn]] = Field(None, description="Arqueo por denominación (opcional)")


class CashCountsReplace(CamelModel):
    counts: List[CashCountIn] = Field(default_factory=list, description="Nuevo arqueo completo")


class CashMovementCreate(CamelModel):
    """
    Esquema para registrar movimiento de caja.

    amount es siempre positivo para IN, OUT, SALE y RETURN (el signo lo da
    el tipo). ADJUSTMENT es el único tipo con signo: positivo aumenta la caja,
    negativo la disminuye, y no puede ser cero.
    """
    session_id: UUID = Field(..., description="ID de la sesión de caja")
    type: MovementType = Field(..., description="Tipo de movimiento")
    amount: Decimal = Field(..., max_digits=15, decimal_places=2, description="Monto del movimiento")
    reason: Optional[str] = Field(None, max_length=500, description="Motivo")
    reference_type: Optional[str] = Field(None, max_length=50, description="Tipo de documento de origen")
    reference_id: Optional[str] = Field(None, max_length=100, description="ID del documento de origen")

    @model_validator(mode='after')
    def validate_amount_sign(self):
        if self.type == MovementType.ADJUSTMENT:
            if self.amount == 0:
                raise ValueError('El ajuste no puede ser 0')
        elif self.amount <= 0:
            raise ValueError('El monto debe ser mayor a cero para este tipo de movimiento')
        return self


class CashDiscrepancyCreate(CamelModel):
    session_id: UUID = Field(..., description="ID de la sesión de caja")
    type: DiscrepancyType = Field(..., description="Faltante o sobrante")
    amount: Decimal = Field(..., ge=0, max_digits=15, decimal_places=2, description="Monto de la diferencia")
    explanation: Optional[str] = Field(None, max_length=1000, description="Explicación")


# ===== RESPONSES =====

class CashMovementOut(CamelModel):
    id: UUID
    session_id: UUID
    type: MovementType
    amount: Decimal
    signed_amount: Decimal
    reason: Optional[str] = None
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    created_by: UUID
    created_at: datetime

    @classmethod
    def build(cls, movement) -> "CashMovementOut":
        return cls(
            id=movement.id,
            session_id=movement.session_id,
            type=movement.type.value,
            amount=to_money(movement.amount),
            signed_amount=signed_amount(movement.type, movement.amount),
            reason=movement.reason,
            reference_type=movement.reference_type,
            reference_id=movement.reference_id,
            created_by=movement.created_by,
            created_at=movement.created_at,
        )


class CashCountOut(CamelModel):
    denomination: Decimal
    quantity: int
    total: Decimal

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class CashDiscrepancyOut(CamelModel):
    id: UUID
    session_id: UUID
    type: DiscrepancyType
    amount: Decimal
    explanation: Optional[str] = None
    reported_by: UUID
    created_at: datetime

    @classmethod
    def build(cls, discrepancy) -> "CashDiscrepancyOut":
        return cls(
            id=discrepancy.id,
            session_id=discrepancy.session_id,
            type=discrepancy.type.value,
            amount=to_money(discrepancy.amount),
            explanation=discrepancy.explanation,
            reported_by=discrepancy.reported_by,
            created_at=discrepancy.created_at,
        )


class CashSessionOut(CamelModel):
    id: UUID
    organization_id: UUID
    status: CashSessionStatus
    opening_amount: Decimal
    closing_amount: Optional[Decimal] = None
    opened_by: UUID
    closed_by: Optional[UUID] = None
    opened_at: datetime
    closed_at: Optional[datetime] = None
    notes: Optional[str] = None


class SessionSummaryOut(CashSessionOut):
    """Sesión con arqueo recalculado desde los movimientos"""
    expected_amount: Decimal
    discrepancy_amount: Optional[Decimal] = None
    total_in: Decimal
    total_out: Decimal
    total_sales: Decimal
    total_returns: Decimal
    total_adjustments: Decimal
    movements_count: int
    counts: List[CashCountOut] = []
    counted_total: Optional[Decimal] = None
    discrepancies: List[CashDiscrepancyOut] = []

    @classmethod
    def build(cls, session, movements: Iterable, counts: Iterable = (),
              discrepancies: Iterable = ()) -> "SessionSummaryOut":
        movements = list(movements)
        counts = list(counts)
        result = reconcile(session.opening_amount, movements, session.closing_amount)
        return cls(
            id=session.id,
            organization_id=session.tenant_id,
            status=session.status.value,
            opening_amount=to_money(session.opening_amount),
            closing_amount=None if session.closing_amount is None else to_money(session.closing_amount),
            opened_by=session.opened_by,
            closed_by=session.closed_by,
            opened_at=session.opened_at,
            closed_at=session.closed_at,
            notes=session.notes,
            expected_amount=result.expected_amount,
            discrepancy_amount=result.discrepancy_amount,
            movements_count=len(movements),
            counts=[CashCountOut.model_validate(c) for c in counts],
            counted_total=sum((to_money(c.total) for c in counts), Decimal("0.00")) if counts else None,
            discrepancies=[CashDiscrepancyOut.build(d) for d in discrepancies],
            **summarize(movements),
        )


class SessionDetailOut(SessionSummaryOut):
    movements: List[CashMovementOut] = []


class CurrentSessionOut(CamelModel):
    session: Optional[SessionSummaryOut] = None


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    pages: int


class SessionListOut(CamelModel):
    sessions: List[SessionSummaryOut]
    pagination: Pagination


class MovementSummary(CamelModel):
    total_in: Decimal
    total_out: Decimal
    total_sales: Decimal
    total_returns: Decimal
    total_adjustments: Decimal
    net: Decimal


class MovementListOut(CamelModel):
    movements: List[CashMovementOut]
    summary: MovementSummary
    pagination: Pagination


class CountsOut(CamelModel):
    session_id: UUID
    counts: List[CashCountOut]
    counted_total: Decimal

    @field_validator("counted_total")
    @classmethod
    def quantize_total(cls, v: Decimal) -> Decimal:
        return to_money(v)
