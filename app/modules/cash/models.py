"""
Modelos SQLAlchemy para el módulo de Caja

- CashSession: Sesiones de caja (apertura/cierre de un cajón físico)
- CashMovement: Movimientos de efectivo de una sesión (ledger append-only)
- CashCount: Arqueo por denominación (informativo)
- CashDiscrepancy: Reportes de faltante/sobrante de un supervisor

Los montos esperados y diferencias NO se almacenan: se recalculan siempre
desde los movimientos (ver reconciliation.py).

Arquitectura multi-tenant: Todas las tablas incluyen tenant_id (organización).
"""

from app.database.database import Base
from sqlalchemy import Column, String, DateTime, ForeignKey, Numeric, Enum, Text, Integer, Index, UniqueConstraint, Uuid, text
from sqlalchemy.orm import relationship
from uuid import uuid4
from app.common.mixins import TenantMixin, TimestampMixin
import enum


# Índice único parcial: una sola sesión OPEN por organización
ONE_OPEN_SESSION_INDEX = "uq_cash_sessions_one_open"


# ===== ENUMS =====

class CashSessionStatus(enum.Enum):
    """Estados de sesión de caja"""
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class MovementType(enum.Enum):
    """Tipos de movimiento de caja"""
    IN = "IN"                   # Ingreso manual
    OUT = "OUT"                 # Retiro manual
    SALE = "SALE"               # Venta en efectivo
    RETURN = "RETURN"           # Devolución al cliente
    ADJUSTMENT = "ADJUSTMENT"   # Ajuste, único tipo con signo almacenado


class DiscrepancyType(enum.Enum):
    SHORTAGE = "SHORTAGE"   # Faltante
    OVERAGE = "OVERAGE"     # Sobrante


# ===== MODELOS =====

class CashSession(Base, TenantMixin, TimestampMixin):
    """
    Sesión de caja de una organización.

    Solo puede existir una sesión OPEN por organización: lo garantiza el
    índice único parcial uq_cash_sessions_one_open, no el código.
    Se modifica exactamente dos veces: al abrir y al cerrar.
    """
    __tablename__ = "cash_sessions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    status = Column(Enum(CashSessionStatus, name="cash_session_status"), nullable=False, default=CashSessionStatus.OPEN, index=True)

    opening_amount = Column(Numeric(15, 2), nullable=False, default=0)
    closing_amount = Column(Numeric(15, 2), nullable=True)  # Solo se llena al cerrar

    opened_by = Column(Uuid(as_uuid=True), nullable=False, index=True)
    closed_by = Column(Uuid(as_uuid=True), nullable=True, index=True)
    opened_at = Column(DateTime(timezone=True), nullable=False, index=True)
    closed_at = Column(DateTime(timezone=True), nullable=True)

    notes = Column(Text, nullable=True)

    movements = relationship("CashMovement", back_populates="session", order_by="CashMovement.created_at")
    counts = relationship("CashCount", back_populates="session")
    discrepancies = relationship("CashDiscrepancy", back_populates="session")

    __table_args__ = (
        Index(
            ONE_OPEN_SESSION_INDEX,
            "tenant_id",
            unique=True,
            postgresql_where=text("status = 'OPEN'"),
            sqlite_where=text("status = 'OPEN'"),
        ),
    )


class CashMovement(Base, TenantMixin):
    """
    Movimiento de efectivo de una sesión.

    amount es la magnitud sin signo para IN/OUT/SALE/RETURN; el signo se
    deriva del tipo al agregar. ADJUSTMENT es la excepción: se guarda con signo.
    Inmutable una vez escrito.
    """
    __tablename__ = "cash_movements"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    session_id = Column(Uuid(as_uuid=True), ForeignKey("cash_sessions.id"), nullable=False, index=True)
    type = Column(Enum(MovementType, name="cash_movement_type"), nullable=False, index=True)
    amount = Column(Numeric(15, 2), nullable=False)
    reason = Column(String(200), nullable=True)

    # Referencia al documento de origen (venta, devolución, pedido)
    reference_type = Column(String(50), nullable=True)
    reference_id = Column(String(100), nullable=True)

    created_by = Column(Uuid(as_uuid=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)

    session = relationship("CashSession", back_populates="movements")

    __table_args__ = (
        # Reintentos con la misma referencia no duplican el movimiento
        UniqueConstraint("session_id", "reference_type", "reference_id", name="uq_cash_movement_session_reference"),
    )


class CashCount(Base, TenantMixin, TimestampMixin):
    """Conteo por denominación registrado al cerrar (o después)"""
    __tablename__ = "cash_counts"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    session_id = Column(Uuid(as_uuid=True), ForeignKey("cash_sessions.id"), nullable=False, index=True)
    denomination = Column(Numeric(15, 2), nullable=False)
    quantity = Column(Integer, nullable=False)
    total = Column(Numeric(15, 2), nullable=False)  # denomination * quantity, calculado en servidor

    session = relationship("CashSession", back_populates="counts")


class CashDiscrepancy(Base, TenantMixin, TimestampMixin):
    """Reporte de faltante/sobrante con explicación"""
    __tablename__ = "cash_discrepancies"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    session_id = Column(Uuid(as_uuid=True), ForeignKey("cash_sessions.id"), nullable=False, index=True)
    type = Column(Enum(DiscrepancyType, name="cash_discrepancy_type"), nullable=False)
    amount = Column(Numeric(15, 2), nullable=False)
    explanation = Column(Text, nullable=True)
    reported_by = Column(Uuid(as_uuid=True), nullable=False)

    session = relationship("CashSession", back_populates="discrepancies")
