"""
Almacenamiento de sesiones y movimientos de caja.

SessionStore y MovementStore son los contratos que consume el coordinador;
SqlSessionStore / SqlMovementStore los implementan sobre una Session síncrona
de SQLAlchemy. Las dos operaciones con carrera posible se resuelven en la
base de datos, nunca con leer-y-luego-escribir:

- apertura: INSERT protegido por el índice único parcial (tenant_id) WHERE status = 'OPEN'
- cierre:   UPDATE ... WHERE status = 'OPEN', el que afecta 0 filas perdió

Cualquier error de conexión/driver se expone como StoreUnavailable.
"""

import functools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import asc, desc, func, or_, update
from sqlalchemy.exc import DataError, DBAPIError, IntegrityError
from sqlalchemy.orm import Session

from app.modules.cash.exceptions import (
    AlreadyOpen, InvalidAmount, SessionAlreadyClosed, SessionNotFound, SessionNotOpen,
    StoreUnavailable
)
from app.modules.cash.models import (
    CashCount, CashDiscrepancy, CashMovement, CashSession, CashSessionStatus, MovementType,
    ONE_OPEN_SESSION_INDEX
)

logger = logging.getLogger(__name__)


# ===== FILTROS =====

@dataclass
class SessionFilters:
    status: Optional[CashSessionStatus] = None
    opened_from: Optional[datetime] = None
    opened_to: Optional[datetime] = None
    user_id: Optional[UUID] = None


@dataclass
class MovementFilters:
    session_id: Optional[UUID] = None
    type: Optional[MovementType] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    amount_min: Optional[Decimal] = None
    amount_max: Optional[Decimal] = None
    search: Optional[str] = None
    user_id: Optional[UUID] = None
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None


@dataclass
class ClosingFields:
    closing_amount: Decimal
    closed_by: UUID
    closed_at: datetime
    notes: Optional[str] = None


def _store_call(method):
    """
    Traduce fallos del driver tras hacer rollback: un valor que la base
    rechaza (DataError, p. ej. desborde de Numeric) es InvalidAmount; el resto
    es StoreUnavailable.
    """
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except IntegrityError:
            self.db.rollback()
            raise
        except DataError as e:
            self.db.rollback()
            logger.warning(f"Cash store rejected value in {method.__name__}: {e}")
            raise InvalidAmount("Monto fuera del rango almacenable") from e
        except DBAPIError as e:
            self.db.rollback()
            logger.error(f"Cash store failure in {method.__name__}: {e}")
            raise StoreUnavailable() from e
    return wrapper


def _is_one_open_violation(error: IntegrityError) -> bool:
    """True si el IntegrityError viene del índice de sesión abierta única."""
    diag = getattr(error.orig, "diag", None)
    constraint = getattr(diag, "constraint_name", None)
    if constraint:
        return constraint == ONE_OPEN_SESSION_INDEX
    # SQLite no expone el nombre; solo las columnas del índice en el mensaje
    message = str(error.orig)
    return (ONE_OPEN_SESSION_INDEX in message
            or "UNIQUE constraint failed: cash_sessions.tenant_id" in message)


# ===== CONTRATOS =====

class SessionStore(ABC):

    @abstractmethod
    def find_open_session(self, organization_id: UUID) -> Optional[CashSession]:
        ...

    @abstractmethod
    def get_session(self, organization_id: UUID, session_id: UUID) -> Optional[CashSession]:
        ...

    @abstractmethod
    def insert_session_if_none_open(self, session: CashSession) -> CashSession:
        """Única operación que hace cumplir "una sesión abierta por organización"."""

    @abstractmethod
    def close_session_if_open(self, organization_id: UUID, session_id: UUID,
                              closing: ClosingFields,
                              counts: Sequence[CashCount] = ()) -> CashSession:
        ...

    @abstractmethod
    def search_sessions(self, organization_id: UUID, filters: SessionFilters,
                        order_by, offset: int, limit: int) -> Tuple[List[CashSession], int]:
        ...

    @abstractmethod
    def replace_counts(self, organization_id: UUID, session_id: UUID,
                       counts: Sequence[CashCount]) -> List[CashCount]:
        ...

    @abstractmethod
    def list_counts(self, session_ids: Iterable[UUID]) -> List[CashCount]:
        ...

    @abstractmethod
    def add_discrepancy(self, discrepancy: CashDiscrepancy) -> CashDiscrepancy:
        ...

    @abstractmethod
    def list_discrepancies(self, session_ids: Iterable[UUID]) -> List[CashDiscrepancy]:
        ...


class MovementStore(ABC):

    @abstractmethod
    def append_movement(
        self,
        movement: CashMovement,
        guard: Optional[Callable[[CashSession, List[CashMovement]], None]] = None
    ) -> Tuple[CashMovement, bool]:
        """
        Agrega un movimiento a una sesión OPEN. Devuelve (movimiento, creado);
        creado=False cuando ya existía uno con la misma referencia.
        """

    @abstractmethod
    def list_movements(self, session_id: UUID) -> List[CashMovement]:
        """Movimientos de la sesión por created_at ascendente."""

    @abstractmethod
    def list_movements_for_sessions(self, session_ids: Iterable[UUID]) -> List[CashMovement]:
        ...

    @abstractmethod
    def search_movements(self, organization_id: UUID, filters: MovementFilters,
                         order_by, offset: Optional[int] = None,
                         limit: Optional[int] = None) -> Tuple[List[CashMovement], int]:
        ...

    @abstractmethod
    def summarize_movements(self, organization_id: UUID,
                            filters: MovementFilters) -> Dict[MovementType, Decimal]:
        """Suma de amount por tipo sobre todos los movimientos que cumplen los filtros."""


# ===== IMPLEMENTACIÓN SQLALCHEMY =====

class SqlSessionStore(SessionStore):
    """Sesiones de caja sobre SQLAlchemy"""

    def __init__(self, db: Session):
        self.db = db

    def _base_query(self, organization_id: UUID):
        return self.db.query(CashSession).filter(CashSession.tenant_id == organization_id)

    @_store_call
    def find_open_session(self, organization_id: UUID) -> Optional[CashSession]:
        return self._base_query(organization_id).filter(
            CashSession.status == CashSessionStatus.OPEN
        ).order_by(desc(CashSession.opened_at)).first()

    @_store_call
    def get_session(self, organization_id: UUID, session_id: UUID) -> Optional[CashSession]:
        return self._base_query(organization_id).filter(CashSession.id == session_id).first()

    @_store_call
    def insert_session_if_none_open(self, session: CashSession) -> CashSession:
        try:
            self.db.add(session)
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            if not _is_one_open_violation(e):
                raise
            raise AlreadyOpen(session.tenant_id)
        self.db.refresh(session)
        return session

    @_store_call
    def close_session_if_open(self, organization_id: UUID, session_id: UUID,
                              closing: ClosingFields,
                              counts: Sequence[CashCount] = ()) -> CashSession:
        values = {
            "status": CashSessionStatus.CLOSED,
            "closing_amount": closing.closing_amount,
            "closed_by": closing.closed_by,
            "closed_at": closing.closed_at,
        }
        if closing.notes is not None:
            values["notes"] = closing.notes

        result = self.db.execute(
            update(CashSession)
            .where(
                CashSession.id == session_id,
                CashSession.tenant_id == organization_id,
                CashSession.status == CashSessionStatus.OPEN
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            self.db.rollback()
            if self.get_session(organization_id, session_id) is None:
                raise SessionNotFound(session_id)
            raise SessionAlreadyClosed(session_id)

        for count in counts:
            self.db.add(count)

        self.db.commit()
        session = self.get_session(organization_id, session_id)
        self.db.refresh(session)
        return session

    @_store_call
    def search_sessions(self, organization_id: UUID, filters: SessionFilters,
                        order_by, offset: int, limit: int) -> Tuple[List[CashSession], int]:
        query = self._base_query(organization_id)

        if filters.status is not None:
            query = query.filter(CashSession.status == filters.status)
        if filters.opened_from is not None:
            query = query.filter(CashSession.opened_at >= filters.opened_from)
        if filters.opened_to is not None:
            query = query.filter(CashSession.opened_at <= filters.opened_to)
        if filters.user_id is not None:
            query = query.filter(or_(
                CashSession.opened_by == filters.user_id,
                CashSession.closed_by == filters.user_id
            ))

        total = query.count()
        sessions = query.order_by(order_by, desc(CashSession.id)).offset(offset).limit(limit).all()
        return sessions, total

    @_store_call
    def replace_counts(self, organization_id: UUID, session_id: UUID,
                       counts: Sequence[CashCount]) -> List[CashCount]:
        self.db.query(CashCount).filter(
            CashCount.session_id == session_id,
            CashCount.tenant_id == organization_id
        ).delete(synchronize_session=False)
        for count in counts:
            self.db.add(count)
        self.db.commit()
        return self.list_counts([session_id])

    @_store_call
    def list_counts(self, session_ids: Iterable[UUID]) -> List[CashCount]:
        session_ids = list(session_ids)
        if not session_ids:
            return []
        return self.db.query(CashCount).filter(
            CashCount.session_id.in_(session_ids)
        ).order_by(desc(CashCount.denomination)).all()

    @_store_call
    def add_discrepancy(self, discrepancy: CashDiscrepancy) -> CashDiscrepancy:
        self.db.add(discrepancy)
        self.db.commit()
        self.db.refresh(discrepancy)
        return discrepancy

    @_store_call
    def list_discrepancies(self, session_ids: Iterable[UUID]) -> List[CashDiscrepancy]:
        session_ids = list(session_ids)
        if not session_ids:
            return []
        return self.db.query(CashDiscrepancy).filter(
            CashDiscrepancy.session_id.in_(session_ids)
        ).order_by(asc(CashDiscrepancy.created_at)).all()


class SqlMovementStore(MovementStore):
    """Ledger de movimientos sobre SQLAlchemy"""

    def __init__(self, db: Session):
        self.db = db

    def _find_by_reference(self, movement: CashMovement) -> Optional[CashMovement]:
        if not (movement.reference_type and movement.reference_id):
            return None
        return self.db.query(CashMovement).filter(
            CashMovement.session_id == movement.session_id,
            CashMovement.reference_type == movement.reference_type,
            CashMovement.reference_id == movement.reference_id
        ).first()

    @_store_call
    def append_movement(
        self,
        movement: CashMovement,
        guard: Optional[Callable[[CashSession, List[CashMovement]], None]] = None
    ) -> Tuple[CashMovement, bool]:
        # Bloqueo de la fila de sesión: un cierre concurrente espera a este INSERT
        session = self.db.query(CashSession).filter(
            CashSession.id == movement.session_id,
            CashSession.tenant_id == movement.tenant_id
        ).with_for_update().first()

        if session is None:
            self.db.rollback()
            raise SessionNotFound(movement.session_id)
        if session.status != CashSessionStatus.OPEN:
            self.db.rollback()
            raise SessionNotOpen(movement.session_id)

        existing = self._find_by_reference(movement)
        if existing is not None:
            self.db.commit()
            return existing, False

        if guard is not None:
            try:
                guard(session, self.list_movements(session.id))
            except Exception:
                self.db.rollback()
                raise

        try:
            self.db.add(movement)
            self.db.commit()
        except IntegrityError:
            # Otro request insertó la misma referencia entre la consulta y el INSERT
            self.db.rollback()
            existing = self._find_by_reference(movement)
            if existing is None:
                raise
            return existing, False

        self.db.refresh(movement)
        return movement, True

    @_store_call
    def list_movements(self, session_id: UUID) -> List[CashMovement]:
        return self.db.query(CashMovement).filter(
            CashMovement.session_id == session_id
        ).order_by(asc(CashMovement.created_at)).all()

    @_store_call
    def list_movements_for_sessions(self, session_ids: Iterable[UUID]) -> List[CashMovement]:
        session_ids = list(session_ids)
        if not session_ids:
            return []
        return self.db.query(CashMovement).filter(
            CashMovement.session_id.in_(session_ids)
        ).order_by(asc(CashMovement.created_at)).all()

    @_store_call
    def search_movements(self, organization_id: UUID, filters: MovementFilters,
                         order_by, offset: Optional[int] = None,
                         limit: Optional[int] = None) -> Tuple[List[CashMovement], int]:
        query = self.db.query(CashMovement).filter(
            CashMovement.tenant_id == organization_id,
            *self._conditions(filters)
        )

        total = query.count()
        query = query.order_by(order_by, desc(CashMovement.id))
        if offset is not None:
            query = query.offset(offset)
        if limit is not None:
            query = query.limit(limit)
        return query.all(), total

    @_store_call
    def summarize_movements(self, organization_id: UUID,
                            filters: MovementFilters) -> Dict[MovementType, Decimal]:
        rows = self.db.query(
            CashMovement.type,
            func.sum(CashMovement.amount)
        ).filter(
            CashMovement.tenant_id == organization_id,
            *self._conditions(filters)
        ).group_by(CashMovement.type).all()

        return {movement_type: Decimal(str(total or 0)) for movement_type, total in rows}

    @staticmethod
    def _conditions(filters: MovementFilters) -> list:
        conditions = []
        if filters.session_id is not None:
            conditions.append(CashMovement.session_id == filters.session_id)
        if filters.type is not None:
            conditions.append(CashMovement.type == filters.type)
        if filters.reference_type:
            conditions.append(CashMovement.reference_type == filters.reference_type)
        if filters.reference_id:
            conditions.append(CashMovement.reference_id == filters.reference_id)
        if filters.created_from is not None:
            conditions.append(CashMovement.created_at >= filters.created_from)
        if filters.created_to is not None:
            conditions.append(CashMovement.created_at <= filters.created_to)
        if filters.amount_min is not None:
            conditions.append(CashMovement.amount >= filters.amount_min)
        if filters.amount_max is not None:
            conditions.append(CashMovement.amount <= filters.amount_max)
        if filters.user_id is not None:
            conditions.append(CashMovement.created_by == filters.user_id)
        if filters.search and filters.search.strip():
            conditions.append(CashMovement.reason.ilike(f"%{filters.search.strip()}%"))
        return conditions
