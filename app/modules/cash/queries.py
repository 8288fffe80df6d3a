"""
Consultas de caja (lado de lectura)

Listados paginados de sesiones y movimientos. El saldo esperado y la
diferencia se recalculan en cada lectura a partir del ledger; nada de lo que
se devuelve aquí se persiste.
"""

import logging
import math
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Union
from uuid import UUID

from sqlalchemy import asc, desc

from app.core.config import settings
from app.modules.cash.exceptions import SessionNotFound
from app.modules.cash.models import CashMovement, CashSession, CashSessionStatus, MovementType
from app.modules.cash.reconciliation import net_total, totals_from_sums
from app.modules.cash.schemas import (
    CashMovementOut, MovementListOut, MovementSummary, Pagination,
    SessionDetailOut, SessionListOut, SessionSummaryOut
)
from app.modules.cash.stores import MovementFilters, MovementStore, SessionFilters, SessionStore
from app.modules.cash.utils import MOVEMENTS_CSV_HEADERS, movement_csv_row, render_csv

logger = logging.getLogger(__name__)

SESSION_SORT_FIELDS = {
    "opened_at": CashSession.opened_at,
    "closed_at": CashSession.closed_at,
    "opening_amount": CashSession.opening_amount,
    "closing_amount": CashSession.closing_amount,
}

MOVEMENT_SORT_FIELDS = {
    "date": CashMovement.created_at,
    "amount": CashMovement.amount,
    "type": CashMovement.type,
}

DateLike = Union[date, datetime, None]


@dataclass
class MovementQuery:
    """Filtros de movimientos tal como llegan del router"""
    session_id: Optional[UUID] = None
    type: Optional[str] = None
    date_from: DateLike = None
    date_to: DateLike = None
    amount_min: Optional[Decimal] = None
    amount_max: Optional[Decimal] = None
    search: Optional[str] = None
    user_id: Optional[UUID] = None
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite devuelve datetimes naive; se asumen en UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of(value: DateLike) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def end_of(value: DateLike) -> Optional[datetime]:
    """Una fecha sin hora cubre el día completo."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    return datetime.combine(value, time.max, tzinfo=timezone.utc)


def parse_status(value: Optional[str]) -> Optional[CashSessionStatus]:
    if not value:
        return None
    try:
        return CashSessionStatus(value.strip().upper())
    except ValueError:
        # "all" o cualquier valor desconocido: sin filtro
        return None


def parse_movement_type(value) -> Optional[MovementType]:
    if value is None or value == "":
        return None
    try:
        return MovementType(getattr(value, "value", value).strip().upper())
    except ValueError:
        return None


def clamp(value: Optional[int], default: int, maximum: int) -> int:
    if value is None:
        return default
    return max(1, min(int(value), maximum))


def build_pagination(page: int, limit: int, total: int) -> Pagination:
    return Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit) if total else 0)


def _order(column, direction: Optional[str]):
    if (direction or "").lower() == "asc":
        return asc(column)
    return desc(column)


class CashQueryService:
    """Listados de sesiones y movimientos de caja"""

    def __init__(self, sessions: SessionStore, movements: MovementStore):
        self.sessions = sessions
        self.movements = movements

    # ===== SESIONES =====

    def get_current_session(self, organization_id: UUID) -> Optional[SessionSummaryOut]:
        session = self.sessions.find_open_session(organization_id)
        if session is None:
            return None
        return self._summaries([session])[0]

    def get_session(self, organization_id: UUID, session_id: UUID) -> SessionDetailOut:
        session = self.sessions.get_session(organization_id, session_id)
        if session is None:
            raise SessionNotFound(session_id)

        movements = self.movements.list_movements(session_id)
        summary = SessionSummaryOut.build(
            session,
            movements,
            self.sessions.list_counts([session_id]),
            self.sessions.list_discrepancies([session_id])
        )
        return SessionDetailOut(
            **summary.model_dump(),
            movements=[CashMovementOut.build(m) for m in movements]
        )

    def list_sessions(self, organization_id: UUID,
                      status: Optional[str] = None,
                      date_from: DateLike = None,
                      date_to: DateLike = None,
                      user_id: Optional[UUID] = None,
                      page: int = 1,
                      limit: Optional[int] = None,
                      sort_by: Optional[str] = None,
                      sort_dir: Optional[str] = None) -> SessionListOut:
        """
        Sesiones de la organización con arqueo calculado.

        Campo u orden de sort inválido -> opened_at desc. Estado "all" o
        desconocido -> sin filtro.
        """
        page = max(1, page or 1)
        limit = clamp(limit, settings.CASH_SESSIONS_DEFAULT_PAGE_SIZE, settings.CASH_SESSIONS_MAX_PAGE_SIZE)

        column = SESSION_SORT_FIELDS.get(sort_by or "", CashSession.opened_at)
        if sort_by not in SESSION_SORT_FIELDS:
            sort_dir = "desc"

        filters = SessionFilters(
            status=parse_status(status),
            opened_from=start_of(date_from),
            opened_to=end_of(date_to),
            user_id=user_id
        )
        sessions, total = self.sessions.search_sessions(
            organization_id, filters, _order(column, sort_dir), (page - 1) * limit, limit
        )

        return SessionListOut(
            sessions=self._summaries(sessions),
            pagination=build_pagination(page, limit, total)
        )

    def _summaries(self, sessions: List[CashSession]) -> List[SessionSummaryOut]:
        if not sessions:
            return []
        ids = [s.id for s in sessions]

        movements: Dict[UUID, list] = defaultdict(list)
        for m in self.movements.list_movements_for_sessions(ids):
            movements[m.session_id].append(m)
        counts: Dict[UUID, list] = defaultdict(list)
        for c in self.sessions.list_counts(ids):
            counts[c.session_id].append(c)
        discrepancies: Dict[UUID, list] = defaultdict(list)
        for d in self.sessions.list_discrepancies(ids):
            discrepancies[d.session_id].append(d)

        return [
            SessionSummaryOut.build(s, movements[s.id], counts[s.id], discrepancies[s.id])
            for s in sessions
        ]

    # ===== MOVIMIENTOS =====

    def list_movements(self, organization_id: UUID, query: MovementQuery,
                       page: int = 1, limit: Optional[int] = None,
                       order_by: Optional[str] = None,
                       order_dir: Optional[str] = None) -> MovementListOut:
        """Movimientos filtrados; el resumen cubre todos los que cumplen el filtro."""
        page = max(1, page or 1)
        limit = clamp(limit, settings.DEFAULT_PAGE_SIZE, settings.CASH_MOVEMENTS_MAX_PAGE_SIZE)

        filters = self._movement_filters(organization_id, query)
        order = self._movement_order(order_by, order_dir)

        rows, total = self.movements.search_movements(
            organization_id, filters, order, (page - 1) * limit, limit
        )
        totals = totals_from_sums(self.movements.summarize_movements(organization_id, filters))

        return MovementListOut(
            movements=[CashMovementOut.build(m) for m in rows],
            summary=MovementSummary(net=net_total(totals), **totals),
            pagination=build_pagination(page, limit, total)
        )

    def export_movements_csv(self, organization_id: UUID, query: MovementQuery,
                             order_by: Optional[str] = None,
                             order_dir: Optional[str] = None) -> str:
        filters = self._movement_filters(organization_id, query)
        rows, total = self.movements.search_movements(
            organization_id, filters, self._movement_order(order_by, order_dir)
        )
        logger.info(f"Exporting {total} cash movements for org {organization_id}")
        return render_csv([movement_csv_row(m) for m in rows], MOVEMENTS_CSV_HEADERS)

    def _movement_filters(self, organization_id: UUID, query: MovementQuery) -> MovementFilters:
        created_to = end_of(query.date_to)

        if query.session_id is not None:
            session = self.sessions.get_session(organization_id, query.session_id)
            if session is None:
                raise SessionNotFound(query.session_id)
            # Una sesión cerrada no tiene movimientos posteriores a su cierre
            closed_at = as_utc(session.closed_at)
            if session.status == CashSessionStatus.CLOSED and closed_at and created_to and created_to > closed_at:
                created_to = closed_at

        return MovementFilters(
            session_id=query.session_id,
            type=parse_movement_type(query.type),
            created_from=start_of(query.date_from),
            created_to=created_to,
            amount_min=query.amount_min,
            amount_max=query.amount_max,
            search=query.search,
            user_id=query.user_id,
            reference_type=query.reference_type,
            reference_id=query.reference_id
        )

    @staticmethod
    def _movement_order(order_by: Optional[str], order_dir: Optional[str]):
        column = MOVEMENT_SORT_FIELDS.get(order_by or "date", CashMovement.created_at)
        return _order(column, order_dir)
