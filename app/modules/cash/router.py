"""
Router FastAPI para el módulo de Caja

Endpoints:
- Sesión actual, apertura y cierre
- Listado y detalle de sesiones con arqueo
- Arqueo por denominación y reporte de diferencias
- Movimientos: registro, listado y exportación CSV

La empresa se toma del header X-Company-ID (o del token de contexto) y el
usuario del JWT. Los errores de dominio (CashSessionError) se renderizan
en app/main.py.
"""

from datetime import date
from decimal import Decimal
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Path, Query, Response, status
from sqlalchemy.orm import Session

from app.database.database import get_db
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import AuthContext
from app.modules.cash.audit import AuditSink, get_audit_sink
from app.modules.cash.queries import CashQueryService, MovementQuery
from app.modules.cash.schemas import (
    CashCountsReplace, CashDiscrepancyCreate, CashDiscrepancyOut,
    CashMovementCreate, CashMovementOut, CashSessionClose, CashSessionOpen,
    CashSessionOut, CountsOut, CurrentSessionOut, MovementListOut,
    SessionDetailOut, SessionListOut, SessionSummaryOut
)
from app.modules.cash.services import CashSessionService
from app.modules.cash.stores import SqlMovementStore, SqlSessionStore
from app.modules.cash.utils import create_csv_response

router = APIRouter(prefix="/cash", tags=["Cash"])


def get_session_service(
    db: Session = Depends(get_db),
    audit: AuditSink = Depends(get_audit_sink)
) -> CashSessionService:
    return CashSessionService(SqlSessionStore(db), SqlMovementStore(db), audit)


def get_query_service(db: Session = Depends(get_db)) -> CashQueryService:
    return CashQueryService(SqlSessionStore(db), SqlMovementStore(db))


def _session_out(session) -> CashSessionOut:
    return CashSessionOut(
        id=session.id,
        organization_id=session.tenant_id,
        status=session.status.value,
        opening_amount=session.opening_amount,
        closing_amount=session.closing_amount,
        opened_by=session.opened_by,
        closed_by=session.closed_by,
        opened_at=session.opened_at,
        closed_at=session.closed_at,
        notes=session.notes
    )


# ===== SESIONES =====

@router.get("/session/current", response_model=CurrentSessionOut)
def get_current_session(
    auth_context: AuthContext = Depends(AuthDependencies.require_permission("cash", "read")),
    queries: CashQueryService = Depends(get_query_service)
):
    """
    Sesión abierta de la organización con su arqueo parcial.

    Devuelve `{"session": null}` si no hay caja abierta.
    """
    return CurrentSessionOut(session=queries.get_current_session(auth_context.tenant_id))


@router.post("/session/open", response_model=CashSessionOut, status_code=status.HTTP_201_CREATED)
def open_session(
    data: CashSessionOpen,
    auth_context: AuthContext = Depends(AuthDependencies.require_permission("cash", "open")),
    service: CashSessionService = Depends(get_session_service)
):
    """
    Abrir sesión de caja.

    - **openingAmount**: Saldo inicial (>= 0)
    - **notes**: Notas opcionales

    Solo puede haber una sesión abierta por organización (409 already_open).
    """
    session = service.open_session(
        organization_id=auth_context.tenant_id,
        caller_id=auth_context.user_id,
        opening_amount=data.opening_amount,
        notes=data.notes
    )
    return _session_out(session)


@router.post("/session/close", response_model=SessionSummaryOut)
def close_current_session(
    data: CashSessionClose,
    auth_context: AuthContext = Depends(AuthDependencies.require_permission("cash", "close")),
    service: CashSessionService = Depends(get_session_service)
):
    """Cerrar la sesión abierta de la organización con arqueo."""
    return service.close_current_session(
        organization_id=auth_context.tenant_id,
        caller_id=auth_context.user_id,
        closing_amount=data.closing_amount,
        notes=data.notes,
        counts=data.counts
    )


@router.post("/sessions/{session_id}/close", response_model=SessionSummaryOut)
def close_session(
    data: CashSessionClose,
    session_id: UUID = Path(..., description="ID de la sesión de caja"),
    auth_context: AuthContext = Depends(AuthDependencies.require_permission("cash", "close")),
    service: CashSessionService = Depends(get_session_service)
):
    """
    Cerrar sesión de caja con arqueo.

    - Calcula el saldo esperado a partir de los movimientos
    - Diferencia = contado - esperado (negativo es faltante)
    - Dos cierres simultáneos: solo uno gana, el otro recibe 409
    """
    return service.close_session(
        organization_id=auth_context.tenant_id,
        session_id=session_id,
        caller_id=auth_context.user_id,
        closing_amount=data.closing_amount,
        notes=data.notes,
        counts=data.counts
    )


@router.get("/sessions", response_model=SessionListOut)
def list_sessions(
    status_filter: Optional[str] = Query(None, alias="status", description="OPEN, CLOSED o all"),
    date_from: Optional[date] = Query(None, description="Apertura desde (inclusive)"),
    date_to: Optional[date] = Query(None, description="Apertura hasta (inclusive, día completo)"),
    user_id: Optional[UUID] = Query(None, description="Abierta o cerrada por este usuario"),
    page: int = Query(1, ge=1, description="Página"),
    limit: Optional[int] = Query(None, description="Resultados por página"),
    sort_by: Optional[str] = Query(None, description="opened_at, closed_at, opening_amount, closing_amount"),
    sort_dir: Optional[str] = Query(None, description="asc o desc"),
    auth_context: AuthContext = Depends(AuthDependencies.require_permission("cash", "read")),
    queries: CashQueryService = Depends(get_query_service)
):
    """Listar sesiones de la organización con arqueo calculado."""
    return queries.list_sessions(
        organization_id=auth_context.tenant_id,
        status=status_filter,
        date_from=date_from,
        date_to=date_to,
        user_id=user_id,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_dir=sort_dir
    )


@router.get("/sessions/{session_id}", response_model=SessionDetailOut)
def get_session(
    session_id: UUID = Path(..., description="ID de la sesión de caja"),
    auth_context: AuthContext = Depends(AuthDependencies.require_permission("cash", "read")),
    queries: CashQueryService = Depends(get_query_service)
):
    return queries.get_session(auth_context.tenant_id, session_id)


@router.put("/sessions/{session_id}/counts", response_model=CountsOut)
def replace_counts(
    data: CashCountsReplace,
    session_id: UUID = Path(..., description="ID de la sesión de caja"),
    auth_context: AuthContext = Depends(AuthDependencies.require_permission("cash", "close")),
    service: CashSessionService = Depends(get_session_service)
):
    """Reemplazar el arqueo por denominación de una sesión cerrada."""
    return service.replace_counts(
        organization_id=auth_context.tenant_id,
        session_id=session_id,
        counts=data.counts,
        caller_id=auth_context.user_id
    )


@router.post("/discrepancies", response_model=CashDiscrepancyOut, status_code=status.HTTP_201_CREATED)
def report_discrepancy(
    data: CashDiscrepancyCreate,
    auth_context: AuthContext = Depends(AuthDependencies.require_permission("cash", "reconcile")),
    service: CashSessionService = Depends(get_session_service)
):
    discrepancy = service.report_discrepancy(
        organization_id=auth_context.tenant_id,
        session_id=data.session_id,
        discrepancy_type=data.type,
        amount=data.amount,
        caller_id=auth_context.user_id,
        explanation=data.explanation
    )
    return CashDiscrepancyOut.build(discrepancy)


# ===== MOVIMIENTOS =====

@router.post("/movements", response_model=CashMovementOut, status_code=status.HTTP_201_CREATED)
def record_movement(
    data: CashMovementCreate,
    response: Response,
    auth_context: AuthContext = Depends(AuthDependencies.require_permission("cash", "move")),
    service: CashSessionService = Depends(get_session_service)
):
    """
    Registrar movimiento de caja.

    - **type**: IN, OUT, SALE, RETURN (monto positivo) o ADJUSTMENT (con signo)
    - **referenceType/referenceId**: hacen el registro idempotente; un
      reintento con la misma referencia devuelve 200 con el movimiento original
    """
    result = service.record_movement(
        organization_id=auth_context.tenant_id,
        session_id=data.session_id,
        movement_type=data.type,
        amount=data.amount,
        caller_id=auth_context.user_id,
        reason=data.reason,
        reference_type=data.reference_type,
        reference_id=data.reference_id
    )
    if not result.created:
        response.status_code = status.HTTP_200_OK
    return CashMovementOut.build(result.movement)


def _movement_query(
    session_id: Optional[UUID] = Query(None, description="Filtrar por sesión"),
    type: Optional[str] = Query(None, description="Tipo de movimiento"),
    date_from: Optional[date] = Query(None, description="Desde (inclusive)"),
    date_to: Optional[date] = Query(None, description="Hasta (inclusive, día completo)"),
    amount_min: Optional[Decimal] = Query(None, description="Monto mínimo"),
    amount_max: Optional[Decimal] = Query(None, description="Monto máximo"),
    search: Optional[str] = Query(None, description="Buscar en el motivo"),
    user_id: Optional[UUID] = Query(None, description="Creado por este usuario"),
    reference_type: Optional[str] = Query(None),
    reference_id: Optional[str] = Query(None)
) -> MovementQuery:
    return MovementQuery(
        session_id=session_id,
        type=type,
        date_from=date_from,
        date_to=date_to,
        amount_min=amount_min,
        amount_max=amount_max,
        search=search,
        user_id=user_id,
        reference_type=reference_type,
        reference_id=reference_id
    )


@router.get("/movements/export")
def export_movements(
    query: MovementQuery = Depends(_movement_query),
    order_by: Optional[str] = Query(None, description="date, amount o type"),
    order_dir: Optional[str] = Query(None, description="asc o desc"),
    auth_context: AuthContext = Depends(AuthDependencies.require_permission("cash", "read")),
    queries: CashQueryService = Depends(get_query_service)
):
    """Exportar movimientos filtrados a CSV (UTF-8 con BOM)."""
    content = queries.export_movements_csv(auth_context.tenant_id, query, order_by, order_dir)
    return create_csv_response(content, f"movimientos_caja_{date.today().isoformat()}.csv")


@router.get("/movements", response_model=MovementListOut)
def list_movements(
    query: MovementQuery = Depends(_movement_query),
    page: int = Query(1, ge=1, description="Página"),
    limit: Optional[int] = Query(None, description="Resultados por página (máx. 200)"),
    order_by: Optional[str] = Query(None, description="date, amount o type"),
    order_dir: Optional[str] = Query(None, description="asc o desc"),
    auth_context: AuthContext = Depends(AuthDependencies.require_permission("cash", "read")),
    queries: CashQueryService = Depends(get_query_service)
):
    """Listar movimientos con filtros, resumen por tipo y paginación."""
    return queries.list_movements(auth_context.tenant_id, query, page, limit, order_by, order_dir)
