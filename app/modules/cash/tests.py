"""
Tests para el módulo de Caja

Cubren:
- Arqueo (cálculo puro del saldo esperado y diferencia)
- Servicio de sesiones: apertura única, movimientos, cierre condicional
- Concurrencia de aperturas y cierres contra la base de datos
- Consultas paginadas, filtros y exportación CSV
- Endpoints REST con permisos por rol y scoping por organización
"""

import itertools
import threading
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace
from uuid import uuid4

import pytest
from sqlalchemy.exc import DataError, IntegrityError, OperationalError

from app.database.database import SessionLocal
from app.modules.cash.audit import CeleryAuditSink, NullAuditSink, AuditSink
from app.modules.cash import audit as audit_events
from app.modules.cash.exceptions import (
    AlreadyOpen, InvalidAmount, SessionAlreadyClosed, SessionNotFound,
    SessionNotOpen, SessionStillOpen, StoreUnavailable
)
from app.modules.cash.models import CashMovement, CashSession, CashSessionStatus, MovementType
from app.modules.cash.queries import CashQueryService, MovementQuery, as_utc
from app.modules.cash.reconciliation import (
    MAX_STORABLE_AMOUNT, compute_discrepancy, compute_expected, reconcile, signed_amount,
    summarize, to_money, totals_from_sums
)
from app.modules.cash.schemas import CashCountIn
from app.modules.cash.services import CashSessionService, clean_reason
from app.modules.cash.stores import (
    MovementFilters, SqlMovementStore, SqlSessionStore, _is_one_open_violation, _store_call
)


def mv(movement_type, amount):
    return SimpleNamespace(type=movement_type, amount=Decimal(amount))


def stepped_clock(start=datetime(2024, 3, 10, 8, 0, tzinfo=timezone.utc)):
    """Reloj que avanza un minuto por llamada"""
    ticks = itertools.count()
    return lambda: start + timedelta(minutes=next(ticks))


@pytest.fixture
def stepped_service(db_session, audit_sink):
    return CashSessionService(
        SqlSessionStore(db_session), SqlMovementStore(db_session), audit_sink, clock=stepped_clock()
    )


def movement_count(db_session, session_id):
    db_session.expire_all()
    return db_session.query(CashMovement).filter(CashMovement.session_id == session_id).count()


# ===== ARQUEO =====

class TestReconciliation:
    """Tests del cálculo de saldo esperado"""

    def test_empty_movements_returns_opening(self):
        assert compute_expected(Decimal("100000"), []) == Decimal("100000.00")

    def test_reference_scenario(self):
        """100000 + venta 50000 - retiro 5000 - ajuste 1000 = 144000"""
        movements = [
            mv(MovementType.SALE, "50000"),
            mv(MovementType.OUT, "5000"),
            mv(MovementType.ADJUSTMENT, "-1000"),
        ]
        result = reconcile(Decimal("100000"), movements, Decimal("143500"))
        assert result.expected_amount == Decimal("144000.00")
        assert result.discrepancy_amount == Decimal("-500.00")

    def test_order_does_not_matter(self):
        movements = [
            mv(MovementType.SALE, "50000"),
            mv(MovementType.OUT, "5000"),
            mv(MovementType.IN, "1234.56"),
            mv(MovementType.RETURN, "999.99"),
            mv(MovementType.ADJUSTMENT, "-0.57"),
        ]
        results = {compute_expected(Decimal("10"), p) for p in itertools.permutations(movements)}
        assert results == {Decimal("45244.00")}

    def test_sign_rules(self):
        assert signed_amount(MovementType.IN, "10") == Decimal("10.00")
        assert signed_amount(MovementType.SALE, "10") == Decimal("10.00")
        assert signed_amount(MovementType.OUT, "10") == Decimal("-10.00")
        assert signed_amount(MovementType.RETURN, "10") == Decimal("-10.00")
        assert signed_amount(MovementType.ADJUSTMENT, "-10") == Decimal("-10.00")
        assert signed_amount(MovementType.ADJUSTMENT, "10") == Decimal("10.00")

    def test_discrepancy_is_none_while_open(self):
        assert reconcile(Decimal("50"), [mv(MovementType.IN, "5")]).discrepancy_amount is None

    def test_discrepancy_sign(self):
        assert compute_discrepancy(Decimal("110"), Decimal("100")) == Decimal("10.00")
        assert compute_discrepancy(Decimal("90"), Decimal("100")) == Decimal("-10.00")

    def test_summarize_keeps_adjustment_sign(self):
        totals = summarize([
            mv(MovementType.SALE, "100"),
            mv(MovementType.SALE, "50"),
            mv(MovementType.RETURN, "20"),
            mv(MovementType.ADJUSTMENT, "-5"),
            mv(MovementType.ADJUSTMENT, "2"),
        ])
        assert totals["total_sales"] == Decimal("150.00")
        assert totals["total_returns"] == Decimal("20.00")
        assert totals["total_adjustments"] == Decimal("-3.00")
        assert totals["total_in"] == Decimal("0.00")

    def test_to_money_rounds_half_up(self):
        assert to_money(0.1) == Decimal("0.10")
        assert to_money("2.675") == Decimal("2.68")
        assert to_money(None) == Decimal("0.00")

    @pytest.mark.parametrize("value", ["1e30", 1e30, "NaN", "Infinity", "abc"])
    def test_to_money_rejects_unrepresentable_values(self, value):
        with pytest.raises(InvalidAmount):
            to_money(value)

    def test_totals_from_sums(self):
        totals = totals_from_sums({
            MovementType.SALE: Decimal("150"),
            MovementType.ADJUSTMENT: Decimal("-3"),
        })
        assert totals == {
            "total_in": Decimal("0.00"),
            "total_out": Decimal("0.00"),
            "total_sales": Decimal("150.00"),
            "total_returns": Decimal("0.00"),
            "total_adjustments": Decimal("-3.00"),
        }


# ===== SERVICIO: APERTURA =====

class TestOpenSession:

    def test_open_session(self, service, audit_sink, org_id, user_id):
        session = service.open_session(org_id, user_id, Decimal("100000"), notes="Turno mañana")

        assert session.status == CashSessionStatus.OPEN
        assert session.opening_amount == Decimal("100000.00")
        assert session.opened_by == user_id
        assert session.closed_at is None
        assert audit_sink.events[0][0] == audit_events.SESSION_OPENED
        assert audit_sink.events[0][3]["opening_amount"] == "100000.00"

    def test_second_open_fails(self, service, db_session, org_id, user_id):
        service.open_session(org_id, user_id, Decimal("0"))

        with pytest.raises(AlreadyOpen):
            service.open_session(org_id, uuid4(), Decimal("500"))

        open_sessions = db_session.query(CashSession).filter(
            CashSession.tenant_id == org_id,
            CashSession.status == CashSessionStatus.OPEN
        ).count()
        assert open_sessions == 1

    def test_other_organization_can_open(self, service, org_id, user_id):
        service.open_session(org_id, user_id, Decimal("0"))
        other = service.open_session(uuid4(), user_id, Decimal("0"))
        assert other.status == CashSessionStatus.OPEN

    def test_negative_opening_rejected(self, service, db_session, org_id, user_id):
        with pytest.raises(InvalidAmount):
            service.open_session(org_id, user_id, Decimal("-1"))
        assert db_session.query(CashSession).count() == 0

    @pytest.mark.parametrize("amount", ["1e30", "1e14", "10000000000000.00"])
    def test_opening_above_storable_range_rejected(self, service, db_session, org_id, user_id, amount):
        with pytest.raises(InvalidAmount):
            service.open_session(org_id, user_id, Decimal(amount))
        assert db_session.query(CashSession).count() == 0

    def test_opening_at_storable_limit(self, service, org_id, user_id):
        session = service.open_session(org_id, user_id, MAX_STORABLE_AMOUNT)
        assert session.opening_amount == MAX_STORABLE_AMOUNT

    def test_reopen_after_close(self, service, org_id, user_id):
        first = service.open_session(org_id, user_id, Decimal("0"))
        service.close_session(org_id, first.id, user_id, Decimal("0"))

        second = service.open_session(org_id, user_id, Decimal("10"))
        assert second.id != first.id

    def test_concurrent_opens_only_one_wins(self, org_id):
        """Varias aperturas simultáneas para la misma organización: una gana, el resto AlreadyOpen"""
        attempts = 8
        barrier = threading.Barrier(attempts)
        results = []
        lock = threading.Lock()

        def attempt():
            db = SessionLocal()
            try:
                svc = CashSessionService(SqlSessionStore(db), SqlMovementStore(db), NullAuditSink())
                barrier.wait()
                try:
                    svc.open_session(org_id, uuid4(), Decimal("0"))
                    outcome = "opened"
                except AlreadyOpen:
                    outcome = "already_open"
                with lock:
                    results.append(outcome)
            finally:
                db.close()

        threads = [threading.Thread(target=attempt) for _ in range(attempts)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == attempts
        assert results.count("opened") == 1
        assert results.count("already_open") == attempts - 1

        db = SessionLocal()
        try:
            assert db.query(CashSession).filter(CashSession.tenant_id == org_id).count() == 1
        finally:
            db.close()


# ===== SERVICIO: MOVIMIENTOS =====

class TestRecordMovement:

    @pytest.fixture
    def open_session(self, service, org_id, user_id):
        return service.open_session(org_id, user_id, Decimal("100"))

    def test_record_sale(self, service, audit_sink, open_session, org_id, user_id):
        result = service.record_movement(org_id, open_session.id, MovementType.SALE, Decimal("25.5"), user_id)

        assert result.created is True
        assert result.movement.amount == Decimal("25.50")
        assert result.movement.type == MovementType.SALE
        assert audit_sink.events[-1][0] == audit_events.MOVEMENT_RECORDED

    def test_accepts_type_as_string(self, service, open_session, org_id, user_id):
        result = service.record_movement(org_id, open_session.id, "OUT", Decimal("10"), user_id)
        assert result.movement.type == MovementType.OUT

    @pytest.mark.parametrize("movement_type,amount", [
        (MovementType.SALE, "0"),
        (MovementType.IN, "-5"),
        (MovementType.RETURN, "-1"),
        (MovementType.ADJUSTMENT, "0"),
        (MovementType.IN, "10000000.01"),
        (MovementType.ADJUSTMENT, "-10000001"),
        (MovementType.SALE, "1e30"),
        (MovementType.ADJUSTMENT, "-1e30"),
    ])
    def test_invalid_amounts(self, service, db_session, open_session, org_id, user_id, movement_type, amount):
        with pytest.raises(InvalidAmount):
            service.record_movement(org_id, open_session.id, movement_type, Decimal(amount), user_id)
        assert movement_count(db_session, open_session.id) == 0

    def test_negative_adjustment_cannot_drop_balance_below_zero(self, service, db_session, open_session, org_id, user_id):
        with pytest.raises(InvalidAmount):
            service.record_movement(org_id, open_session.id, MovementType.ADJUSTMENT, Decimal("-100.01"), user_id)
        assert movement_count(db_session, open_session.id) == 0

        result = service.record_movement(org_id, open_session.id, MovementType.ADJUSTMENT, Decimal("-100"), user_id)
        assert result.movement.amount == Decimal("-100.00")

    def test_movement_after_close_rejected(self, service, db_session, open_session, org_id, user_id):
        service.close_session(org_id, open_session.id, user_id, Decimal("100"))

        with pytest.raises(SessionNotOpen):
            service.record_movement(org_id, open_session.id, MovementType.SALE, Decimal("10"), user_id)
        assert movement_count(db_session, open_session.id) == 0

    def test_movement_on_unknown_session(self, service, org_id, user_id):
        with pytest.raises(SessionNotFound):
            service.record_movement(org_id, uuid4(), MovementType.SALE, Decimal("10"), user_id)

    def test_movement_on_other_organization_session(self, service, open_session, user_id):
        with pytest.raises(SessionNotFound):
            service.record_movement(uuid4(), open_session.id, MovementType.SALE, Decimal("10"), user_id)

    def test_duplicate_reference_returns_existing(self, service, audit_sink, db_session, open_session, org_id, user_id):
        first = service.record_movement(
            org_id, open_session.id, MovementType.SALE, Decimal("30"), user_id,
            reference_type="sale", reference_id="V-001"
        )
        second = service.record_movement(
            org_id, open_session.id, MovementType.SALE, Decimal("30"), user_id,
            reference_type="sale", reference_id="V-001"
        )

        assert first.created is True
        assert second.created is False
        assert second.movement.id == first.movement.id
        assert movement_count(db_session, open_session.id) == 1
        recorded = [e for e in audit_sink.events if e[0] == audit_events.MOVEMENT_RECORDED]
        assert len(recorded) == 1

    def test_reason_is_cleaned(self, service, open_session, org_id, user_id):
        result = service.record_movement(
            org_id, open_session.id, MovementType.IN, Decimal("1"), user_id,
            reason="  cambio\x00 para\x07 caja\n "
        )
        assert result.movement.reason == "cambio para caja"

    def test_clean_reason(self):
        assert clean_reason(None) is None
        assert clean_reason("  \t ") is None
        assert len(clean_reason("x" * 300)) == 200


# ===== SERVICIO: CIERRE =====

class TestCloseSession:

    def test_reference_scenario(self, service, audit_sink, org_id, user_id):
        session = service.open_session(org_id, user_id, Decimal("100000"))
        service.record_movement(org_id, session.id, MovementType.SALE, Decimal("50000"), user_id)
        service.record_movement(org_id, session.id, MovementType.OUT, Decimal("5000"), user_id)
        service.record_movement(org_id, session.id, MovementType.ADJUSTMENT, Decimal("-1000"), user_id)

        summary = service.close_session(org_id, session.id, user_id, Decimal("143500"), notes="Cierre")

        assert summary.status == "CLOSED"
        assert summary.expected_amount == Decimal("144000.00")
        assert summary.discrepancy_amount == Decimal("-500.00")
        assert summary.closing_amount == Decimal("143500.00")
        assert summary.movements_count == 3
        assert summary.total_sales == Decimal("50000.00")
        assert summary.notes == "Cierre"
        closed_event = audit_sink.events[-1]
        assert closed_event[0] == audit_events.SESSION_CLOSED
        assert closed_event[3]["discrepancy_amount"] == "-500.00"

    def test_close_at_expected_has_no_discrepancy(self, service, org_id, user_id):
        session = service.open_session(org_id, user_id, Decimal("200"))
        service.record_movement(org_id, session.id, MovementType.SALE, Decimal("75.25"), user_id)
        service.record_movement(org_id, session.id, MovementType.RETURN, Decimal("25.25"), user_id)

        summary = service.close_session(org_id, session.id, user_id, Decimal("250"))
        assert summary.discrepancy_amount == Decimal("0.00")

    def test_close_without_notes_keeps_opening_notes(self, service, org_id, user_id):
        session = service.open_session(org_id, user_id, Decimal("0"), notes="Apertura")
        summary = service.close_session(org_id, session.id, user_id, Decimal("0"))
        assert summary.notes == "Apertura"

    def test_double_close_rejected(self, service, org_id, user_id):
        session = service.open_session(org_id, user_id, Decimal("0"))
        service.close_session(org_id, session.id, user_id, Decimal("0"))

        with pytest.raises(SessionAlreadyClosed):
            service.close_session(org_id, session.id, user_id, Decimal("0"))

    def test_close_unknown_session(self, service, org_id, user_id):
        with pytest.raises(SessionNotFound):
            service.close_session(org_id, uuid4(), user_id, Decimal("0"))

    def test_negative_closing_rejected(self, service, org_id, user_id):
        session = service.open_session(org_id, user_id, Decimal("0"))
        with pytest.raises(InvalidAmount):
            service.close_session(org_id, session.id, user_id, Decimal("-0.01"))

    def test_close_current_session(self, service, org_id, user_id):
        session = service.open_session(org_id, user_id, Decimal("10"))
        summary = service.close_current_session(org_id, user_id, Decimal("10"))
        assert summary.id == session.id
        assert summary.status == "CLOSED"

    def test_close_current_without_open_session(self, service, org_id, user_id):
        with pytest.raises(SessionNotFound) as exc_info:
            service.close_current_session(org_id, user_id, Decimal("0"))
        assert exc_info.value.session_id is None

    def test_close_with_counts(self, service, org_id, user_id):
        session = service.open_session(org_id, user_id, Decimal("0"))
        service.record_movement(org_id, session.id, MovementType.SALE, Decimal("75000"), user_id)

        summary = service.close_session(
            org_id, session.id, user_id, Decimal("75000"),
            counts=[
                CashCountIn(denomination=Decimal("50000"), quantity=1),
                CashCountIn(denomination=Decimal("10000"), quantity=2),
                CashCountIn(denomination=Decimal("1000"), quantity=5),
            ]
        )

        assert summary.counted_total == Decimal("75000.00")
        assert [c.denomination for c in summary.counts] == [
            Decimal("50000.00"), Decimal("10000.00"), Decimal("1000.00")
        ]

    def test_closing_above_storable_range_rejected(self, service, db_session, org_id, user_id):
        session = service.open_session(org_id, user_id, Decimal("0"))
        with pytest.raises(InvalidAmount):
            service.close_session(org_id, session.id, user_id, Decimal("1e30"))

        db_session.expire_all()
        assert db_session.get(CashSession, session.id).status == CashSessionStatus.OPEN

    def test_count_total_above_storable_range_rejected(self, service, db_session, org_id, user_id):
        session = service.open_session(org_id, user_id, Decimal("0"))
        counts = [SimpleNamespace(denomination=Decimal("9000000000000"), quantity=2)]
        with pytest.raises(InvalidAmount):
            service.close_session(org_id, session.id, user_id, Decimal("0"), counts=counts)

        db_session.expire_all()
        assert db_session.get(CashSession, session.id).status == CashSessionStatus.OPEN

    def test_concurrent_closes_only_one_wins(self, service, org_id, user_id):
        session = service.open_session(org_id, user_id, Decimal("0"))
        session_id = session.id
        barrier = threading.Barrier(2)
        results = []
        lock = threading.Lock()

        def attempt():
            db = SessionLocal()
            try:
                svc = CashSessionService(SqlSessionStore(db), SqlMovementStore(db), NullAuditSink())
                barrier.wait()
                try:
                    svc.close_session(org_id, session_id, uuid4(), Decimal("0"))
                    outcome = "closed"
                except SessionAlreadyClosed:
                    outcome = "already_closed"
                with lock:
                    results.append(outcome)
            finally:
                db.close()

        threads = [threading.Thread(target=attempt) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(results) == ["already_closed", "closed"]


# ===== SERVICIO: ARQUEO Y DIFERENCIAS =====

class TestCountsAndDiscrepancies:

    def test_replace_counts_requires_closed_session(self, service, org_id, user_id):
        session = service.open_session(org_id, user_id, Decimal("0"))
        with pytest.raises(SessionStillOpen):
            service.replace_counts(org_id, session.id, [CashCountIn(denomination=Decimal("1000"), quantity=1)], user_id)

    def test_replace_counts(self, service, audit_sink, org_id, user_id):
        session = service.open_session(org_id, user_id, Decimal("0"))
        service.close_session(
            org_id, session.id, user_id, Decimal("0"),
            counts=[CashCountIn(denomination=Decimal("1000"), quantity=3)]
        )

        result = service.replace_counts(org_id, session.id, [
            CashCountIn(denomination=Decimal("2000"), quantity=2),
            CashCountIn(denomination=Decimal("500"), quantity=1),
        ], user_id)

        assert result.counted_total == Decimal("4500.00")
        assert len(result.counts) == 2
        assert audit_sink.events[-1][0] == audit_events.COUNTS_REPLACED

    def test_replace_counts_unknown_session(self, service, org_id, user_id):
        with pytest.raises(SessionNotFound):
            service.replace_counts(org_id, uuid4(), [], user_id)

    def test_report_discrepancy(self, service, org_id, user_id):
        session = service.open_session(org_id, user_id, Decimal("0"))
        service.close_session(org_id, session.id, user_id, Decimal("0"))

        discrepancy = service.report_discrepancy(
            org_id, session.id, "SHORTAGE", Decimal("500"), user_id, explanation="Billete faltante"
        )
        assert discrepancy.amount == Decimal("500.00")
        assert discrepancy.reported_by == user_id

    def test_report_discrepancy_negative_amount(self, service, org_id, user_id):
        session = service.open_session(org_id, user_id, Decimal("0"))
        with pytest.raises(InvalidAmount):
            service.report_discrepancy(org_id, session.id, "OVERAGE", Decimal("-1"), user_id)


# ===== STORE: ERRORES DEL DRIVER =====

class PgUniqueViolation(Exception):
    """Imita psycopg2: el nombre de la restricción viene en diag"""

    def __init__(self, constraint_name):
        super().__init__("duplicate key value violates unique constraint")
        self.diag = SimpleNamespace(constraint_name=constraint_name)


class FlakyStore:
    """Store mínimo cuyo único método lanza el error indicado"""

    def __init__(self, error):
        self.error = error
        self.rollbacks = 0
        self.db = SimpleNamespace(rollback=self._rollback)

    def _rollback(self):
        self.rollbacks += 1

    @_store_call
    def write(self):
        raise self.error


class TestStoreErrors:

    def test_data_error_is_invalid_amount(self):
        store = FlakyStore(DataError("INSERT INTO cash_sessions ...", {}, Exception("numeric field overflow")))
        with pytest.raises(InvalidAmount):
            store.write()
        assert store.rollbacks == 1

    def test_operational_error_is_store_unavailable(self):
        store = FlakyStore(OperationalError("SELECT 1", {}, Exception("server closed the connection")))
        with pytest.raises(StoreUnavailable) as exc_info:
            store.write()
        assert exc_info.value.retryable is True
        assert store.rollbacks == 1

    def test_integrity_error_propagates(self):
        store = FlakyStore(IntegrityError("INSERT", {}, Exception("NOT NULL constraint failed")))
        with pytest.raises(IntegrityError):
            store.write()

    def test_one_open_violation_by_constraint_name(self):
        own = IntegrityError("INSERT", {}, PgUniqueViolation("uq_cash_sessions_one_open"))
        other = IntegrityError("INSERT", {}, PgUniqueViolation("cash_sessions_pkey"))

        assert _is_one_open_violation(own) is True
        assert _is_one_open_violation(other) is False

    def test_one_open_violation_from_sqlite_message(self):
        own = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed: cash_sessions.tenant_id"))
        other = IntegrityError("INSERT", {}, Exception("NOT NULL constraint failed: cash_sessions.opened_by"))

        assert _is_one_open_violation(own) is True
        assert _is_one_open_violation(other) is False

    def test_other_integrity_errors_are_not_already_open(self, db_session, org_id):
        session = CashSession(
            tenant_id=org_id,
            status=CashSessionStatus.OPEN,
            opening_amount=Decimal("0"),
            opened_by=None,
            opened_at=datetime.now(timezone.utc)
        )
        with pytest.raises(IntegrityError):
            SqlSessionStore(db_session).insert_session_if_none_open(session)
        assert db_session.query(CashSession).count() == 0


# ===== AUDITORÍA =====

class FailingAuditSink(AuditSink):
    def _dispatch(self, event_type, organization_id, actor_id, payload):
        raise ConnectionError("broker caído")


class TestAudit:

    def test_audit_failure_does_not_fail_operation(self, db_session, org_id, user_id):
        svc = CashSessionService(SqlSessionStore(db_session), SqlMovementStore(db_session), FailingAuditSink())
        session = svc.open_session(org_id, user_id, Decimal("10"))
        assert session.status == CashSessionStatus.OPEN

    def test_celery_sink_swallows_dispatch_errors(self, monkeypatch, org_id, user_id):
        from app.modules.cash import tasks

        def broken_delay(*args, **kwargs):
            raise ConnectionError("redis no disponible")

        monkeypatch.setattr(tasks.record_cash_event, "delay", broken_delay)
        CeleryAuditSink().emit(audit_events.SESSION_OPENED, org_id, user_id, {"session_id": "x"})

    def test_celery_sink_dispatches_task(self, monkeypatch, org_id, user_id):
        from app.modules.cash import tasks
        calls = []
        monkeypatch.setattr(tasks.record_cash_event, "delay", lambda *args: calls.append(args))

        CeleryAuditSink().emit(audit_events.SESSION_OPENED, org_id, user_id, {"session_id": "x"})

        assert calls == [(audit_events.SESSION_OPENED, str(org_id), str(user_id), {"session_id": "x"})]


# ===== CONSULTAS =====

class TestSessionQueries:

    @pytest.fixture
    def three_sessions(self, stepped_service, org_id, user_id):
        """Dos sesiones cerradas y una abierta, en ese orden de apertura"""
        first = stepped_service.open_session(org_id, user_id, Decimal("100"))
        stepped_service.close_session(org_id, first.id, user_id, Decimal("100"))
        second = stepped_service.open_session(org_id, user_id, Decimal("200"))
        stepped_service.close_session(org_id, second.id, uuid4(), Decimal("190"))
        third = stepped_service.open_session(org_id, user_id, Decimal("300"))
        return first, second, third

    def test_list_closed_sessions(self, queries, three_sessions, org_id):
        first, second, _ = three_sessions
        result = queries.list_sessions(org_id, status="CLOSED")

        assert [s.id for s in result.sessions] == [second.id, first.id]
        assert result.pagination.total == 2
        assert result.sessions[0].discrepancy_amount == Decimal("-10.00")

    def test_status_is_case_insensitive(self, queries, three_sessions, org_id):
        assert queries.list_sessions(org_id, status="closed").pagination.total == 2

    def test_status_all_or_unknown_means_no_filter(self, queries, three_sessions, org_id):
        assert queries.list_sessions(org_id, status="all").pagination.total == 3
        assert queries.list_sessions(org_id, status="whatever").pagination.total == 3

    def test_open_session_has_no_discrepancy(self, queries, three_sessions, org_id):
        third = three_sessions[2]
        result = queries.list_sessions(org_id, status="OPEN")
        assert result.sessions[0].id == third.id
        assert result.sessions[0].discrepancy_amount is None
        assert result.sessions[0].expected_amount == Decimal("300.00")

    def test_sort_by_opening_amount_asc(self, queries, three_sessions, org_id):
        result = queries.list_sessions(org_id, sort_by="opening_amount", sort_dir="asc")
        assert [s.opening_amount for s in result.sessions] == [
            Decimal("100.00"), Decimal("200.00"), Decimal("300.00")
        ]

    def test_invalid_sort_falls_back_to_opened_at_desc(self, queries, three_sessions, org_id):
        first, second, third = three_sessions
        result = queries.list_sessions(org_id, sort_by="drop table", sort_dir="asc")
        assert [s.id for s in result.sessions] == [third.id, second.id, first.id]

    def test_pagination(self, queries, three_sessions, org_id):
        result = queries.list_sessions(org_id, page=2, limit=2)
        assert len(result.sessions) == 1
        assert result.pagination.pages == 2
        assert result.pagination.page == 2

    def test_limit_is_clamped(self, queries, three_sessions, org_id):
        assert queries.list_sessions(org_id, limit=5000).pagination.limit == 100
        assert queries.list_sessions(org_id, limit=0).pagination.limit == 1

    def test_date_range_is_inclusive(self, queries, three_sessions, org_id):
        assert queries.list_sessions(org_id, date_from=date(2024, 3, 10), date_to=date(2024, 3, 10)).pagination.total == 3
        assert queries.list_sessions(org_id, date_from=date(2024, 3, 11)).pagination.total == 0
        assert queries.list_sessions(org_id, date_to=date(2024, 3, 9)).pagination.total == 0

    def test_user_filter_matches_opener_or_closer(self, stepped_service, queries, org_id, user_id):
        closer = uuid4()
        session = stepped_service.open_session(org_id, user_id, Decimal("0"))
        stepped_service.close_session(org_id, session.id, closer, Decimal("0"))

        assert queries.list_sessions(org_id, user_id=closer).pagination.total == 1
        assert queries.list_sessions(org_id, user_id=user_id).pagination.total == 1
        assert queries.list_sessions(org_id, user_id=uuid4()).pagination.total == 0

    def test_other_organization_sees_nothing(self, queries, three_sessions):
        assert queries.list_sessions(uuid4()).pagination.total == 0

    def test_current_session(self, stepped_service, queries, org_id, user_id):
        assert queries.get_current_session(org_id) is None

        session = stepped_service.open_session(org_id, user_id, Decimal("50"))
        stepped_service.record_movement(org_id, session.id, MovementType.SALE, Decimal("25"), user_id)

        current = queries.get_current_session(org_id)
        assert current.id == session.id
        assert current.expected_amount == Decimal("75.00")
        assert current.movements_count == 1

    def test_session_detail(self, stepped_service, queries, org_id, user_id):
        session = stepped_service.open_session(org_id, user_id, Decimal("0"))
        stepped_service.record_movement(org_id, session.id, MovementType.IN, Decimal("5"), user_id)
        stepped_service.record_movement(org_id, session.id, MovementType.OUT, Decimal("2"), user_id)

        detail = queries.get_session(org_id, session.id)
        assert [m.type for m in detail.movements] == ["IN", "OUT"]
        assert detail.movements[1].signed_amount == Decimal("-2.00")

    def test_session_detail_not_found(self, queries, org_id):
        with pytest.raises(SessionNotFound):
            queries.get_session(org_id, uuid4())


class TestMovementQueries:

    @pytest.fixture
    def session_with_movements(self, stepped_service, org_id, user_id):
        session = stepped_service.open_session(org_id, user_id, Decimal("1000"))
        stepped_service.record_movement(org_id, session.id, MovementType.SALE, Decimal("300"), user_id,
                                        reason="Venta mostrador", reference_type="sale", reference_id="V-1")
        stepped_service.record_movement(org_id, session.id, MovementType.OUT, Decimal("50"), user_id,
                                        reason="Pago proveedor")
        stepped_service.record_movement(org_id, session.id, MovementType.RETURN, Decimal("20"), user_id,
                                        reason="Devolución cliente")
        stepped_service.record_movement(org_id, session.id, MovementType.ADJUSTMENT, Decimal("-5"), user_id,
                                        reason="Redondeo")
        return session

    def test_list_with_summary(self, queries, session_with_movements, org_id):
        result = queries.list_movements(org_id, MovementQuery(session_id=session_with_movements.id))

        assert result.pagination.total == 4
        assert result.summary.total_sales == Decimal("300.00")
        assert result.summary.total_out == Decimal("50.00")
        assert result.summary.total_returns == Decimal("20.00")
        assert result.summary.total_adjustments == Decimal("-5.00")
        assert result.summary.net == Decimal("225.00")
        # Por defecto: más recientes primero
        assert result.movements[0].type == "ADJUSTMENT"

    def test_summary_covers_all_pages(self, queries, session_with_movements, org_id):
        result = queries.list_movements(org_id, MovementQuery(session_id=session_with_movements.id), limit=1)
        assert len(result.movements) == 1
        assert result.pagination.pages == 4
        assert result.summary.net == Decimal("225.00")

    def test_summary_is_aggregated_without_loading_every_row(self, db_session, session_with_movements, org_id):
        calls = []

        class RecordingMovementStore(SqlMovementStore):
            def search_movements(self, organization_id, filters, order_by, offset=None, limit=None):
                calls.append((offset, limit))
                return super().search_movements(organization_id, filters, order_by, offset, limit)

        queries = CashQueryService(SqlSessionStore(db_session), RecordingMovementStore(db_session))
        result = queries.list_movements(org_id, MovementQuery(session_id=session_with_movements.id), limit=2)

        assert calls == [(0, 2)]
        assert result.summary.total_sales == Decimal("300.00")
        assert result.summary.total_adjustments == Decimal("-5.00")
        assert result.summary.net == Decimal("225.00")

    def test_summarize_movements_groups_by_type(self, db_session, session_with_movements, org_id):
        sums = SqlMovementStore(db_session).summarize_movements(
            org_id, MovementFilters(session_id=session_with_movements.id)
        )
        assert {t: to_money(v) for t, v in sums.items()} == {
            MovementType.SALE: Decimal("300.00"),
            MovementType.OUT: Decimal("50.00"),
            MovementType.RETURN: Decimal("20.00"),
            MovementType.ADJUSTMENT: Decimal("-5.00"),
        }

    def test_summary_respects_filters(self, queries, session_with_movements, org_id):
        result = queries.list_movements(org_id, MovementQuery(session_id=session_with_movements.id, type="OUT"))
        assert result.summary.total_out == Decimal("50.00")
        assert result.summary.total_sales == Decimal("0.00")
        assert result.summary.net == Decimal("-50.00")

    def test_filter_by_type(self, queries, session_with_movements, org_id):
        result = queries.list_movements(org_id, MovementQuery(type="out"))
        assert [m.type for m in result.movements] == ["OUT"]

    def test_search_in_reason(self, queries, session_with_movements, org_id):
        result = queries.list_movements(org_id, MovementQuery(search="proveedor"))
        assert [m.reason for m in result.movements] == ["Pago proveedor"]

    def test_amount_range_and_order(self, queries, session_with_movements, org_id):
        result = queries.list_movements(
            org_id, MovementQuery(amount_min=Decimal("20"), amount_max=Decimal("300")),
            order_by="amount", order_dir="asc"
        )
        assert [m.amount for m in result.movements] == [Decimal("20.00"), Decimal("50.00"), Decimal("300.00")]

    def test_filter_by_reference(self, queries, session_with_movements, org_id):
        result = queries.list_movements(org_id, MovementQuery(reference_type="sale", reference_id="V-1"))
        assert len(result.movements) == 1

    def test_limit_is_clamped(self, queries, session_with_movements, org_id):
        assert queries.list_movements(org_id, MovementQuery(), limit=1000).pagination.limit == 200

    def test_unknown_session(self, queries, org_id):
        with pytest.raises(SessionNotFound):
            queries.list_movements(org_id, MovementQuery(session_id=uuid4()))

    def test_date_to_clamped_to_closed_session(self, stepped_service, db_session, queries,
                                               session_with_movements, org_id, user_id):
        stepped_service.close_session(org_id, session_with_movements.id, user_id, Decimal("1225"))
        closed = SqlSessionStore(db_session).get_session(org_id, session_with_movements.id)

        filters = queries._movement_filters(
            org_id, MovementQuery(session_id=closed.id, date_to=date(2030, 1, 1))
        )
        assert filters.created_to == as_utc(closed.closed_at)

    def test_export_csv(self, queries, session_with_movements, org_id):
        content = queries.export_movements_csv(org_id, MovementQuery(session_id=session_with_movements.id))
        lines = content.splitlines()

        assert content.startswith("\ufeff")
        assert lines[0] == "\ufeffFecha,Tipo,Monto,Motivo,Usuario,Referencia"
        assert len(lines) == 5
        assert any(line.endswith("sale:V-1") for line in lines)


# ===== ENDPOINTS =====

class TestCashAPI:
    """Tests de integración de los endpoints /api/v1/cash"""

    def open_session(self, client, auth_headers, amount="100000"):
        response = client.post("/api/v1/cash/session/open", json={"openingAmount": amount}, headers=auth_headers())
        assert response.status_code == 201
        return response.json()

    def test_open_session(self, client, auth_headers, org_id, user_id):
        body = self.open_session(client, auth_headers)
        assert body["status"] == "OPEN"
        assert Decimal(body["openingAmount"]) == Decimal("100000")
        assert body["organizationId"] == str(org_id)
        assert body["openedBy"] == str(user_id)

    def test_open_twice_conflict(self, client, auth_headers):
        self.open_session(client, auth_headers)
        response = client.post("/api/v1/cash/session/open", json={"openingAmount": "0"}, headers=auth_headers())

        assert response.status_code == 409
        assert response.json()["code"] == "already_open"

    def test_open_negative_amount(self, client, auth_headers):
        response = client.post("/api/v1/cash/session/open", json={"openingAmount": "-1"}, headers=auth_headers())
        assert response.status_code == 422

    @pytest.mark.parametrize("amount", [1e30, "1e30", "10000000000000", "10.001"])
    def test_open_amount_out_of_range(self, client, auth_headers, amount):
        response = client.post("/api/v1/cash/session/open", json={"openingAmount": amount}, headers=auth_headers())
        assert response.status_code == 422
        assert client.get("/api/v1/cash/session/current", headers=auth_headers()).json() == {"session": None}

    def test_huge_movement_amount_rejected(self, client, auth_headers):
        session = self.open_session(client, auth_headers)
        response = client.post(
            "/api/v1/cash/movements",
            json={"sessionId": session["id"], "type": "SALE", "amount": 1e30},
            headers=auth_headers()
        )
        assert response.status_code == 422

    def test_missing_company_header(self, client, auth_headers):
        headers = auth_headers()
        del headers["X-Company-ID"]
        response = client.get("/api/v1/cash/session/current", headers=headers)
        assert response.status_code == 400

    def test_missing_token(self, client, org_id):
        response = client.get("/api/v1/cash/session/current", headers={"X-Company-ID": str(org_id)})
        assert response.status_code in (401, 403)

    def test_invalid_token(self, client, org_id):
        response = client.get(
            "/api/v1/cash/session/current",
            headers={"Authorization": "Bearer not-a-jwt", "X-Company-ID": str(org_id)}
        )
        assert response.status_code == 401

    def test_viewer_cannot_open(self, client, auth_headers):
        response = client.post("/api/v1/cash/session/open", json={"openingAmount": "0"}, headers=auth_headers("viewer"))
        assert response.status_code == 403

    def test_current_session_empty(self, client, auth_headers):
        response = client.get("/api/v1/cash/session/current", headers=auth_headers("viewer"))
        assert response.status_code == 200
        assert response.json() == {"session": None}

    def test_full_flow(self, client, auth_headers, audit_sink):
        session = self.open_session(client, auth_headers)
        session_id = session["id"]

        for payload in [
            {"sessionId": session_id, "type": "SALE", "amount": "50000"},
            {"sessionId": session_id, "type": "OUT", "amount": "5000", "reason": "Pago domicilio"},
            {"sessionId": session_id, "type": "ADJUSTMENT", "amount": "-1000"},
        ]:
            response = client.post("/api/v1/cash/movements", json=payload, headers=auth_headers())
            assert response.status_code == 201

        current = client.get("/api/v1/cash/session/current", headers=auth_headers()).json()["session"]
        assert Decimal(current["expectedAmount"]) == Decimal("144000")
        assert current["discrepancyAmount"] is None

        response = client.post("/api/v1/cash/session/close", json={"closingAmount": "143500"}, headers=auth_headers())
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "CLOSED"
        assert Decimal(body["expectedAmount"]) == Decimal("144000")
        assert Decimal(body["discrepancyAmount"]) == Decimal("-500")

        response = client.post(
            "/api/v1/cash/movements",
            json={"sessionId": session_id, "type": "SALE", "amount": "10"},
            headers=auth_headers()
        )
        assert response.status_code == 409
        assert response.json()["code"] == "session_not_open"

        event_types = [e[0] for e in audit_sink.events]
        assert event_types[0] == audit_events.SESSION_OPENED
        assert event_types[-1] == audit_events.SESSION_CLOSED

    def test_movement_replay_returns_200(self, client, auth_headers):
        session = self.open_session(client, auth_headers)
        payload = {
            "sessionId": session["id"], "type": "SALE", "amount": "1500",
            "referenceType": "sale", "referenceId": "F-0001"
        }

        first = client.post("/api/v1/cash/movements", json=payload, headers=auth_headers())
        second = client.post("/api/v1/cash/movements", json=payload, headers=auth_headers())

        assert first.status_code == 201
        assert second.status_code == 200
        assert second.json()["id"] == first.json()["id"]

    def test_zero_adjustment_rejected(self, client, auth_headers):
        session = self.open_session(client, auth_headers)
        response = client.post(
            "/api/v1/cash/movements",
            json={"sessionId": session["id"], "type": "ADJUSTMENT", "amount": "0"},
            headers=auth_headers()
        )
        assert response.status_code == 422

    def test_close_by_id_twice(self, client, auth_headers):
        session = self.open_session(client, auth_headers, amount="0")
        url = f"/api/v1/cash/sessions/{session['id']}/close"

        assert client.post(url, json={"closingAmount": "0"}, headers=auth_headers()).status_code == 200
        response = client.post(url, json={"closingAmount": "0"}, headers=auth_headers())
        assert response.status_code == 409
        assert response.json()["code"] == "session_already_closed"

    def test_close_without_open_session(self, client, auth_headers):
        response = client.post("/api/v1/cash/session/close", json={"closingAmount": "0"}, headers=auth_headers())
        assert response.status_code == 404
        assert response.json()["code"] == "session_not_found"

    def test_session_not_visible_from_other_organization(self, client, auth_headers):
        session = self.open_session(client, auth_headers)
        response = client.get(f"/api/v1/cash/sessions/{session['id']}", headers=auth_headers(organization_id=uuid4()))
        assert response.status_code == 404

    def test_list_sessions(self, client, auth_headers):
        session = self.open_session(client, auth_headers, amount="0")
        client.post("/api/v1/cash/session/close", json={"closingAmount": "0"}, headers=auth_headers())
        self.open_session(client, auth_headers, amount="0")

        response = client.get("/api/v1/cash/sessions", params={"status": "CLOSED"}, headers=auth_headers("accountant"))
        assert response.status_code == 200
        body = response.json()
        assert [s["id"] for s in body["sessions"]] == [session["id"]]
        assert body["pagination"] == {"page": 1, "limit": 20, "total": 1, "pages": 1}

    def test_counts_endpoint(self, client, auth_headers):
        session = self.open_session(client, auth_headers, amount="0")
        url = f"/api/v1/cash/sessions/{session['id']}/counts"
        counts = {"counts": [{"denomination": "1000", "quantity": 4}]}

        response = client.put(url, json=counts, headers=auth_headers())
        assert response.status_code == 409
        assert response.json()["code"] == "session_still_open"

        client.post("/api/v1/cash/session/close", json={"closingAmount": "4000"}, headers=auth_headers())
        response = client.put(url, json=counts, headers=auth_headers())
        assert response.status_code == 200
        assert Decimal(response.json()["countedTotal"]) == Decimal("4000")

    def test_discrepancy_requires_reconcile_permission(self, client, auth_headers):
        session = self.open_session(client, auth_headers, amount="0")
        payload = {"sessionId": session["id"], "type": "SHORTAGE", "amount": "500", "explanation": "Faltante"}

        assert client.post("/api/v1/cash/discrepancies", json=payload, headers=auth_headers("cashier")).status_code == 403

        response = client.post("/api/v1/cash/discrepancies", json=payload, headers=auth_headers("accountant"))
        assert response.status_code == 201
        assert response.json()["type"] == "SHORTAGE"

        detail = client.get(f"/api/v1/cash/sessions/{session['id']}", headers=auth_headers()).json()
        assert len(detail["discrepancies"]) == 1

    def test_list_and_export_movements(self, client, auth_headers):
        session = self.open_session(client, auth_headers, amount="0")
        client.post(
            "/api/v1/cash/movements",
            json={"sessionId": session["id"], "type": "IN", "amount": "250", "reason": "Fondo de cambio"},
            headers=auth_headers()
        )

        response = client.get("/api/v1/cash/movements", params={"session_id": session["id"]}, headers=auth_headers())
        assert response.status_code == 200
        body = response.json()
        assert Decimal(body["summary"]["net"]) == Decimal("250")
        assert body["movements"][0]["reason"] == "Fondo de cambio"

        response = client.get("/api/v1/cash/movements/export", params={"session_id": session["id"]}, headers=auth_headers())
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert response.content.startswith(b"\xef\xbb\xbf")
        assert "Fondo de cambio" in response.content.decode("utf-8-sig")

    def test_health_is_exempt_from_tenant_header(self, client):
        response = client.get("/health")
        assert response.status_code == 200
