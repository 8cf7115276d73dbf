"""Repository and DatabaseManager tests.

Covers:
- reference data get_or_create / lookups (workers, clients, catalog, payment methods)
- BaseCRUD helpers (get_required, get_all, update_by_id, delete_by_id)
- unit_of_work commit / rollback semantics
- ledger split replacement
- audit events and manager convenience methods
"""
from datetime import date, datetime
from decimal import Decimal

import pytest

from business.errors import NotFoundError, PersistenceError, ValidationError
from database.models import Appointment, AuditEvent, LedgerEntry, Worker


class TestManagerProperties:
    """Test DatabaseManager property accessors."""

    def test_database_url_property(self, temp_db):
        assert temp_db.database_url.startswith("sqlite:///")

    def test_engine_property(self, temp_db):
        assert temp_db.engine is not None

    def test_sub_repositories_accessible(self, temp_db):
        assert temp_db.workers is not None
        assert temp_db.clients is not None
        assert temp_db.services is not None
        assert temp_db.payment_methods is not None
        assert temp_db.appointments is not None
        assert temp_db.ledger is not None
        assert temp_db.credit_payments is not None
        assert temp_db.packages is not None
        assert temp_db.commission_payments is not None
        assert temp_db.audit is not None

    def test_create_tables_is_idempotent(self, temp_db):
        temp_db.create_tables()
        temp_db.create_tables()
        assert temp_db.get_worker_list() == []

    def test_execute_raw_sql_returns_rows(self, temp_db):
        temp_db.workers.get_or_create("Ana", 50)
        rows = temp_db.execute_raw_sql("SELECT name FROM workers")
        assert [r[0] for r in rows] == ["Ana"]

    def test_ping(self, temp_db):
        assert temp_db.ping() is True


class TestWorkerRepository:

    def test_get_or_create_is_idempotent(self, temp_db):
        first = temp_db.workers.get_or_create("Ana", 50)
        second = temp_db.workers.get_or_create("Ana", 30)
        assert first.id == second.id
        assert Decimal(str(second.commission_percentage)) == Decimal("50")

    def test_commission_percentage_may_be_empty(self, temp_db):
        worker = temp_db.workers.get_or_create("Carla")
        assert worker.commission_percentage is None

    def test_require_missing_worker(self, temp_db):
        with pytest.raises(NotFoundError, match="Worker 99 not found"):
            temp_db.workers.require(99)

    def test_not_found_is_a_validation_error(self, temp_db):
        with pytest.raises(ValidationError):
            temp_db.workers.require(99)

    def test_deactivate_hides_worker_from_active_list(self, temp_db):
        ana = temp_db.workers.get_or_create("Ana", 50)
        temp_db.workers.get_or_create("Bruna", 40)
        temp_db.workers.deactivate(ana.id)
        assert [w["name"] for w in temp_db.get_worker_list()] == ["Bruna"]
        assert len(temp_db.get_worker_list(active_only=False)) == 2


class TestClientRepository:

    def test_get_or_create_and_search(self, temp_db):
        maria = temp_db.clients.get_or_create("Maria", "11999990000")
        temp_db.clients.get_or_create("Mariana")
        temp_db.clients.get_or_create("Joana")
        again = temp_db.clients.get_or_create("Maria")
        assert again.id == maria.id
        assert again.phone == "11999990000"
        assert sorted(c.name for c in temp_db.clients.search("Mari")) == ["Maria", "Mariana"]


class TestServiceCatalogRepository:

    def test_get_many_preserves_requested_order(self, seeded, temp_db):
        items = temp_db.services.get_many([seeded.escova, seeded.corte])
        assert [i.name for i in items] == ["Escova", "Corte"]

    def test_get_many_rejects_unknown_ids(self, seeded, temp_db):
        with pytest.raises(NotFoundError):
            temp_db.services.get_many([seeded.corte, 999])


class TestPaymentMethodRepository:

    def test_fee_percentage_lookup(self, seeded, temp_db):
        assert temp_db.payment_methods.fee_percentage("cartao_credito") == Decimal("3.00")
        assert temp_db.payment_methods.fee_percentage("pix") == Decimal("0.00")

    def test_reserved_codes_never_carry_a_fee(self, temp_db):
        method = temp_db.payment_methods.get_or_create("credit", "Fiado", 5)
        assert Decimal(str(method.fee_percentage)) == Decimal("0")
        assert temp_db.payment_methods.fee_percentage("credit") == Decimal("0")
        assert temp_db.payment_methods.fee_percentage(None) == Decimal("0")

    def test_require_payable(self, seeded, temp_db):
        assert temp_db.payment_methods.require_payable("pix").code == "pix"
        with pytest.raises(ValidationError, match="required"):
            temp_db.payment_methods.require_payable(None)
        with pytest.raises(ValidationError, match="reserved"):
            temp_db.payment_methods.require_payable("promotional")
        with pytest.raises(ValidationError, match="Unknown"):
            temp_db.payment_methods.require_payable("cheque")


class TestUnitOfWork:

    def test_commits_once_on_success(self, temp_db):
        with temp_db.unit_of_work() as session:
            temp_db.workers.create(Worker, session=session, name="Ana")
            temp_db.workers.create(Worker, session=session, name="Bruna")
        assert len(temp_db.workers.get_all(Worker)) == 2

    def test_business_error_rolls_back_everything(self, temp_db):
        with pytest.raises(ValidationError):
            with temp_db.unit_of_work() as session:
                temp_db.workers.create(Worker, session=session, name="Ana")
                raise ValidationError("boom")
        assert temp_db.workers.get_all(Worker) == []

    def test_storage_error_becomes_persistence_error(self, temp_db):
        with pytest.raises(PersistenceError):
            with temp_db.unit_of_work() as session:
                temp_db.workers.create(Worker, session=session, name="Ana")
                # name is NOT NULL
                temp_db.workers.create(Worker, session=session, name=None)
        assert temp_db.workers.get_all(Worker) == []


class TestBaseCrudHelpers:

    def test_update_and_delete_by_id(self, temp_db):
        worker = temp_db.workers.get_or_create("Ana", 50)
        updated = temp_db.workers.update_by_id(Worker, worker.id, name="Ana Paula")
        assert updated.name == "Ana Paula"
        assert temp_db.workers.update_by_id(Worker, 999, name="x") is None
        assert temp_db.workers.delete_by_id(Worker, worker.id) is True
        assert temp_db.workers.get_by_id(Worker, worker.id) is None

    def test_get_all_with_filters_and_limit(self, temp_db):
        for name in ["Ana", "Bruna", "Carla"]:
            temp_db.workers.get_or_create(name)
        assert len(temp_db.workers.get_all(Worker, limit=2)) == 2
        only = temp_db.workers.get_all(Worker, filters={"name": "Carla"})
        assert [w.name for w in only] == ["Carla"]


class TestLedgerSplits:

    def _entry(self, temp_db, session, worker_id):
        entry = LedgerEntry(
            worker_id=worker_id, date=datetime(2025, 11, 19, 9, 0),
            value_total=100, status="completed",
        )
        session.add(entry)
        session.flush()
        return entry

    def test_replace_splits_marks_entry_shared(self, seeded, temp_db):
        with temp_db.unit_of_work() as session:
            entry = self._entry(temp_db, session, seeded.ana)
            temp_db.ledger.replace_splits(entry, [
                {"worker_id": seeded.ana, "share_value": 60},
                {"worker_id": seeded.bruna, "share_value": 40},
            ], session=session)
            entry_id = entry.id

        with temp_db.get_session() as session:
            entry = temp_db.ledger.require(entry_id, session=session)
            assert entry.is_shared is True
            assert sorted(s.worker_id for s in entry.splits) == [seeded.ana, seeded.bruna]

    def test_replacing_with_empty_list_clears_splits(self, seeded, temp_db):
        with temp_db.unit_of_work() as session:
            entry = self._entry(temp_db, session, seeded.ana)
            temp_db.ledger.replace_splits(entry, [
                {"worker_id": seeded.ana, "share_value": 50},
                {"worker_id": seeded.bruna, "share_value": 50},
            ], session=session)
            temp_db.ledger.replace_splits(entry, [], session=session)
            entry_id = entry.id

        with temp_db.get_session() as session:
            entry = temp_db.ledger.require(entry_id, session=session)
            assert entry.splits == []
            assert entry.is_shared is False


class TestAppointmentQueries:

    def test_get_by_day_and_due(self, seeded, temp_db):
        with temp_db.unit_of_work() as session:
            for hour, status in [(9, "pending"), (11, "pending"), (13, "cancelled")]:
                session.add(Appointment(
                    worker_id=seeded.ana, client_id=seeded.maria,
                    start_time=datetime(2025, 11, 19, hour, 0),
                    duration_minutes=60, status=status,
                ))
            session.add(Appointment(
                worker_id=seeded.ana, client_id=seeded.maria,
                start_time=datetime(2025, 11, 20, 9, 0),
                duration_minutes=60, status="pending",
            ))

        day = date(2025, 11, 19)
        assert len(temp_db.appointments.get_by_day(day)) == 3
        assert len(temp_db.appointments.get_by_day(day, include_cancelled=False)) == 2
        due = temp_db.appointments.get_due(datetime(2025, 11, 19, 11, 0))
        assert [a.start_time.hour for a in due] == [9, 11]

        rows = temp_db.get_daily_appointments("2025-11-19")
        assert rows[0]["end_time"] == "10:00"
        assert rows[0]["start_time"] == "2025-11-19 09:00:00"


class TestCreditAndPackageQueries:

    def test_credit_payment_by_entry(self, book, billing, temp_db):
        appt = book()
        entry = billing.finalize_appointment(appt["id"], {
            "disposition": "credit", "value_total": 80,
        })["ledger_entry"]
        assert temp_db.credit_payments.get_by_entry(entry["id"]) is None

        billing.record_credit_payment(entry["id"], {
            "value_paid": 80, "payment_method": "pix", "payment_date": "2025-11-21",
        })
        payment = temp_db.credit_payments.get_by_entry(entry["id"])
        assert payment.value_paid == Decimal("80.00")
        assert payment.payment_date == date(2025, 11, 21)

    def test_usages_in_insertion_order(self, packages, seeded, temp_db):
        package = packages.sell({
            "client_id": seeded.maria, "service_id": seeded.corte,
            "seller_worker_id": seeded.ana, "total_sessions": 3,
            "value_total": 150, "payment_method": "pix",
        })["package"]
        for start in ("09:00", "14:00"):
            packages.record_usage({
                "package_id": package["id"], "worker_id": seeded.bruna, "start": start,
            })
        usages = temp_db.packages.get_usages(package["id"])
        assert [u.start_time for u in usages] == ["09:00", "14:00"]
        assert temp_db.packages.get_usages(999) == []


class TestAuditRepository:

    def test_record_serializes_snapshots(self, temp_db):
        temp_db.audit.record(
            "appointment", 1, "update",
            before={"start_time": datetime(2025, 11, 19, 9, 0), "value": Decimal("10.50")},
            after={"day": date(2025, 11, 20)},
        )
        trail = temp_db.get_audit_trail("appointment", 1)
        assert len(trail) == 1
        assert trail[0]["action"] == "update"
        assert trail[0]["before"] == {"start_time": "2025-11-19 09:00:00", "value": 10.5}
        assert trail[0]["after"] == {"day": "2025-11-20"}

    def test_get_recent_is_newest_first(self, temp_db):
        for i in range(3):
            temp_db.audit.record("package", i, "create")
        recent = temp_db.audit.get_recent(limit=2)
        assert len(recent) == 2
        assert all(isinstance(e, AuditEvent) for e in recent)
        assert recent[0].id > recent[1].id
