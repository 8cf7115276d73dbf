"""CommissionService tests: payouts, double-payment protection, paid/unpaid report."""
import pytest

from business.commissions import CommissionService
from business.errors import NotFoundError, StateError, ValidationError
from business.reporting import ReportingService


@pytest.fixture
def commissions(temp_db, clock):
    return CommissionService(temp_db, clock)


@pytest.fixture
def settled(book, billing, seeded):
    """Ana: card 100 (47 net, 3 fee); shared pix 200 split Bruna 120 / Ana 80."""
    card = book("2025-11-19 09:00:00")
    card_entry = billing.finalize_appointment(card["id"], {
        "disposition": "payment", "value_total": 100, "payment_method": "cartao_credito",
    })["ledger_entry"]
    shared = book("2025-11-19 12:00:00", worker=seeded.bruna)
    shared_entry = billing.finalize_appointment(shared["id"], {
        "disposition": "payment", "value_total": 200, "payment_method": "pix",
        "shares": [
            {"worker_id": seeded.bruna, "share_value": 120},
            {"worker_id": seeded.ana, "share_value": 80},
        ],
    })["ledger_entry"]
    return {"card": card_entry["id"], "shared": shared_entry["id"]}


def payout(seeded, **overrides):
    data = {"worker_id": seeded.ana, "start": "2025-11-19", "end": "2025-11-19"}
    data.update(overrides)
    return data


class TestPay:

    def test_pays_all_unpaid_commissions(self, settled, commissions, seeded):
        result = commissions.pay(payout(seeded))
        assert result["worker_id"] == seeded.ana
        assert result["gross"] == 90.0
        assert result["deductions"] == 3.0
        assert result["net"] == 87.0
        assert result["ledger_entry_ids"] == sorted([settled["card"], settled["shared"]])
        assert result["payment_method"] == "pix"
        assert result["period_start"] == "2025-11-19"
        assert result["paid_at"] == "2025-11-19 08:00:00"

    def test_selected_entries_only(self, settled, commissions, seeded):
        result = commissions.pay(payout(
            seeded, ledger_entry_ids=[settled["card"]], payment_method="dinheiro",
            notes="semana 47",
        ))
        assert result["net"] == 47.0
        assert result["ledger_entry_ids"] == [settled["card"]]
        assert result["payment_method"] == "dinheiro"
        assert result["notes"] == "semana 47"

        rest = commissions.pay(payout(seeded))
        assert rest["ledger_entry_ids"] == [settled["shared"]]
        assert rest["net"] == 40.0

    def test_entry_cannot_be_paid_twice(self, settled, commissions, seeded):
        commissions.pay(payout(seeded))
        with pytest.raises(StateError, match="already paid out"):
            commissions.pay(payout(seeded, ledger_entry_ids=[settled["card"]]))
        with pytest.raises(ValidationError, match="No unpaid"):
            commissions.pay(payout(seeded))

    def test_shared_entry_is_paid_per_worker(self, settled, commissions, seeded):
        commissions.pay(payout(seeded))
        bruna = commissions.pay(payout(
            seeded, worker_id=seeded.bruna, ledger_entry_ids=[settled["shared"]],
        ))
        assert bruna["net"] == 48.0

    def test_entry_of_another_worker_is_rejected(self, settled, commissions, seeded):
        with pytest.raises(ValidationError, match="carry no commission"):
            commissions.pay(payout(
                seeded, worker_id=seeded.bruna, ledger_entry_ids=[settled["card"]],
            ))

    def test_credit_commission_is_paid_in_payment_period(self, book, billing, commissions, seeded):
        appt = book("2025-11-19 10:00:00")
        credit = billing.finalize_appointment(appt["id"], {
            "disposition": "credit", "value_total": 80,
        })["ledger_entry"]
        with pytest.raises(ValidationError, match="No unpaid"):
            commissions.pay(payout(seeded))

        billing.record_credit_payment(credit["id"], {
            "value_paid": 80, "payment_method": "pix", "payment_date": "2025-11-21",
        })
        result = commissions.pay(payout(seeded, start="2025-11-20", end="2025-11-21"))
        assert result["ledger_entry_ids"] == [credit["id"]]
        assert result["net"] == 40.0

    @pytest.mark.parametrize("overrides", [
        {"end": "2025-11-18"},
        {"start": None},
        {"ledger_entry_ids": []},
        {"ledger_entry_ids": "1,2"},
        {"payment_method": "credit"},
    ])
    def test_invalid_requests(self, settled, commissions, seeded, temp_db, overrides):
        with pytest.raises(ValidationError):
            commissions.pay(payout(seeded, **overrides))
        assert temp_db.get_commission_payouts() == []

    def test_unknown_worker(self, commissions):
        with pytest.raises(NotFoundError):
            commissions.pay({"worker_id": 999, "start": "2025-11-19", "end": "2025-11-19"})


class TestHistoryAndReport:

    def test_history_newest_first(self, settled, commissions, seeded, clock):
        first = commissions.pay(payout(seeded, ledger_entry_ids=[settled["card"]]))
        clock.advance(minutes=30)
        second = commissions.pay(payout(seeded))
        assert [p["id"] for p in commissions.history()] == [second["id"], first["id"]]
        assert commissions.history(seeded.bruna) == []
        with pytest.raises(NotFoundError):
            commissions.history(999)

    def test_payout_is_audited(self, settled, commissions, seeded, temp_db):
        result = commissions.pay(payout(seeded))
        trail = temp_db.get_audit_trail("commission_payment", result["id"])
        assert [e["action"] for e in trail] == ["create"]
        assert trail[0]["after"]["net"] == 87.0

    def test_report_splits_paid_and_unpaid(self, settled, commissions, seeded, temp_db):
        commissions.pay(payout(seeded, ledger_entry_ids=[settled["card"]]))
        rows = {
            r["worker_name"]: r
            for r in ReportingService(temp_db).commissions_by_worker("2025-11-19", "2025-11-19")
        }
        assert rows["Ana"]["paid"] == 47.0
        assert rows["Ana"]["unpaid"] == 40.0
        assert rows["Ana"]["commission"] == 87.0
        assert rows["Ana"]["gross"] == 90.0
        assert rows["Bruna"]["paid"] == 0.0
        assert rows["Bruna"]["unpaid"] == 48.0
