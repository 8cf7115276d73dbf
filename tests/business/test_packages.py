"""PackageService tests: selling, usage, capacity, cancellation with refund."""
import pytest

from business.errors import CapacityError, NotFoundError, StateError, ValidationError


@pytest.fixture
def sell(packages, seeded):
    def _sell(**overrides):
        data = {
            "client_id": seeded.maria, "service_id": seeded.corte,
            "seller_worker_id": seeded.ana, "total_sessions": 5,
            "value_total": 250, "payment_method": "pix",
        }
        data.update(overrides)
        return packages.sell(data)

    return _sell


class TestSell:

    def test_sale_creates_package_and_revenue_entry(self, sell, temp_db):
        result = sell()
        package = result["package"]
        entry = result["ledger_entry"]

        assert package["name"] == "Corte (5 sessões)"
        assert package["status"] == "active"
        assert package["value_per_session"] == 50.0
        assert package["remaining_sessions"] == 5
        assert package["sold_on"] == "2025-11-19"
        assert package["sale_ledger_entry_id"] == entry["id"]

        assert entry["entry_type"] == "package_sale"
        assert entry["value_total"] == 250.0
        assert entry["commission_worker"] == 125.0
        assert entry["package_id"] == package["id"]
        assert entry["status"] == "completed"

    def test_sale_with_card_fee(self, sell):
        entry = sell(payment_method="cartao_credito")["ledger_entry"]
        assert entry["payment_fee_amount"] == 7.5
        assert entry["commission_worker"] == 117.5
        assert entry["commission_house"] == 125.0

    @pytest.mark.parametrize("overrides,error", [
        ({"total_sessions": 0}, ValidationError),
        ({"value_total": -1}, ValidationError),
        ({"payment_method": "credit"}, ValidationError),
        ({"valid_until": "2025-01-01"}, ValidationError),
        ({"service_id": 999}, NotFoundError),
    ])
    def test_invalid_sale(self, sell, temp_db, overrides, error):
        with pytest.raises(error):
            sell(**overrides)
        assert temp_db.get_client_packages(1) == []


class TestUsage:

    def test_usage_records_session_entry(self, sell, packages, seeded):
        package = sell()["package"]
        result = packages.record_usage({
            "package_id": package["id"], "worker_id": seeded.bruna,
            "use_date": "2025-11-20", "start": "10:00", "end": "11:00",
        })
        assert result["package"]["used_sessions"] == 1
        assert result["usage"]["use_date"] == "2025-11-20"
        assert result["usage"]["start_time"] == "10:00"
        entry = result["ledger_entry"]
        assert entry["entry_type"] == "package_session"
        assert entry["value_total"] == 50.0
        assert entry["commission_worker"] == 20.0
        assert entry["payment_fee_amount"] == 0.0
        assert entry["date"] == "2025-11-20 10:00:00"

    def test_last_session_completes_package(self, sell, packages, seeded):
        package = sell(total_sessions=2, value_total=100)["package"]
        for _ in range(2):
            packages.record_usage({"package_id": package["id"], "worker_id": seeded.ana})
        current = packages.get(package["id"])
        assert current["used_sessions"] == 2
        assert current["status"] == "completed"
        assert len(current["usages"]) == 2

        with pytest.raises(CapacityError):
            packages.record_usage({"package_id": package["id"], "worker_id": seeded.ana})
        assert packages.get(package["id"])["used_sessions"] == 2

    def test_used_never_exceeds_total(self, sell, packages, seeded):
        package = sell(total_sessions=1, value_total=50)["package"]
        packages.record_usage({"package_id": package["id"], "worker_id": seeded.ana})
        for _ in range(3):
            with pytest.raises(CapacityError):
                packages.record_usage({"package_id": package["id"], "worker_id": seeded.ana})
        current = packages.get(package["id"])
        assert 0 <= current["used_sessions"] <= current["total_sessions"]

    def test_expired_package_cannot_be_used(self, sell, packages, seeded):
        package = sell(valid_until="2025-11-19")["package"]
        with pytest.raises(StateError, match="expired"):
            packages.record_usage({
                "package_id": package["id"], "worker_id": seeded.ana,
                "use_date": "2025-11-20",
            })

    def test_cancelled_package_cannot_be_used(self, sell, packages, seeded):
        package = sell()["package"]
        packages.cancel(package["id"])
        with pytest.raises(StateError):
            packages.record_usage({"package_id": package["id"], "worker_id": seeded.ana})

    def test_invalid_time(self, sell, packages, seeded):
        package = sell()["package"]
        with pytest.raises(ValidationError):
            packages.record_usage({
                "package_id": package["id"], "worker_id": seeded.ana, "start": "99:00",
            })


class TestCancel:

    def test_refund_up_to_remaining_value(self, sell, packages, seeded, temp_db):
        package = sell()["package"]
        for _ in range(2):
            packages.record_usage({"package_id": package["id"], "worker_id": seeded.ana})

        result = packages.cancel(package["id"], {
            "refund_value": 150, "reason": "mudou de cidade",
        })
        assert result["package"]["status"] == "cancelled"
        assert result["package"]["refund_value"] == 150.0
        assert result["package"]["cancel_reason"] == "mudou de cidade"

        refund = result["refund_entry"]
        assert refund["entry_type"] == "package_refund"
        assert refund["value_total"] == -150.0
        assert refund["commission_worker"] == -75.0
        assert refund["commission_house"] == -75.0
        assert refund["payment_fee_amount"] == 0.0
        assert refund["payment_method"] == "pix"
        assert result["package"]["refund_ledger_entry_id"] == refund["id"]

        # the sale entry is untouched
        sale = temp_db.get_ledger_entry(package["sale_ledger_entry_id"])
        assert sale["value_total"] == 250.0

    def test_refund_above_ceiling_is_rejected(self, sell, packages, seeded):
        package = sell()["package"]
        packages.record_usage({"package_id": package["id"], "worker_id": seeded.ana})
        with pytest.raises(CapacityError):
            packages.cancel(package["id"], {"refund_value": "200.01"})
        assert packages.get(package["id"])["status"] == "active"

    def test_cancel_without_refund_creates_no_entry(self, sell, packages):
        package = sell()["package"]
        result = packages.cancel(package["id"])
        assert result["refund_entry"] is None
        assert result["package"]["refund_value"] == 0.0

    def test_completed_package_cannot_be_cancelled(self, sell, packages, seeded):
        package = sell(total_sessions=1, value_total=50)["package"]
        packages.record_usage({"package_id": package["id"], "worker_id": seeded.ana})
        with pytest.raises(StateError):
            packages.cancel(package["id"])

    def test_expired_package_can_still_be_cancelled(self, sell, packages, temp_db, clock):
        from business.lifecycle import LifecycleService

        package = sell(sold_on="2025-10-01", valid_until="2025-11-01")["package"]
        LifecycleService(temp_db, clock).run_scan()
        result = packages.cancel(package["id"], {"refund_value": 250})
        assert result["package"]["status"] == "cancelled"
        assert result["refund_entry"]["value_total"] == -250.0

    def test_client_package_listing(self, sell, packages, seeded, temp_db):
        first = sell()["package"]
        sell()
        packages.cancel(first["id"])
        assert len(temp_db.get_client_packages(seeded.maria)) == 2
        assert len(temp_db.get_client_packages(seeded.maria, active_only=True)) == 1
