"""报表读模型：只汇总已持久化的金额，从不重新计算提成。

收入确认规则：

- 普通流水（service / package_sale / package_refund）按服务日期计入；
- 赊账流水按还款记录的 payment_date 计入；
- 赠送、未还清的赊账、套餐使用（package_session）不计入收入，
  套餐收入在售卖时已经确认。

员工提成另外包含套餐使用产生的提成；共享服务按分账明细归属；
是否已发放按 (员工, 流水) 判断，见 CommissionService。
"""
from collections import defaultdict
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .clock import parse_date
from .errors import ValidationError
from .settlement import ZERO, to_decimal

REVENUE_ENTRY_TYPES = frozenset({"service", "package_sale", "package_refund"})


def _dec(value) -> Decimal:
    return to_decimal(value) if value is not None else ZERO


def counts_as_revenue(entry) -> bool:
    """按服务日期计入收入的流水。"""
    return (
        entry.status == "completed"
        and not entry.is_credit
        and not entry.is_promotional
        and entry.entry_type in REVENUE_ENTRY_TYPES
    )


def commission_lines(db, start_date: date, end_date: date, session,
                     worker_id: Optional[int] = None) -> List[Dict[str, Any]]:
    """提成明细：每位员工在每条流水上一行。

    共享服务按分账拆开；赊账按还款记录计入，日期为还款日。
    ``commission`` 为净提成，``fees`` 为员工承担的手续费。
    """
    lines = []

    def add(owner_id, entry_id, commission, fees):
        if worker_id is None or owner_id == worker_id:
            lines.append({
                "worker_id": owner_id,
                "ledger_entry_id": entry_id,
                "commission": _dec(commission),
                "fees": _dec(fees),
            })

    for entry in db.ledger.get_by_date_range(start_date, end_date, session=session):
        if entry.status != "completed" or entry.is_credit or entry.is_promotional:
            continue
        if entry.splits:
            for split in entry.splits:
                add(split.worker_id, entry.id, split.commission_worker, split.fee_amount)
            continue
        add(entry.worker_id, entry.id, entry.commission_worker, entry.payment_fee_amount)

    for payment in db.credit_payments.get_by_date_range(start_date, end_date, session=session):
        add(payment.ledger_entry.worker_id, payment.ledger_entry_id,
            payment.commission_worker, payment.fee_amount)
    return lines


class ReportingService:
    """报表服务。

    Args:
        db: DatabaseManager。
    """

    def __init__(self, db) -> None:
        self.db = db

    def revenue_by_day(self, start: Any, end: Any) -> List[Dict[str, Any]]:
        """每日收入汇总（含两端日期，没有收入的日期也返回一行 0）。"""
        start_date, end_date = self._range(start, end)
        days: Dict[date, Dict[str, Decimal]] = {}
        day = start_date
        while day <= end_date:
            days[day] = defaultdict(lambda: ZERO)
            day += timedelta(days=1)

        with self.db.get_session() as session:
            for entry in self.db.ledger.get_by_date_range(
                start_date, end_date, session=session
            ):
                if not counts_as_revenue(entry):
                    continue
                row = days[entry.date.date()]
                row["revenue"] += _dec(entry.value_total)
                row["fees"] += _dec(entry.payment_fee_amount)
                row["commission_worker"] += _dec(entry.commission_worker)
                row["commission_house"] += _dec(entry.commission_house)
                row["count"] += 1

            for payment in self.db.credit_payments.get_by_date_range(
                start_date, end_date, session=session
            ):
                row = days[payment.payment_date]
                row["revenue"] += _dec(payment.value_paid)
                row["fees"] += _dec(payment.fee_amount)
                row["commission_worker"] += _dec(payment.commission_worker)
                row["commission_house"] += _dec(payment.commission_house)
                row["count"] += 1

        return [
            {
                "date": d.isoformat(),
                "revenue": float(row["revenue"]),
                "fees": float(row["fees"]),
                "commission_worker": float(row["commission_worker"]),
                "commission_house": float(row["commission_house"]),
                "count": int(row["count"]),
            }
            for d, row in days.items()
        ]

    def total_revenue(self, start: Any, end: Any) -> float:
        return round(sum(r["revenue"] for r in self.revenue_by_day(start, end)), 2)

    def commissions_by_worker(self, start: Any, end: Any) -> List[Dict[str, Any]]:
        """按员工汇总提成。

        共享服务的提成按分账明细归属到每位员工；
        赊账提成在还款日期计入。``gross`` 为扣除手续费前的提成，
        ``commission`` 为净提成，并按是否已发放拆成 ``paid`` / ``unpaid``。
        """
        start_date, end_date = self._range(start, end)
        totals: Dict[int, Dict[str, Decimal]] = defaultdict(lambda: defaultdict(lambda: ZERO))

        with self.db.get_session() as session:
            paid_ids = self.db.commission_payments.paid_entry_ids(session=session)
            for line in commission_lines(self.db, start_date, end_date, session):
                row = totals[line["worker_id"]]
                row["commission"] += line["commission"]
                row["fees"] += line["fees"]
                row["services"] += 1
                if line["ledger_entry_id"] in paid_ids.get(line["worker_id"], ()):
                    row["paid"] += line["commission"]
                else:
                    row["unpaid"] += line["commission"]

            names = {w.id: w.name for w in self.db.workers.get_active(session=session)}
            for worker_id in totals:
                if worker_id not in names:
                    names[worker_id] = self.db.workers.require(worker_id, session=session).name

        return [
            {
                "worker_id": worker_id,
                "worker_name": names.get(worker_id),
                "gross": float(row["commission"] + row["fees"]),
                "fees": float(row["fees"]),
                "commission": float(row["commission"]),
                "paid": float(row["paid"]),
                "unpaid": float(row["unpaid"]),
                "services": int(row["services"]),
            }
            for worker_id, row in sorted(totals.items())
        ]

    @staticmethod
    def _range(start: Any, end: Any):
        start_date = parse_date(start, "start")
        end_date = parse_date(end, "end")
        if end_date < start_date:
            raise ValidationError("end must not be before start")
        return start_date, end_date
