"""提成发放服务：把一段时间内尚未发放的员工提成登记为一次发放。

- 发放金额只来自已持久化的流水与分账，不重新计算提成；
- 同一员工的同一条流水只能发放一次，重复发放抛出 StateError；
- 未指定流水时，发放该员工在周期内所有未发放的提成。
"""
from typing import Any, Dict, List, Optional

from loguru import logger

from database.manager import commission_payment_to_dict
from database.models import CommissionPayment

from .clock import Clock, SystemClock, parse_date
from .errors import StateError, ValidationError
from .reporting import commission_lines
from .settlement import ZERO
from .validation import int_list, require, to_int

DEFAULT_PAYOUT_METHOD = "pix"


class CommissionService:
    """提成发放服务。

    Args:
        db: DatabaseManager。
        clock: 时钟（默认系统时钟）。
    """

    def __init__(self, db, clock: Optional[Clock] = None) -> None:
        self.db = db
        self.clock = clock or SystemClock()

    def pay(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """登记一次提成发放。

        Args:
            data: 支持以下键：
                - worker_id: 员工ID（必填）
                - start / end: 结算周期 ``YYYY-MM-DD``（必填，含两端）
                - ledger_entry_ids: 要发放的流水ID列表（可选，默认全部未发放）
                - payment_method: 发放方式（可选，默认 pix）
                - notes: 备注（可选）

        Returns:
            发放记录字典（gross / deductions / net 与覆盖的流水ID）。

        Raises:
            StateError: 有流水已经发放过。
            ValidationError: 周期不合法、流水不属于该员工该周期，或没有可发放的提成。
        """
        worker_id = to_int(require(data, "worker_id"), "worker_id")
        start = parse_date(require(data, "start"), "start")
        end = parse_date(require(data, "end"), "end")
        if end < start:
            raise ValidationError("end must not be before start")
        requested: Optional[List[int]] = None
        if data.get("ledger_entry_ids") is not None:
            requested = int_list(data["ledger_entry_ids"], "ledger_entry_ids")
            if not requested:
                raise ValidationError("ledger_entry_ids must not be empty")

        with self.db.unit_of_work() as session:
            self.db.workers.require(worker_id, session=session)
            method = self.db.payment_methods.require_payable(
                data.get("payment_method") or DEFAULT_PAYOUT_METHOD, session=session
            )
            lines = commission_lines(self.db, start, end, session, worker_id=worker_id)
            paid = self.db.commission_payments.paid_entry_ids(
                worker_id, session=session
            ).get(worker_id, set())

            if requested is not None:
                conflicts = sorted(set(requested) & paid)
                if conflicts:
                    raise StateError(
                        f"Ledger entries already paid out: {', '.join(map(str, conflicts))}"
                    )
                available = {line["ledger_entry_id"] for line in lines}
                unknown = sorted(set(requested) - available)
                if unknown:
                    raise ValidationError(
                        f"Ledger entries {', '.join(map(str, unknown))} carry no commission "
                        f"for worker {worker_id} between {start} and {end}"
                    )
                selected = [line for line in lines if line["ledger_entry_id"] in set(requested)]
            else:
                selected = [line for line in lines if line["ledger_entry_id"] not in paid]
            if not selected:
                raise ValidationError(
                    f"No unpaid commissions for worker {worker_id} between {start} and {end}"
                )

            deductions = sum((line["fees"] for line in selected), ZERO)
            net = sum((line["commission"] for line in selected), ZERO)
            payment = CommissionPayment(
                worker_id=worker_id,
                period_start=start,
                period_end=end,
                gross=net + deductions,
                deductions=deductions,
                net=net,
                payment_method=method.code,
                ledger_entry_ids=sorted({line["ledger_entry_id"] for line in selected}),
                notes=data.get("notes"),
                paid_at=self.clock.now(),
            )
            session.add(payment)
            session.flush()

            result = commission_payment_to_dict(payment)
            self.db.audit.record(
                "commission_payment", payment.id, "create",
                before=None, after=result, session=session,
            )

        logger.info(
            f"Commission payout {result['id']} for worker {worker_id}: "
            f"net {result['net']} over {len(result['ledger_entry_ids'])} entries"
        )
        return result

    def history(self, worker_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """最近的发放记录（新的在前）。"""
        if worker_id is not None:
            self.db.workers.require(worker_id)
        return self.db.get_commission_payouts(worker_id)
