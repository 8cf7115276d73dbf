"""结算服务：把完成的预约（或独立收款）写成财务流水。

结算方式（disposition）：

- ``payment``：当场付款，按支付方式手续费率扣费；可多人分账。
- ``credit``：赊账，手续费为 0、状态 pending，不计入收入，
  直到登记还款（record_credit_payment）后按实际支付方式重新计算。
- ``promotional``：赠送/置换，所有金额为 0，保留参考价值。
- ``package``：消耗预付套餐一次，金额为套餐的每次价值。

流水写入与预约状态更新在同一个工作单元内完成。
"""
from datetime import datetime, time
from decimal import Decimal
from typing import Any, Dict, List, Optional

from loguru import logger

from database.manager import appointment_to_dict, credit_payment_to_dict, ledger_entry_to_dict
from database.models import CreditPayment, LedgerEntry

from .clock import Clock, SystemClock, add_minutes, format_hhmm, parse_date, parse_local_datetime
from .errors import StateError, ValidationError
from .lifecycle import AppointmentStatus, LedgerStatus, ensure_transition
from .packages import PackageService
from .settlement import (
    CREDIT_METHOD, PROMOTIONAL_METHOD, ZERO, Disposition, ShareInput,
    round_money, settle_promotional, settle_shared, settle_single, to_decimal
)
from .validation import optional_int, require, to_int


class BillingService:
    """结算服务。

    Args:
        db: DatabaseManager。
        clock: 时钟（默认系统时钟）。
        packages: 套餐服务（默认使用同一个 db 与时钟新建）。
    """

    def __init__(self, db, clock: Optional[Clock] = None,
                 packages: Optional[PackageService] = None) -> None:
        self.db = db
        self.clock = clock or SystemClock()
        self.packages = packages or PackageService(db, self.clock)

    # ================================================================
    # 结算预约
    # ================================================================

    def finalize_appointment(self, appointment_id: int,
                             data: Dict[str, Any]) -> Dict[str, Any]:
        """结算预约：写入流水并把预约标记为 completed。

        预约已有关联流水时在原流水上更新（重试安全），否则新建。

        Args:
            appointment_id: 预约ID。
            data: 支持以下键：
                - disposition: payment / credit / promotional / package（必填）
                - value_total: 实收金额（payment/credit 必填，>= 0）
                - payment_method: 支付方式代码（payment 必填）
                - shares: 分账列表 ``[{"worker_id", "share_value"}]``（可选，仅 payment）
                - reference_value: 赠送参考价值（可选，默认预约预估金额）
                - package_id: 套餐ID（package 必填）
                - notes: 备注（可选）

        Returns:
            ``{"appointment": {...}, "ledger_entry": {...}}``。

        Raises:
            StateError: 预约已是终态，或未提供结算方式。
            ValidationError: 金额、支付方式或分账不合法。
            CapacityError: 套餐次数已用完。
        """
        disposition = self._disposition(data)

        with self.db.unit_of_work() as session:
            appointment = self.db.appointments.require(appointment_id, session=session)
            ensure_transition(appointment.status, AppointmentStatus.COMPLETED)
            before_status = appointment.status

            entry = None
            if appointment.ledger_entry_id is not None:
                entry = self.db.ledger.get_by_id(
                    LedgerEntry, appointment.ledger_entry_id, session=session
                )
            end_time = format_hhmm(
                add_minutes(appointment.start_time, appointment.duration_minutes)
            )

            if disposition is Disposition.PACKAGE:
                package_id = to_int(require(data, "package_id"), "package_id")
                package = self.db.packages.require(package_id, session=session)
                if package.client_id != appointment.client_id:
                    raise ValidationError(
                        f"Package {package_id} belongs to another client"
                    )
                worker = self.db.workers.require(appointment.worker_id, session=session)
                entry, _ = self.packages.consume(
                    session, package, worker,
                    when=appointment.start_time,
                    start=format_hhmm(appointment.start_time),
                    end=end_time,
                    notes=data.get("notes"),
                    entry=entry,
                    service_names=appointment.service_description,
                )
            else:
                entry = self._settle_entry(
                    session, disposition, data,
                    entry=entry,
                    worker_id=appointment.worker_id,
                    client_id=appointment.client_id,
                    when=appointment.start_time,
                    end_time=end_time,
                    service_names=appointment.service_description,
                    default_reference=appointment.estimated_value,
                )

            appointment.status = AppointmentStatus.COMPLETED.value
            appointment.ledger_entry_id = entry.id
            session.flush()

            self.db.audit.record(
                "appointment", appointment.id, "transition",
                before={"status": before_status},
                after={"status": appointment.status, "ledger_entry_id": entry.id},
                session=session,
            )
            result = {
                "appointment": appointment_to_dict(appointment),
                "ledger_entry": ledger_entry_to_dict(entry),
            }

        logger.info(
            f"Appointment {appointment_id} settled as {disposition.value}: "
            f"entry {result['ledger_entry']['id']} value {result['ledger_entry']['value_total']}"
        )
        return result

    # ================================================================
    # 独立收款
    # ================================================================

    def create_entry(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """不经过预约直接创建一条流水。

        Args:
            data: 与 finalize_appointment 相同的结算字段，另外支持：
                - worker_id: 员工ID（必填）
                - client_id: 顾客ID（可选；package 时默认为套餐顾客）
                - date: 服务时间（可选，默认当前时间）
                - end: 结束时刻 ``HH:MM``（可选）
                - service_names: 服务名称（可选）
        """
        disposition = self._disposition(data)
        worker_id = to_int(require(data, "worker_id"), "worker_id")
        client_id = optional_int(data, "client_id")
        when = parse_local_datetime(data["date"]) if data.get("date") else self.clock.now()

        with self.db.unit_of_work() as session:
            worker = self.db.workers.require(worker_id, session=session)
            if client_id is not None:
                self.db.clients.require(client_id, session=session)

            if disposition is Disposition.PACKAGE:
                package = self.db.packages.require(
                    to_int(require(data, "package_id"), "package_id"), session=session
                )
                if client_id is not None and package.client_id != client_id:
                    raise ValidationError(
                        f"Package {package.id} belongs to another client"
                    )
                entry, _ = self.packages.consume(
                    session, package, worker, when=when,
                    start=format_hhmm(when), end=data.get("end"),
                    notes=data.get("notes"),
                    service_names=data.get("service_names"),
                )
            else:
                entry = self._settle_entry(
                    session, disposition, data,
                    entry=None,
                    worker_id=worker_id,
                    client_id=client_id,
                    when=when,
                    end_time=data.get("end"),
                    service_names=data.get("service_names"),
                    default_reference=None,
                )
            result = ledger_entry_to_dict(entry)

        logger.info(
            f"Ledger entry {result['id']} created ({disposition.value}) "
            f"for worker {worker_id}: {result['value_total']}"
        )
        return result

    # ================================================================
    # 赊账还款
    # ================================================================

    def record_credit_payment(self, entry_id: int,
                              data: Dict[str, Any]) -> Dict[str, Any]:
        """登记赊账还款。

        按实际支付方式的手续费率重新计算手续费与提成，
        流水标记为 completed，收入在 payment_date 当天确认。

        Args:
            entry_id: 赊账流水ID。
            data: 支持以下键：
                - value_paid: 实收金额（必填，> 0）
                - payment_method: 实际支付方式（必填，不能是保留代码）
                - payment_date: 还款日期（可选，默认今天）
                - notes: 备注（可选）

        Raises:
            StateError: 流水不是赊账，或已经还清。
        """
        value_paid = round_money(to_decimal(require(data, "value_paid"), "value_paid"))
        if value_paid <= 0:
            raise ValidationError("value_paid must be greater than zero")
        payment_date = parse_date(
            data.get("payment_date") or self.clock.today(), "payment_date"
        )

        with self.db.unit_of_work() as session:
            entry = self.db.ledger.require(entry_id, session=session)
            if not entry.is_credit:
                raise StateError(f"Ledger entry {entry_id} is not a credit entry")
            already_paid = self.db.credit_payments.get_by_entry(entry.id, session=session)
            if entry.status != LedgerStatus.PENDING.value or already_paid is not None:
                raise StateError(f"Credit entry {entry_id} has already been paid")
            method = self.db.payment_methods.require_payable(
                data.get("payment_method"), session=session
            )
            worker = self.db.workers.require(entry.worker_id, session=session)
            before = ledger_entry_to_dict(entry)

            result = settle_single(
                value_paid, worker.commission_percentage, method.fee_percentage or 0
            )
            payment = CreditPayment(
                ledger_entry_id=entry.id,
                value_paid=value_paid,
                payment_method=method.code,
                payment_date=payment_date,
                fee_amount=result.fee_amount,
                commission_worker=result.commission_worker,
                commission_house=result.commission_house,
                notes=data.get("notes"),
            )
            session.add(payment)

            entry.value_total = result.value_total
            entry.payment_fee_amount = result.fee_amount
            entry.commission_worker = result.commission_worker
            entry.commission_house = result.commission_house
            entry.payment_method = method.code
            entry.status = LedgerStatus.COMPLETED.value
            entry.paid_at = datetime.combine(payment_date, time(0, 0))
            session.flush()

            entry_data = ledger_entry_to_dict(entry)
            payment_data = credit_payment_to_dict(payment)
            self.db.audit.record(
                "ledger_entry", entry.id, "settle",
                before=before, after=entry_data, session=session,
            )
            self.db.audit.record(
                "credit_payment", payment.id, "create",
                before=None, after=payment_data, session=session,
            )

        logger.info(
            f"Credit entry {entry_id} paid: {value_paid} via {payment_data['payment_method']} "
            f"on {payment_date.isoformat()}"
        )
        return {"ledger_entry": entry_data, "credit_payment": payment_data}

    # ================================================================
    # 内部工具
    # ================================================================

    @staticmethod
    def _disposition(data: Dict[str, Any]) -> Disposition:
        if not data or not data.get("disposition"):
            raise StateError("A disposition is required to settle")
        return Disposition.parse(data["disposition"])

    def _settle_entry(self, session, disposition: Disposition,
                      data: Dict[str, Any], entry: Optional[LedgerEntry],
                      worker_id: int, client_id: Optional[int],
                      when: datetime, end_time: Optional[str],
                      service_names: Optional[str],
                      default_reference: Optional[Any]) -> LedgerEntry:
        """按 payment / credit / promotional 计算金额并写入流水。"""
        worker = self.db.workers.require(worker_id, session=session)
        before = ledger_entry_to_dict(entry) if entry is not None else None
        shares = self._parse_shares(data)
        if shares and disposition is not Disposition.PAYMENT:
            raise ValidationError("Shared settlement is only allowed for payments")

        splits: List[Dict[str, Any]] = []
        is_credit = False
        is_promotional = False
        reference_value = None
        paid_at: Optional[datetime] = when
        status = LedgerStatus.COMPLETED.value

        if disposition is Disposition.PROMOTIONAL:
            result = settle_promotional()
            is_promotional = True
            method_code = PROMOTIONAL_METHOD
            reference = data.get("reference_value")
            if reference is None:
                reference = default_reference
            reference_value = (
                round_money(to_decimal(reference, "reference_value"))
                if reference is not None else None
            )
            paid_at = None
        else:
            value_total = round_money(to_decimal(require(data, "value_total"), "value_total"))
            if value_total < 0:
                raise ValidationError("value_total cannot be negative")

            if disposition is Disposition.CREDIT:
                result = settle_single(value_total, worker.commission_percentage, ZERO)
                is_credit = True
                method_code = CREDIT_METHOD
                status = LedgerStatus.PENDING.value
                paid_at = None
            else:
                method = self.db.payment_methods.require_payable(
                    data.get("payment_method"), session=session
                )
                method_code = method.code
                fee_percentage = method.fee_percentage or 0
                if shares:
                    result = self._settle_shares(
                        session, value_total, shares, fee_percentage
                    )
                    splits = [
                        {
                            "worker_id": s.worker_id,
                            "share_value": s.share_value,
                            "commission_gross": s.commission_gross,
                            "fee_amount": s.fee_amount,
                            "commission_worker": s.commission_worker,
                        }
                        for s in result.shares
                    ]
                else:
                    result = settle_single(
                        value_total, worker.commission_percentage, fee_percentage
                    )

        if entry is None:
            entry = LedgerEntry(worker_id=worker_id, date=when)
            session.add(entry)
        entry.worker_id = worker_id
        entry.client_id = client_id
        entry.date = when
        if end_time:
            entry.end_time = end_time
        entry.service_names = service_names
        entry.entry_type = "service"
        entry.value_total = result.value_total
        entry.commission_worker = result.commission_worker
        entry.commission_house = result.commission_house
        entry.payment_fee_amount = result.fee_amount
        entry.payment_method = method_code
        entry.status = status
        entry.is_credit = is_credit
        entry.is_promotional = is_promotional
        entry.reference_value = reference_value
        entry.paid_at = paid_at
        entry.package_id = None
        if data.get("notes"):
            entry.notes = data["notes"]
        session.flush()
        self.db.ledger.replace_splits(entry, splits, session=session)

        self.db.audit.record(
            "ledger_entry", entry.id, "settle",
            before=before, after=ledger_entry_to_dict(entry), session=session,
        )
        return entry

    def _settle_shares(self, session, value_total: Decimal,
                       shares: List[Dict[str, Any]], fee_percentage):
        inputs = []
        for share in shares:
            worker = self.db.workers.require(share["worker_id"], session=session)
            inputs.append(ShareInput(
                worker_id=worker.id,
                share_value=share["share_value"],
                commission_percentage=worker.commission_percentage,
            ))
        return settle_shared(value_total, inputs, fee_percentage)

    @staticmethod
    def _parse_shares(data: Dict[str, Any]) -> List[Dict[str, Any]]:
        raw = data.get("shares")
        if not raw:
            return []
        if not isinstance(raw, (list, tuple)):
            raise ValidationError("shares must be a list")
        parsed = []
        for item in raw:
            if not isinstance(item, dict):
                raise ValidationError("Each share needs worker_id and share_value")
            parsed.append({
                "worker_id": to_int(require(item, "worker_id"), "worker_id"),
                "share_value": to_decimal(require(item, "share_value"), "share_value"),
            })
        return parsed
