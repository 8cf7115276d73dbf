"""预付套餐服务：售卖、使用、取消。

- 售卖：一次事务内创建 ``package_sale`` 流水与套餐，收入在售卖时确认。
- 使用：每次使用追加一条 PackageUsage，used_sessions + 1，
  并产生一条 ``package_session`` 流水（每次价值、无手续费、执行员工提成）；
  用满时套餐变为 completed。
- 取消：退款不得超过 ``剩余次数 × 每次价值``；退款大于 0 时
  生成一条负金额的 ``package_refund`` 流水，已有流水不做任何修改。
- 过期：由 LifecycleService 的周期扫描处理。
"""
from datetime import datetime, time
from typing import Any, Dict, Optional, Tuple

from loguru import logger

from database.manager import ledger_entry_to_dict, package_to_dict, package_usage_to_dict
from database.models import LedgerEntry, Package, PackageUsage, Worker

from .clock import Clock, SystemClock, combine, format_hhmm, parse_date, parse_hhmm
from .errors import CapacityError, StateError, ValidationError
from .lifecycle import LedgerStatus, PackageStatus, ensure_package_transition
from .settlement import (
    ZERO, refund_ceiling, round_money, settle_refund, settle_single,
    to_decimal, value_per_session
)
from .validation import require, to_int


class PackageService:
    """预付套餐服务。

    Args:
        db: DatabaseManager。
        clock: 时钟（默认系统时钟）。
    """

    def __init__(self, db, clock: Optional[Clock] = None) -> None:
        self.db = db
        self.clock = clock or SystemClock()

    def get(self, package_id: int) -> Dict[str, Any]:
        with self.db.get_session() as session:
            package = self.db.packages.require(package_id, session=session)
            result = package_to_dict(package)
            result["usages"] = [
                package_usage_to_dict(u)
                for u in self.db.packages.get_usages(package_id, session=session)
            ]
            return result

    def sell(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """售卖套餐。

        Args:
            data: 支持以下键：
                - client_id: 顾客ID（必填）
                - service_id: 服务目录ID（必填）
                - seller_worker_id: 卖出员工ID（必填）
                - total_sessions: 总次数（必填，> 0）
                - value_total: 售价（必填，>= 0）
                - payment_method: 支付方式代码（必填）
                - name: 套餐名称（可选，默认由服务名与次数生成）
                - sold_on: 售卖日期（可选，默认今天）
                - valid_until: 有效期（可选）

        Returns:
            ``{"package": {...}, "ledger_entry": {...}}``。
        """
        client_id = to_int(require(data, "client_id"), "client_id")
        service_id = to_int(require(data, "service_id"), "service_id")
        seller_id = to_int(require(data, "seller_worker_id"), "seller_worker_id")
        total_sessions = to_int(require(data, "total_sessions"), "total_sessions")
        if total_sessions <= 0:
            raise ValidationError("total_sessions must be positive")
        value_total = round_money(to_decimal(require(data, "value_total"), "value_total"))
        if value_total < 0:
            raise ValidationError("value_total cannot be negative")
        per_session = value_per_session(value_total, total_sessions)
        sold_on = parse_date(data.get("sold_on") or self.clock.today(), "sold_on")
        valid_until = (
            parse_date(data["valid_until"], "valid_until")
            if data.get("valid_until") else None
        )
        if valid_until is not None and valid_until < sold_on:
            raise ValidationError("valid_until cannot be before sold_on")

        with self.db.unit_of_work() as session:
            self.db.clients.require(client_id, session=session)
            service = self.db.services.require(service_id, session=session)
            seller = self.db.workers.require(seller_id, session=session)
            method = self.db.payment_methods.require_payable(
                data.get("payment_method"), session=session
            )
            name = data.get("name") or f"{service.name} ({total_sessions} sessões)"

            result = settle_single(
                value_total, seller.commission_percentage, method.fee_percentage or 0
            )
            entry = LedgerEntry(
                worker_id=seller.id,
                client_id=client_id,
                date=datetime.combine(sold_on, time(0, 0)),
                service_names=f"Pacote: {name}",
                entry_type="package_sale",
                value_total=result.value_total,
                commission_worker=result.commission_worker,
                commission_house=result.commission_house,
                payment_fee_amount=result.fee_amount,
                payment_method=method.code,
                status=LedgerStatus.COMPLETED.value,
                paid_at=datetime.combine(sold_on, time(0, 0)),
            )
            session.add(entry)
            session.flush()

            package = Package(
                client_id=client_id,
                service_id=service.id,
                seller_worker_id=seller.id,
                name=name,
                total_sessions=total_sessions,
                used_sessions=0,
                value_total=value_total,
                value_per_session=per_session,
                payment_method=method.code,
                sale_ledger_entry_id=entry.id,
                sold_on=sold_on,
                valid_until=valid_until,
                status=PackageStatus.ACTIVE.value,
            )
            session.add(package)
            session.flush()
            entry.package_id = package.id
            session.flush()

            package_data = package_to_dict(package)
            entry_data = ledger_entry_to_dict(entry)
            self.db.audit.record(
                "package", package.id, "create",
                before=None, after=package_data, session=session,
            )
            self.db.audit.record(
                "ledger_entry", entry.id, "settle",
                before=None, after=entry_data, session=session,
            )

        logger.info(
            f"Package {package_data['id']} sold to client {client_id}: "
            f"{total_sessions} sessions for {value_total}"
        )
        return {"package": package_data, "ledger_entry": entry_data}

    def record_usage(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """登记一次套餐使用（不经过预约）。

        Args:
            data: 支持以下键：
                - package_id: 套餐ID（必填）
                - worker_id: 执行员工ID（必填）
                - use_date: 使用日期（可选，默认今天）
                - start / end: ``HH:MM``（可选）
                - notes: 备注（可选）

        Raises:
            CapacityError: 次数已用完。
            StateError: 套餐不是 active 状态或已过有效期。
        """
        package_id = to_int(require(data, "package_id"), "package_id")
        worker_id = to_int(require(data, "worker_id"), "worker_id")
        use_date = parse_date(data.get("use_date") or self.clock.today(), "use_date")
        start = data.get("start")
        end = data.get("end")
        if start:
            parse_hhmm(start)
        if end:
            parse_hhmm(end)

        with self.db.unit_of_work() as session:
            package = self.db.packages.require(package_id, session=session)
            worker = self.db.workers.require(worker_id, session=session)
            entry, usage = self.consume(
                session, package, worker,
                when=combine(use_date, start) if start else datetime.combine(use_date, time(0, 0)),
                start=start, end=end, notes=data.get("notes"),
            )
            result = {
                "package": package_to_dict(package),
                "usage": package_usage_to_dict(usage),
                "ledger_entry": ledger_entry_to_dict(entry),
            }

        logger.info(
            f"Package {package_id} session used by worker {worker_id} "
            f"({result['package']['used_sessions']}/{result['package']['total_sessions']})"
        )
        return result

    def consume(self, session, package: Package, worker: Worker,
                when: datetime, start: Optional[str] = None,
                end: Optional[str] = None, notes: Optional[str] = None,
                entry: Optional[LedgerEntry] = None,
                service_names: Optional[str] = None
                ) -> Tuple[LedgerEntry, PackageUsage]:
        """在调用方的工作单元内消耗一次套餐。

        Args:
            session: 外部会话。
            package: 套餐。
            worker: 执行员工。
            when: 服务时间。
            entry: 结算预约时传入已关联的流水，原地更新；否则新建。

        Returns:
            (流水, 使用记录)。
        """
        if package.used_sessions >= package.total_sessions:
            raise CapacityError(
                f"Package {package.id} has no sessions left "
                f"({package.used_sessions}/{package.total_sessions})"
            )
        if package.status != PackageStatus.ACTIVE.value:
            raise StateError(f"Package {package.id} is {package.status}")
        if package.valid_until is not None and when.date() > package.valid_until:
            raise StateError(
                f"Package {package.id} expired on {package.valid_until.isoformat()}"
            )

        before_entry = ledger_entry_to_dict(entry) if entry is not None else None
        result = settle_single(package.value_per_session, worker.commission_percentage)
        if entry is None:
            entry = LedgerEntry(worker_id=worker.id, date=when)
            session.add(entry)
        entry.worker_id = worker.id
        entry.client_id = package.client_id
        entry.date = when
        if end:
            entry.end_time = format_hhmm(parse_hhmm(end))
        entry.service_names = service_names or f"Pacote: {package.name}"
        entry.entry_type = "package_session"
        entry.value_total = result.value_total
        entry.commission_worker = result.commission_worker
        entry.commission_house = result.commission_house
        entry.payment_fee_amount = result.fee_amount
        entry.payment_method = None
        entry.status = LedgerStatus.COMPLETED.value
        entry.is_credit = False
        entry.is_promotional = False
        entry.reference_value = None
        entry.paid_at = datetime.combine(package.sold_on, time(0, 0))
        entry.package_id = package.id
        session.flush()
        self.db.ledger.replace_splits(entry, [], session=session)

        usage = PackageUsage(
            package_id=package.id,
            worker_id=worker.id,
            use_date=when.date(),
            start_time=format_hhmm(parse_hhmm(start)) if start else None,
            end_time=format_hhmm(parse_hhmm(end)) if end else None,
            ledger_entry_id=entry.id,
            notes=notes,
        )
        session.add(usage)

        before_package = {"used_sessions": package.used_sessions, "status": package.status}
        package.used_sessions += 1
        if package.used_sessions == package.total_sessions:
            ensure_package_transition(package.status, PackageStatus.COMPLETED)
            package.status = PackageStatus.COMPLETED.value
        session.flush()

        self.db.audit.record(
            "package", package.id, "update",
            before=before_package,
            after={"used_sessions": package.used_sessions, "status": package.status},
            session=session,
        )
        self.db.audit.record(
            "ledger_entry", entry.id, "settle",
            before=before_entry, after=ledger_entry_to_dict(entry), session=session,
        )
        return entry, usage

    def cancel(self, package_id: int, data: Optional[Dict[str, Any]] = None
               ) -> Dict[str, Any]:
        """取消套餐并按需退款。

        Args:
            package_id: 套餐ID。
            data: 支持以下键：
                - refund_value: 退款金额（可选，默认 0）
                - refund_method: 退款方式（可选，默认售卖时的支付方式）
                - reason: 取消原因（可选）

        Raises:
            StateError: 套餐已完成或已取消。
            CapacityError: 退款超过上限。
        """
        data = data or {}
        refund = round_money(to_decimal(data.get("refund_value") or 0, "refund_value"))
        if refund < 0:
            raise ValidationError("refund_value cannot be negative")

        with self.db.unit_of_work() as session:
            package = self.db.packages.require(package_id, session=session)
            ensure_package_transition(package.status, PackageStatus.CANCELLED)
            ceiling = refund_ceiling(
                package.total_sessions, package.used_sessions, package.value_per_session
            )
            if refund > ceiling:
                raise CapacityError(
                    f"Refund {refund} exceeds the maximum of {ceiling} "
                    f"({package.total_sessions - package.used_sessions} sessions left)"
                )
            before = package_to_dict(package)

            entry_data = None
            if refund > ZERO:
                seller = self.db.workers.require(package.seller_worker_id, session=session)
                result = settle_refund(refund, seller.commission_percentage)
                now = self.clock.now()
                remaining = package.total_sessions - package.used_sessions
                entry = LedgerEntry(
                    worker_id=seller.id,
                    client_id=package.client_id,
                    date=now,
                    service_names=f"Reembolso Pacote: {package.name} ({remaining} sessões)",
                    entry_type="package_refund",
                    value_total=result.value_total,
                    commission_worker=result.commission_worker,
                    commission_house=result.commission_house,
                    payment_fee_amount=result.fee_amount,
                    payment_method=data.get("refund_method") or package.payment_method,
                    status=LedgerStatus.COMPLETED.value,
                    paid_at=now,
                    package_id=package.id,
                )
                session.add(entry)
                session.flush()
                package.refund_ledger_entry_id = entry.id
                entry_data = ledger_entry_to_dict(entry)
                self.db.audit.record(
                    "ledger_entry", entry.id, "settle",
                    before=None, after=entry_data, session=session,
                )

            package.status = PackageStatus.CANCELLED.value
            package.cancelled_at = self.clock.now()
            package.cancel_reason = data.get("reason")
            package.refund_value = refund
            session.flush()

            after = package_to_dict(package)
            self.db.audit.record(
                "package", package.id, "cancel",
                before=before, after=after, session=session,
            )

        logger.info(f"Package {package_id} cancelled with refund {refund}")
        return {"package": after, "refund_entry": entry_data}
