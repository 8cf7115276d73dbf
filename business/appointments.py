"""预约服务：预约的创建、编辑、改期、调整时长、取消与删除。

预约创建时同时生成一条 ``pending`` 状态的预估流水并建立一对一关联，
结算时在原流水上更新（见 billing.BillingService.finalize_appointment）。
删除预约只删除预约本身，关联流水保留。

每个写操作都在一个工作单元内完成：所有校验先于写入；
任何异常都会整体回滚。
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger

from config.settings import settings
from database.manager import appointment_to_dict, ledger_entry_to_dict
from database.models import Appointment, LedgerEntry

from .clock import (
    Clock, SystemClock, add_minutes, combine, format_hhmm,
    parse_date, parse_hhmm, parse_local_datetime
)
from .errors import StateError, ValidationError
from .lifecycle import AppointmentStatus, LedgerStatus, ensure_editable, ensure_transition
from .settlement import round_money, settle_single, to_decimal
from .timeline import TimelineWindow, default_window, find_conflict
from .validation import int_list, optional_int, require, to_int

SERVICE_SEPARATOR = " + "


class AppointmentService:
    """预约服务。

    Args:
        db: DatabaseManager。
        clock: 时钟（默认系统时钟）。
        window: 时间轴窗口（默认由 settings 构造）。
    """

    def __init__(self, db, clock: Optional[Clock] = None,
                 window: Optional[TimelineWindow] = None) -> None:
        self.db = db
        self.clock = clock or SystemClock()
        self.window = window or default_window

    # ================================================================
    # 查询
    # ================================================================

    def get(self, appointment_id: int) -> Dict[str, Any]:
        with self.db.get_session() as session:
            return appointment_to_dict(
                self.db.appointments.require(appointment_id, session=session)
            )

    def timeline(self, day: Any, now: Optional[datetime] = None) -> Dict[str, Any]:
        """某一天的时间轴视图。

        Returns:
            ``{"date", "hour_labels", "now_pct", "rows": [{worker, blocks}]}``，
            每个 block 包含 left_pct / width_pct / progress。
        """
        target = parse_date(day)
        now = now or self.clock.now()
        rows = []
        with self.db.get_session() as session:
            workers = self.db.workers.get_active(session=session)
            appointments = self.db.appointments.get_by_day(
                target, include_cancelled=False, session=session
            )
            for worker in workers:
                blocks = []
                for a in appointments:
                    if a.worker_id != worker.id:
                        continue
                    pos = self.window.position(a.start_time, a.duration_minutes)
                    block = appointment_to_dict(a)
                    block.update({
                        "client_name": a.client.name if a.client else None,
                        "end_time": format_hhmm(add_minutes(a.start_time, a.duration_minutes)),
                        "left_pct": pos.left_pct,
                        "width_pct": pos.width_pct,
                        "progress": self.window.progress(
                            a.start_time, a.duration_minutes, now
                        ),
                    })
                    blocks.append(block)
                rows.append({
                    "worker_id": worker.id,
                    "worker_name": worker.name,
                    "blocks": blocks,
                })

        return {
            "date": target.isoformat(),
            "hour_labels": self.window.hour_labels(),
            "now_pct": (
                self.window.now_indicator(now) if now.date() == target else None
            ),
            "rows": rows,
        }

    # ================================================================
    # 写操作
    # ================================================================

    def create(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """创建预约（同时创建关联的预估流水）。

        Args:
            data: 支持以下键：
                - worker_id: 员工ID（必填）
                - client_id: 顾客ID（必填）
                - start_time: ``YYYY-MM-DD HH:MM:SS``；或 date + start（``HH:MM``）
                - end: 结束时刻 ``HH:MM``（可选，用于推导时长）
                - duration_minutes: 时长（可选，默认为所选服务时长之和）
                - service_ids: 服务目录ID列表（与 service_description 二选一）
                - service_description: 服务描述（可选）
                - estimated_value: 预估金额（可选，默认为服务基础价格之和）

        Returns:
            ``{"appointment": {...}, "ledger_entry": {...}}``。

        Raises:
            ValidationError: 缺少字段、格式错误或引用不存在。
            StateError: 与同一员工的其他预约时间重叠。
        """
        worker_id = to_int(require(data, "worker_id"), "worker_id")
        client_id = to_int(require(data, "client_id"), "client_id")
        start_time = self._parse_start(data)

        with self.db.unit_of_work() as session:
            worker = self.db.workers.require(worker_id, session=session)
            self.db.clients.require(client_id, session=session)
            description, catalog_minutes, catalog_price = self._compose_services(
                data, session
            )
            duration = self._resolve_duration(data, start_time, catalog_minutes)
            estimated = round_money(to_decimal(
                data["estimated_value"] if data.get("estimated_value") is not None
                else catalog_price,
                "estimated_value"
            ))
            if estimated < 0:
                raise ValidationError("estimated_value cannot be negative")
            self._check_conflict(session, worker_id, start_time, duration)

            estimate = settle_single(estimated, worker.commission_percentage)
            entry = LedgerEntry(
                worker_id=worker_id,
                client_id=client_id,
                date=start_time,
                end_time=format_hhmm(add_minutes(start_time, duration)),
                service_names=description,
                entry_type="service",
                value_total=estimate.value_total,
                commission_worker=estimate.commission_worker,
                commission_house=estimate.commission_house,
                payment_fee_amount=estimate.fee_amount,
                status=LedgerStatus.PENDING.value,
            )
            session.add(entry)
            session.flush()

            appointment = Appointment(
                worker_id=worker_id,
                client_id=client_id,
                start_time=start_time,
                duration_minutes=duration,
                service_description=description,
                estimated_value=estimated,
                status=AppointmentStatus.PENDING.value,
                ledger_entry_id=entry.id,
            )
            session.add(appointment)
            session.flush()

            after = appointment_to_dict(appointment)
            self.db.audit.record(
                "appointment", appointment.id, "create",
                before=None, after=after, session=session,
            )
            result = {
                "appointment": after,
                "ledger_entry": ledger_entry_to_dict(entry),
            }

        logger.info(
            f"Appointment {result['appointment']['id']} booked for worker {worker_id} "
            f"at {result['appointment']['start_time']} ({duration} min)"
        )
        return result

    def update(self, appointment_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
        """编辑预约（员工、顾客、时间、时长、服务、预估金额）。

        只允许非终态预约；不会改变状态。

        Raises:
            StateError: 预约已完成/已取消，或时间冲突。
        """
        with self.db.unit_of_work() as session:
            appointment = self.db.appointments.require(appointment_id, session=session)
            ensure_editable(appointment.status)
            before = appointment_to_dict(appointment)

            worker_id = optional_int(data, "worker_id") or appointment.worker_id
            client_id = optional_int(data, "client_id") or appointment.client_id
            self.db.workers.require(worker_id, session=session)
            self.db.clients.require(client_id, session=session)

            if data.get("start_time") or data.get("date") or data.get("start"):
                start_time = self._parse_start(data, fallback=appointment.start_time)
            else:
                start_time = appointment.start_time

            description = appointment.service_description
            catalog_minutes = None
            if data.get("service_ids") is not None or data.get("service_description"):
                description, catalog_minutes, _ = self._compose_services(data, session)

            if data.get("duration_minutes") is not None or data.get("end"):
                duration = self._resolve_duration(data, start_time, catalog_minutes)
            else:
                duration = appointment.duration_minutes

            estimated = appointment.estimated_value
            if data.get("estimated_value") is not None:
                estimated = round_money(to_decimal(data["estimated_value"], "estimated_value"))
                if estimated < 0:
                    raise ValidationError("estimated_value cannot be negative")

            self._check_conflict(
                session, worker_id, start_time, duration, ignore_id=appointment.id
            )

            appointment.worker_id = worker_id
            appointment.client_id = client_id
            appointment.start_time = start_time
            appointment.duration_minutes = duration
            appointment.service_description = description
            appointment.estimated_value = estimated
            self._sync_linked_entry(session, appointment, recompute_estimate=True)
            session.flush()

            after = appointment_to_dict(appointment)
            self.db.audit.record(
                "appointment", appointment.id, "update",
                before=_changed(before, after), after=_changed(after, before),
                session=session,
            )

        logger.info(f"Appointment {appointment_id} updated")
        return after

    def reschedule(self, appointment_id: int, new_start: Any,
                   new_worker_id: Optional[int] = None) -> Dict[str, Any]:
        """改期：开始时间与员工在同一次写入中更新。

        Args:
            appointment_id: 预约ID。
            new_start: 新的开始时间（datetime 或 ``YYYY-MM-DD HH:MM:SS``）。
            new_worker_id: 新员工ID（可选，默认不变）。
        """
        start_time = parse_local_datetime(new_start)

        with self.db.unit_of_work() as session:
            appointment = self.db.appointments.require(appointment_id, session=session)
            ensure_editable(appointment.status)
            worker_id = (
                to_int(new_worker_id, "worker_id")
                if new_worker_id is not None else appointment.worker_id
            )
            self.db.workers.require(worker_id, session=session)
            self._check_conflict(
                session, worker_id, start_time, appointment.duration_minutes,
                ignore_id=appointment.id
            )

            before = {
                "start_time": appointment.start_time,
                "worker_id": appointment.worker_id,
            }
            appointment.start_time = start_time
            appointment.worker_id = worker_id
            self._sync_linked_entry(
                session, appointment,
                recompute_estimate=worker_id != before["worker_id"]
            )
            session.flush()

            self.db.audit.record(
                "appointment", appointment.id, "update",
                before=before,
                after={"start_time": start_time, "worker_id": worker_id},
                session=session,
            )
            result = appointment_to_dict(appointment)

        logger.info(
            f"Appointment {appointment_id} moved to {result['start_time']} "
            f"(worker {result['worker_id']})"
        )
        return result

    def resize(self, appointment_id: int, duration_minutes: int) -> Dict[str, Any]:
        """调整时长；关联流水只同步展示用的结束时刻，不重算金额。"""
        duration = to_int(duration_minutes, "duration_minutes")
        if duration < settings.min_duration_minutes:
            raise ValidationError(
                f"duration_minutes must be at least {settings.min_duration_minutes}"
            )

        with self.db.unit_of_work() as session:
            appointment = self.db.appointments.require(appointment_id, session=session)
            ensure_editable(appointment.status)
            self._check_conflict(
                session, appointment.worker_id, appointment.start_time, duration,
                ignore_id=appointment.id
            )

            before = {"duration_minutes": appointment.duration_minutes}
            appointment.duration_minutes = duration
            self._sync_linked_entry(session, appointment, recompute_estimate=False)
            session.flush()

            self.db.audit.record(
                "appointment", appointment.id, "update",
                before=before, after={"duration_minutes": duration},
                session=session,
            )
            result = appointment_to_dict(appointment)

        logger.info(f"Appointment {appointment_id} resized to {duration} min")
        return result

    def cancel(self, appointment_id: int) -> Dict[str, Any]:
        """取消预约：保留记录，状态改为 cancelled，未结算的预估流水一并取消。"""
        with self.db.unit_of_work() as session:
            appointment = self.db.appointments.require(appointment_id, session=session)
            ensure_transition(appointment.status, AppointmentStatus.CANCELLED)
            before = {"status": appointment.status}
            appointment.status = AppointmentStatus.CANCELLED.value

            if appointment.ledger_entry_id is not None:
                entry = self.db.ledger.get_by_id(
                    LedgerEntry, appointment.ledger_entry_id, session=session
                )
                if entry is not None and entry.status == LedgerStatus.PENDING.value:
                    entry.status = LedgerStatus.CANCELLED.value
            session.flush()

            self.db.audit.record(
                "appointment", appointment.id, "transition",
                before=before, after={"status": AppointmentStatus.CANCELLED.value},
                session=session,
            )
            result = appointment_to_dict(appointment)

        logger.info(f"Appointment {appointment_id} cancelled")
        return result

    def delete(self, appointment_id: int) -> None:
        """删除预约记录。关联流水不删除。"""
        with self.db.unit_of_work() as session:
            appointment = self.db.appointments.require(appointment_id, session=session)
            before = appointment_to_dict(appointment)
            session.delete(appointment)
            session.flush()
            self.db.audit.record(
                "appointment", appointment_id, "delete",
                before=before, after=None, session=session,
            )

        logger.info(f"Appointment {appointment_id} deleted")

    # ================================================================
    # 内部工具
    # ================================================================

    def _parse_start(self, data: Dict[str, Any],
                     fallback: Optional[datetime] = None) -> datetime:
        if data.get("start_time"):
            return parse_local_datetime(data["start_time"])
        if data.get("date") or data.get("start"):
            day = data.get("date") or (fallback.date() if fallback else None)
            hhmm = data.get("start") or (format_hhmm(fallback) if fallback else None)
            if not day or not hhmm:
                raise ValidationError("start_time is required")
            return combine(day, hhmm)
        raise ValidationError("start_time is required")

    def _compose_services(self, data: Dict[str, Any], session
                          ) -> Tuple[str, Optional[int], Decimal]:
        """把所选服务拼成描述，并汇总目录时长与基础价格。"""
        if data.get("service_ids") is not None:
            ids = int_list(data["service_ids"], "service_ids")
            if not ids:
                raise ValidationError("Select at least one service")
            items = self.db.services.get_many(ids, session=session)
            description = SERVICE_SEPARATOR.join(item.name for item in items)
            minutes = sum(item.duration_minutes or 0 for item in items)
            price = sum((to_decimal(item.base_price or 0) for item in items), Decimal("0"))
            return description, minutes, price

        description = str(require(data, "service_description")).strip()
        return description, None, Decimal("0")

    def _resolve_duration(self, data: Dict[str, Any], start_time: datetime,
                          catalog_minutes: Optional[int]) -> int:
        if data.get("duration_minutes") is not None:
            duration = to_int(data["duration_minutes"], "duration_minutes")
        elif data.get("end"):
            duration = parse_hhmm(data["end"]) - (start_time.hour * 60 + start_time.minute)
            if duration <= 0:
                raise ValidationError("End time must be after start time")
        elif catalog_minutes:
            duration = catalog_minutes
        else:
            duration = settings.default_duration_minutes

        if duration < settings.min_duration_minutes:
            raise ValidationError(
                f"duration_minutes must be at least {settings.min_duration_minutes}"
            )
        return duration

    def _check_conflict(self, session, worker_id: int, start_time: datetime,
                        duration: int, ignore_id: Optional[int] = None) -> None:
        if not settings.reject_overlapping_appointments:
            return
        existing = [
            (a.id, a.start_time, a.duration_minutes)
            for a in self.db.appointments.get_blocking(
                worker_id, start_time.date(), session=session
            )
        ]
        conflict = find_conflict(start_time, duration, existing, ignore_id=ignore_id)
        if conflict:
            raise StateError(
                f"Worker {worker_id} already has appointment {conflict[0]} "
                f"at {format_hhmm(conflict[1])}"
            )

    def _sync_linked_entry(self, session, appointment: Appointment,
                           recompute_estimate: bool) -> None:
        """同步关联流水的展示字段；仍为预估状态时可刷新预估金额。"""
        if appointment.ledger_entry_id is None:
            return
        entry = self.db.ledger.get_by_id(
            LedgerEntry, appointment.ledger_entry_id, session=session
        )
        if entry is None:
            return
        entry.end_time = format_hhmm(
            add_minutes(appointment.start_time, appointment.duration_minutes)
        )
        if entry.status != LedgerStatus.PENDING.value or entry.is_credit:
            return
        entry.date = appointment.start_time
        entry.worker_id = appointment.worker_id
        entry.client_id = appointment.client_id
        entry.service_names = appointment.service_description
        if recompute_estimate:
            worker = self.db.workers.require(appointment.worker_id, session=session)
            estimate = settle_single(
                appointment.estimated_value or 0, worker.commission_percentage
            )
            entry.value_total = estimate.value_total
            entry.commission_worker = estimate.commission_worker
            entry.commission_house = estimate.commission_house
            entry.payment_fee_amount = estimate.fee_amount


def _changed(source: Dict[str, Any], other: Dict[str, Any]) -> Dict[str, Any]:
    """只保留与另一份快照不同的字段。"""
    return {k: v for k, v in source.items() if other.get(k) != v}
