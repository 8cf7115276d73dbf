"""交互引擎：拖拽改期与拖拽调整时长。

交互过程是一个显式的有限状态对象::

    Idle ──begin_drag──> DragPreview ──drag_move*──> DragPreview ──end_drag──> RescheduleCommand | None
    Idle ──begin_resize─> ResizePreview ─resize_move*─> ResizePreview ─end_resize─> ResizeCommand | None
    Command ──commit──> Committing ──> Idle (+ CommitResult)

预览阶段只计算，不写库；只有 commit 才调用 AppointmentService，
改期（时间 + 员工）或调整时长都是一次原子写入。提交失败时返回
交互前的预约快照，存储保持不变。

所有转换函数对任意状态都是全函数：对不匹配的状态原样返回。
"""
import math
from dataclasses import dataclass, replace
from datetime import date, datetime
from typing import Any, Iterable, Optional, Union

from loguru import logger

from config.settings import settings

from .clock import combine, parse_local_datetime
from .errors import AgendaError, ValidationError
from .timeline import TimelineWindow, default_window

# 调整时长时预览宽度的下限（像素）
MIN_RESIZE_WIDTH_PX = 15


@dataclass(frozen=True)
class AppointmentSnapshot:
    """交互开始时的预约快照，失败时据此恢复显示。"""
    id: int
    worker_id: int
    start_time: datetime
    duration_minutes: int

    @classmethod
    def of(cls, appointment: Any) -> "AppointmentSnapshot":
        """从 ORM 对象或字典构造。"""
        if isinstance(appointment, cls):
            return appointment
        if isinstance(appointment, dict):
            return cls(
                id=appointment["id"],
                worker_id=appointment["worker_id"],
                start_time=parse_local_datetime(appointment["start_time"]),
                duration_minutes=appointment["duration_minutes"],
            )
        return cls(
            id=appointment.id,
            worker_id=appointment.worker_id,
            start_time=appointment.start_time,
            duration_minutes=appointment.duration_minutes,
        )

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "worker_id": self.worker_id,
            "start_time": self.start_time.strftime("%Y-%m-%d %H:%M:%S"),
            "duration_minutes": self.duration_minutes,
        }


@dataclass(frozen=True)
class RowBounds:
    """某位员工那一行在屏幕上的纵向范围（像素）。"""
    worker_id: int
    top: float
    bottom: float

    def contains(self, y: float) -> bool:
        return self.top <= y < self.bottom


@dataclass(frozen=True)
class TimelineArea:
    """时间轴绘制区域的水平范围（像素）。"""
    left: float
    width: float


# ------------------------------------------------------------
# 状态
# ------------------------------------------------------------

@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class DragPreview:
    appointment: AppointmentSnapshot
    day: date
    grab_offset_px: float
    preview_time: Optional[str] = None
    target_worker_id: Optional[int] = None


@dataclass(frozen=True)
class ResizePreview:
    appointment: AppointmentSnapshot
    area_width_px: float
    initial_left_px: float
    initial_width_px: float
    initial_pointer_x: float
    preview_minutes: Optional[float] = None
    width_pct: Optional[float] = None


@dataclass(frozen=True)
class RescheduleCommand:
    appointment_id: int
    new_start: datetime
    new_worker_id: int


@dataclass(frozen=True)
class ResizeCommand:
    appointment_id: int
    duration_minutes: int


Command = Union[RescheduleCommand, ResizeCommand]


@dataclass(frozen=True)
class Committing:
    command: Command
    snapshot: AppointmentSnapshot


InteractionState = Union[Idle, DragPreview, ResizePreview, Committing]


@dataclass(frozen=True)
class CommitResult:
    """提交结果。失败时 appointment 为交互前的快照。"""
    ok: bool
    appointment: Optional[dict] = None
    error: Optional[str] = None
    command: Optional[Command] = None


# ------------------------------------------------------------
# 拖拽改期
# ------------------------------------------------------------

def begin_drag(appointment: Any, pointer_x: float, block_left_px: float,
               day: Optional[date] = None) -> DragPreview:
    """开始拖拽。

    记录指针在预约块内的抓取偏移（仅供显示）；提交的时间始终等于
    指针本身吸附后的位置。``day`` 为当前查看的日期，默认为预约所在日期。
    """
    snapshot = AppointmentSnapshot.of(appointment)
    return DragPreview(
        appointment=snapshot,
        day=day or snapshot.start_time.date(),
        grab_offset_px=pointer_x - block_left_px,
    )


def hit_test(rows: Iterable[RowBounds], pointer_y: float) -> Optional[int]:
    for row in rows:
        if row.contains(pointer_y):
            return row.worker_id
    return None


def drag_move(state: InteractionState, pointer_x: float, pointer_y: float,
              area: TimelineArea, rows: Iterable[RowBounds],
              window: TimelineWindow = default_window) -> InteractionState:
    """拖拽中：重新计算吸附时间并命中测试目标行。

    指针不在任何一行内时保留上一次的目标行（或保持为空）。
    """
    if not isinstance(state, DragPreview):
        return state
    preview_time = window.pointer_to_time(pointer_x, area.left, area.width)
    target = hit_test(rows, pointer_y)
    return replace(
        state,
        preview_time=preview_time,
        target_worker_id=target if target is not None else state.target_worker_id,
    )


def end_drag(state: InteractionState) -> Optional[RescheduleCommand]:
    """结束拖拽：有有效目标时生成改期命令，否则放弃（None）。"""
    if not isinstance(state, DragPreview):
        return None
    if state.preview_time is None or state.target_worker_id is None:
        return None
    return RescheduleCommand(
        appointment_id=state.appointment.id,
        new_start=combine(state.day, state.preview_time),
        new_worker_id=state.target_worker_id,
    )


# ------------------------------------------------------------
# 调整时长
# ------------------------------------------------------------

def begin_resize(appointment: Any, pointer_x: float, area_width_px: float,
                 window: TimelineWindow = default_window) -> ResizePreview:
    """开始调整时长：记录预约块初始的左边界、宽度（像素）与指针位置。"""
    if area_width_px <= 0:
        raise ValidationError("Timeline area width must be positive")
    snapshot = AppointmentSnapshot.of(appointment)
    position = window.position(snapshot.start_time, snapshot.duration_minutes)
    return ResizePreview(
        appointment=snapshot,
        area_width_px=area_width_px,
        initial_left_px=position.left_pct / 100 * area_width_px,
        initial_width_px=position.width_pct / 100 * area_width_px,
        initial_pointer_x=pointer_x,
    )


def resize_move(state: InteractionState, pointer_x: float,
                window: TimelineWindow = default_window) -> InteractionState:
    """调整中：平滑预览，不吸附。"""
    if not isinstance(state, ResizePreview):
        return state
    new_width_px = max(
        state.initial_width_px + (pointer_x - state.initial_pointer_x),
        MIN_RESIZE_WIDTH_PX,
    )
    return replace(
        state,
        preview_minutes=new_width_px / state.area_width_px * window.span,
        width_pct=new_width_px / state.area_width_px * 100,
    )


def snap_duration(minutes: float, snap: Optional[int] = None,
                  floor: Optional[int] = None) -> int:
    """吸附到最近的 snap 分钟倍数（四舍五入），且不小于 floor。"""
    snap = snap or settings.resize_snap_minutes
    floor = floor or settings.min_duration_minutes
    return max(floor, int(math.floor(minutes / snap + 0.5)) * snap)


def end_resize(state: InteractionState) -> Optional[ResizeCommand]:
    """结束调整：吸附到 15 分钟倍数（最少 15 分钟）；没有移动过则放弃。"""
    if not isinstance(state, ResizePreview) or state.preview_minutes is None:
        return None
    return ResizeCommand(
        appointment_id=state.appointment.id,
        duration_minutes=snap_duration(state.preview_minutes),
    )


# ------------------------------------------------------------
# 引擎
# ------------------------------------------------------------

class InteractionEngine:
    """持有当前交互状态，并把命令提交给 AppointmentService。

    Example::

        engine = InteractionEngine(appointment_service)
        engine.begin_drag(appointment, pointer_x=420, block_left_px=400)
        engine.drag_move(pointer_x=510, pointer_y=130, area=area, rows=rows)
        result = engine.finish()
    """

    def __init__(self, appointments, window: Optional[TimelineWindow] = None) -> None:
        self.appointments = appointments
        self.window = window or default_window
        self.state: InteractionState = Idle()

    def begin_drag(self, appointment: Any, pointer_x: float,
                   block_left_px: float, day: Optional[date] = None) -> DragPreview:
        self.state = begin_drag(appointment, pointer_x, block_left_px, day)
        return self.state

    def drag_move(self, pointer_x: float, pointer_y: float,
                  area: TimelineArea, rows: Iterable[RowBounds]) -> InteractionState:
        self.state = drag_move(self.state, pointer_x, pointer_y, area, rows, self.window)
        return self.state

    def begin_resize(self, appointment: Any, pointer_x: float,
                     area_width_px: float) -> ResizePreview:
        self.state = begin_resize(appointment, pointer_x, area_width_px, self.window)
        return self.state

    def resize_move(self, pointer_x: float) -> InteractionState:
        self.state = resize_move(self.state, pointer_x, self.window)
        return self.state

    def abort(self) -> None:
        self.state = Idle()

    def finish(self) -> Optional[CommitResult]:
        """结束当前交互并提交；没有可提交的命令时返回 None。"""
        if isinstance(self.state, DragPreview):
            command = end_drag(self.state)
        elif isinstance(self.state, ResizePreview):
            command = end_resize(self.state)
        else:
            command = None

        if command is None:
            self.state = Idle()
            return None
        return self.commit(command)

    def commit(self, command: Command) -> CommitResult:
        """提交命令。

        失败时返回 ``ok=False`` 与交互前的快照，状态回到 Idle。
        """
        if isinstance(self.state, (DragPreview, ResizePreview)):
            snapshot = self.state.appointment
        else:
            try:
                snapshot = AppointmentSnapshot.of(
                    self.appointments.get(command.appointment_id)
                )
            except AgendaError as e:
                self.state = Idle()
                return CommitResult(ok=False, error=str(e), command=command)
        self.state = Committing(command=command, snapshot=snapshot)

        try:
            if isinstance(command, RescheduleCommand):
                updated = self.appointments.reschedule(
                    command.appointment_id, command.new_start, command.new_worker_id
                )
            else:
                updated = self.appointments.resize(
                    command.appointment_id, command.duration_minutes
                )
        except AgendaError as e:
            logger.warning(f"Commit of {command} failed: {e}")
            return CommitResult(
                ok=False, appointment=snapshot.as_dict(), error=str(e), command=command
            )
        finally:
            self.state = Idle()

        return CommitResult(ok=True, appointment=updated, command=command)
