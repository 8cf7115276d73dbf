"""时间轴几何：时间与水平位置之间的换算。

营业窗口固定为 06:00–22:00，即 ``START = 360``、``SPAN = 960``（分钟）。
表头刻度、"当前时间"指示线以及每一个预约块都使用同一个 ``position`` 公式，
保证视觉上严格对齐；``pointer_to_time`` 是它的反函数（带吸附和边界裁剪）。

本模块只包含纯函数，不访问数据库。
"""
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from config.settings import settings

from .clock import add_minutes, format_hhmm, minutes_since_midnight
from .errors import ValidationError


@dataclass(frozen=True)
class Position:
    """预约块在时间轴上的水平区间（百分比）。"""
    left_pct: float
    width_pct: float

    @property
    def right_pct(self) -> float:
        return self.left_pct + self.width_pct


@dataclass(frozen=True)
class TimelineWindow:
    """每日营业窗口。

    Attributes:
        start: 窗口起点，距午夜的分钟数（默认 360 = 06:00）。
        span: 窗口长度，分钟（默认 960 = 16 小时）。
        snap_minutes: 拖拽落点吸附间隔（默认 30）。
    """
    start: int = 360
    span: int = 960
    snap_minutes: int = 30

    @property
    def end(self) -> int:
        return self.start + self.span

    @classmethod
    def from_settings(cls) -> "TimelineWindow":
        start = settings.timeline_start_hour * 60
        return cls(
            start=start,
            span=settings.timeline_end_hour * 60 - start,
            snap_minutes=settings.drag_snap_minutes,
        )

    # ------------------------------------------------------------
    # 正向：时间 → 位置
    # ------------------------------------------------------------

    def position(self, start_time: datetime,
                 duration_minutes: int) -> Position:
        """计算预约块的 left/width 百分比。

        Args:
            start_time: 开始时间（本地墙上时间）。
            duration_minutes: 时长（分钟）。

        Returns:
            Position(left_pct, width_pct)。
        """
        offset = minutes_since_midnight(start_time) - self.start
        return Position(
            left_pct=offset / self.span * 100,
            width_pct=duration_minutes / self.span * 100,
        )

    def progress(self, start_time: datetime, duration_minutes: int,
                 now: datetime) -> float:
        """服务进度百分比，仅用于进度条填充，没有任何副作用。"""
        end_time = add_minutes(start_time, duration_minutes)
        if now < start_time:
            return 0.0
        if now > end_time or duration_minutes <= 0:
            return 100.0
        elapsed = (now - start_time).total_seconds() / 60
        return elapsed / duration_minutes * 100

    def now_indicator(self, now: datetime) -> Optional[float]:
        """"当前时间"指示线的 left 百分比；不在窗口内时返回 None。"""
        minutes = minutes_since_midnight(now)
        if minutes < self.start or minutes > self.end:
            return None
        return self.position(now, 0).left_pct

    # ------------------------------------------------------------
    # 反向：指针坐标 → 时间
    # ------------------------------------------------------------

    def pointer_to_minutes(self, pointer_x: float, area_left: float,
                           area_width: float) -> int:
        """指针 x 坐标换算为距午夜的分钟数（吸附 + 裁剪）。"""
        if area_width <= 0:
            raise ValidationError("Timeline area width must be positive")
        relative = (pointer_x - area_left) / area_width
        slots = math.floor(relative * self.span / self.snap_minutes + 0.5)
        snapped = slots * self.snap_minutes
        return max(self.start, min(self.end, self.start + snapped))

    def pointer_to_time(self, pointer_x: float, area_left: float,
                        area_width: float) -> str:
        """指针 x 坐标换算为 ``HH:MM:00``。

        吸附到最近的 30 分钟刻度，并裁剪到 [START, START + SPAN]。
        对自身输出的位置再次换算得到同一结果（吸附是不动点）。
        """
        minutes = self.pointer_to_minutes(pointer_x, area_left, area_width)
        return f"{format_hhmm(minutes)}:00"

    def minutes_to_x(self, minutes: int, area_left: float,
                     area_width: float) -> float:
        """距午夜的分钟数换算为指针 x 坐标（pointer_to_time 的逆）。"""
        return area_left + (minutes - self.start) / self.span * area_width

    # ------------------------------------------------------------
    # 刻度
    # ------------------------------------------------------------

    def hour_labels(self) -> List[str]:
        """表头刻度：整点，``['06:00', '07:00', ..., '22:00']``。"""
        first = -(-self.start // 60)
        return [f"{h:02d}:00" for h in range(first, self.end // 60 + 1)]

    def grid_slots(self) -> List[str]:
        """网格线：每 30 分钟一条，含窗口终点。"""
        return [
            format_hhmm(m)
            for m in range(self.start, self.end + 1, self.snap_minutes)
        ]


def end_time(start_time: datetime, duration_minutes: int) -> datetime:
    return add_minutes(start_time, duration_minutes)


def overlaps(start_a: datetime, minutes_a: int,
             start_b: datetime, minutes_b: int) -> bool:
    """两个区间是否重叠（首尾相接不算重叠）。"""
    return (start_a < end_time(start_b, minutes_b)
            and end_time(start_a, minutes_a) > start_b)


def find_conflict(start_time: datetime, duration_minutes: int,
                  existing: Iterable[Tuple[int, datetime, int]],
                  ignore_id: Optional[int] = None
                  ) -> Optional[Tuple[int, datetime, int]]:
    """在同一员工的已有预约中查找时间冲突。

    Args:
        start_time: 新预约开始时间。
        duration_minutes: 新预约时长。
        existing: ``(appointment_id, start_time, duration_minutes)`` 序列。
        ignore_id: 编辑时排除的预约自身 ID。

    Returns:
        第一个冲突的预约元组，没有冲突返回 None。
    """
    for item in existing:
        appointment_id, other_start, other_minutes = item
        if ignore_id is not None and appointment_id == ignore_id:
            continue
        if overlaps(start_time, duration_minutes, other_start, other_minutes):
            return item
    return None


# 默认窗口（由 settings 构造）
default_window = TimelineWindow.from_settings()
