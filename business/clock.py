"""时钟与本地时间工具。

门店的所有时间都是"墙上时间"：存储的数字就是唯一的真相，不做任何时区换算。
上游（数据库、前端）可能会在时间串末尾附带 ``Z`` 或 ``+00:00`` 之类的偏移，
``parse_local_datetime`` 会直接丢弃偏移、按字面数字解析，否则所有预约都会
被服务器的 UTC 偏移整体平移。

时间串只在系统边界解析一次，内部代码只传递 naive ``datetime``。
"""
import re
from datetime import date, datetime, time, timedelta
from typing import Optional, Union

from loguru import logger

from .errors import ValidationError

_OFFSET_SUFFIX = re.compile(r"([+-]\d{2}:\d{2}|Z)$")
_LOCAL_PATTERN = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})[T ](\d{2}):(\d{2}):(\d{2})"
)

STORAGE_FORMAT = "%Y-%m-%d %H:%M:%S"


def parse_local_datetime(value: Union[str, datetime]) -> datetime:
    """把时间串解析为本地墙上时间（naive datetime）。

    先去掉末尾的时区偏移，再按 ``YYYY-MM-DD[T ]HH:MM:SS`` 字面解析。
    不匹配时退回标准 ISO 解析，带时区的结果换算为本机本地时间；
    这条退回路径会记录 warning，因为它通常意味着上游格式发生了漂移。

    Args:
        value: 时间串，或已经是 datetime 的值（去掉 tzinfo，保留数字）。

    Returns:
        naive datetime。

    Raises:
        ValidationError: 两种方式都无法解析。
    """
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("Date/time value is required")

    text = value.strip()
    match = _LOCAL_PATTERN.match(_OFFSET_SUFFIX.sub("", text))
    if match:
        year, month, day, hour, minute, second = (int(p) for p in match.groups())
        try:
            return datetime(year, month, day, hour, minute, second)
        except ValueError as e:
            raise ValidationError(f"Invalid date/time: {value} ({e})")

    logger.warning(f"Timestamp '{value}' is not in local format, falling back to ISO parsing")
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(
            f"Invalid date/time format: {value}, expected YYYY-MM-DD HH:MM:SS"
        )
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def parse_date(value: Union[str, date, datetime], field_name: str = "Date") -> date:
    """解析日期值（``YYYY-MM-DD`` 字符串或 date 对象）。"""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.strptime(value[:10], "%Y-%m-%d").date()
        except ValueError:
            raise ValidationError(
                f"Invalid date format: {value}, expected YYYY-MM-DD"
            )
    raise ValidationError(f"{field_name} is required")


def parse_hhmm(value: str) -> int:
    """把 ``HH:MM`` 或 ``HH:MM:SS`` 解析为距午夜的分钟数。"""
    parts = str(value).split(":")
    try:
        hour, minute = int(parts[0]), int(parts[1])
    except (IndexError, ValueError):
        raise ValidationError(f"Invalid time: {value}, expected HH:MM")
    # 只允许 24:00 表示一天的结束
    if not (0 <= minute < 60 and (0 <= hour < 24 or (hour, minute) == (24, 0))):
        raise ValidationError(f"Invalid time: {value}, expected HH:MM")
    return hour * 60 + minute


def minutes_since_midnight(dt: datetime) -> int:
    return dt.hour * 60 + dt.minute


def format_hhmm(value: Union[datetime, int]) -> str:
    """格式化为 ``HH:MM``；整数参数视为距午夜的分钟数。"""
    if isinstance(value, datetime):
        value = minutes_since_midnight(value)
    return f"{value // 60:02d}:{value % 60:02d}"


def format_local(dt: datetime) -> str:
    """存储格式：``YYYY-MM-DD HH:MM:SS``，不带 T 与时区。"""
    return dt.strftime(STORAGE_FORMAT)


def combine(day: Union[str, date], hhmm: str) -> datetime:
    """把日期和 ``HH:MM[:SS]`` 拼成本地时间。"""
    minutes = parse_hhmm(hhmm)
    base = datetime.combine(parse_date(day), time(0, 0))
    return base + timedelta(minutes=minutes)


def add_minutes(dt: datetime, minutes: int) -> datetime:
    return dt + timedelta(minutes=minutes)


class Clock:
    """时钟抽象。所有依赖"现在"的逻辑都通过注入的时钟获取时间。"""

    def now(self) -> datetime:
        raise NotImplementedError

    def today(self) -> date:
        return self.now().date()


class SystemClock(Clock):
    """系统墙上时钟。"""

    def now(self) -> datetime:
        return datetime.now().replace(microsecond=0)


class FixedClock(Clock):
    """可手动推进的时钟，用于确定性测试与回放。

    Example::

        clock = FixedClock(datetime(2025, 11, 19, 9, 0))
        clock.advance(minutes=30)
    """

    def __init__(self, current: Optional[datetime] = None) -> None:
        self._current = current or datetime(2025, 1, 1, 6, 0)

    def now(self) -> datetime:
        return self._current

    def set(self, current: datetime) -> None:
        self._current = current

    def advance(self, minutes: int = 0, seconds: int = 0) -> datetime:
        self._current = self._current + timedelta(minutes=minutes, seconds=seconds)
        return self._current
