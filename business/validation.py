"""请求数据校验工具。

服务层接收的都是普通字典（来自 API 或脚本），在任何写入之前
用这里的函数取值并校验，失败统一抛出 ValidationError。
"""
from typing import Any, Dict, List, Optional

from .errors import ValidationError


def require(data: Dict[str, Any], key: str) -> Any:
    value = data.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{key} is required")
    return value


def to_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be an integer")
    try:
        result = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be an integer, got {value!r}")
    if isinstance(value, float) and value != result:
        raise ValidationError(f"{field_name} must be an integer, got {value!r}")
    return result


def optional_int(data: Dict[str, Any], key: str) -> Optional[int]:
    value = data.get(key)
    if value is None or value == "":
        return None
    return to_int(value, key)


def int_list(value: Any, field_name: str) -> List[int]:
    if not isinstance(value, (list, tuple)):
        raise ValidationError(f"{field_name} must be a list")
    return [to_int(v, field_name) for v in value]
