"""业务异常定义。

所有异常都在任何写操作之前抛出（ValidationError / StateError / CapacityError），
或在工作单元回滚之后抛出（PersistenceError），因此调用方永远不会看到
部分写入的结果。
"""


class AgendaError(Exception):
    """所有业务异常的基类。"""


class ValidationError(AgendaError, ValueError):
    """输入格式错误：缺少必填字段、时间格式无法解析、分账不合法等。"""


class NotFoundError(ValidationError):
    """引用的记录不存在。"""


class StateError(AgendaError):
    """非法的状态迁移，例如从终态迁出或未提供结算方式。"""


class CapacityError(AgendaError):
    """套餐次数已用完，或退款金额超过上限。"""


class PersistenceError(AgendaError):
    """存储写入失败，同一工作单元内的其他写入已回滚。"""
