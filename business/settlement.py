"""结算引擎：纯金额计算。

把一次服务的金额拆分为员工提成、店铺所得与支付手续费。
所有金额使用 ``Decimal``，按"四舍五入到分"（ROUND_HALF_UP）取整。

单人结算::

    commission_gross  = value_total * commission_percentage / 100
    fee_amount        = value_total * fee_percentage / 100
    commission_worker = commission_gross - fee_amount   # 手续费由员工承担
    commission_house  = value_total - commission_gross

恒等式 ``commission_worker + commission_house + fee_amount == value_total``
对每一种结算方式都成立（赠送时三者全为 0）。

本模块不访问数据库，billing / packages 服务负责持久化。
"""
from dataclasses import dataclass, field, replace
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP, InvalidOperation
from enum import Enum
from typing import Any, List, Optional, Sequence

from config.settings import settings

from .errors import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")

# 保留的支付方式代码，手续费恒为 0
CREDIT_METHOD = "credit"
PROMOTIONAL_METHOD = "promotional"
RESERVED_METHODS = frozenset({CREDIT_METHOD, PROMOTIONAL_METHOD})


class Disposition(str, Enum):
    """结算方式。"""
    PAYMENT = "payment"          # 当场付款
    CREDIT = "credit"            # 赊账（fiado）
    PROMOTIONAL = "promotional"  # 赠送 / 置换（troca/grátis）
    PACKAGE = "package"          # 消耗预付套餐

    @classmethod
    def parse(cls, value: Any) -> "Disposition":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValidationError(
                f"Invalid disposition: {value}, expected one of "
                f"{', '.join(d.value for d in cls)}"
            )


def to_decimal(value: Any, field_name: str = "value") -> Decimal:
    """把数值转换为 Decimal（经由 str，避免二进制浮点误差）。"""
    if isinstance(value, Decimal):
        return value
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field_name} must be a number")
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field_name} must be a number, got {value!r}")
    if not result.is_finite():
        raise ValidationError(f"{field_name} must be a finite number")
    return result


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def percentage_of(value: Decimal, percentage: Decimal) -> Decimal:
    return round_money(value * percentage / HUNDRED)


def resolve_commission_percentage(percentage: Optional[Any]) -> Decimal:
    """员工未设置提成比例时使用配置的默认值（50%）。"""
    if percentage is None:
        return to_decimal(settings.default_commission_percentage)
    result = to_decimal(percentage, "commission_percentage")
    if result < 0 or result > HUNDRED:
        raise ValidationError(
            f"commission_percentage must be between 0 and 100, got {result}"
        )
    return result


@dataclass(frozen=True)
class Settlement:
    """一条流水的金额拆分结果。"""
    value_total: Decimal
    commission_gross: Decimal
    fee_amount: Decimal
    commission_worker: Decimal
    commission_house: Decimal

    def as_dict(self) -> dict:
        return {
            "value_total": self.value_total,
            "commission_gross": self.commission_gross,
            "fee_amount": self.fee_amount,
            "commission_worker": self.commission_worker,
            "commission_house": self.commission_house,
        }


def settle_single(value_total: Any, commission_percentage: Any,
                  fee_percentage: Any = ZERO) -> Settlement:
    """单人结算。

    Args:
        value_total: 服务总金额（允许为负，用于退款冲销）。
        commission_percentage: 员工提成比例，None 时使用默认值。
        fee_percentage: 支付方式手续费率。

    Returns:
        Settlement。
    """
    value = round_money(to_decimal(value_total, "value_total"))
    percentage = resolve_commission_percentage(commission_percentage)
    fee_pct = to_decimal(fee_percentage, "fee_percentage")

    gross = percentage_of(value, percentage)
    fee = percentage_of(value, fee_pct)
    return Settlement(
        value_total=value,
        commission_gross=gross,
        fee_amount=fee,
        commission_worker=gross - fee,
        commission_house=value - gross,
    )


def settle_promotional() -> Settlement:
    """赠送 / 置换：所有金额字段为 0。"""
    return Settlement(ZERO, ZERO, ZERO, ZERO, ZERO)


def settle_refund(refund_value: Any, commission_percentage: Any) -> Settlement:
    """套餐退款冲销：按卖出员工的比例反向冲销提成，无手续费，金额为负。"""
    refund = round_money(to_decimal(refund_value, "refund_value"))
    return settle_single(-refund, commission_percentage, ZERO)


# ------------------------------------------------------------
# 多人共享服务
# ------------------------------------------------------------

@dataclass(frozen=True)
class ShareInput:
    """一位员工在共享服务中的份额。"""
    worker_id: int
    share_value: Decimal
    commission_percentage: Optional[Decimal] = None


@dataclass(frozen=True)
class ShareSettlement:
    worker_id: int
    share_value: Decimal
    commission_gross: Decimal
    fee_amount: Decimal
    commission_worker: Decimal


@dataclass(frozen=True)
class SharedSettlement:
    """共享服务结算结果。

    ``commission_worker`` 是所有份额员工净提成之和；
    未分配部分（value_total - Σshare）的手续费由店铺承担。
    """
    value_total: Decimal
    fee_amount: Decimal
    commission_worker: Decimal
    commission_house: Decimal
    shares: List[ShareSettlement] = field(default_factory=list)

    @property
    def undistributed(self) -> Decimal:
        return self.value_total - sum((s.share_value for s in self.shares), ZERO)


def validate_shares(value_total: Decimal, shares: Sequence[ShareInput]) -> None:
    """校验分账：至少两人、无负数、无重复员工、份额之和不超过总额。

    Raises:
        ValidationError: 任何一条不满足。
    """
    if len(shares) < 2:
        raise ValidationError("A shared service needs at least two workers")
    seen = set()
    total = ZERO
    for share in shares:
        if share.worker_id in seen:
            raise ValidationError(
                f"Worker {share.worker_id} appears more than once in the split"
            )
        seen.add(share.worker_id)
        if share.share_value < 0:
            raise ValidationError(
                f"Share of worker {share.worker_id} cannot be negative"
            )
        total += share.share_value
    if total > value_total:
        raise ValidationError(
            f"Sum of shares ({total}) exceeds value_total ({value_total})"
        )


def allocate_largest_remainder(raw_amounts: Sequence[Decimal],
                               target_total: Decimal) -> List[Decimal]:
    """把 raw_amounts 取整到分，且总和恰好等于 target_total。

    先全部向下取整，剩余的分按小数部分从大到小逐个补上；
    小数部分相同时按原顺序。
    """
    floors = [amount.quantize(CENT, rounding=ROUND_DOWN) for amount in raw_amounts]
    remaining = int(((target_total - sum(floors, ZERO)) / CENT).to_integral_value())
    order = sorted(
        range(len(raw_amounts)),
        key=lambda i: (-(raw_amounts[i] - floors[i]), i)
    )
    step = CENT if remaining >= 0 else -CENT
    for i in order[:abs(remaining)]:
        floors[i] += step
    return floors


def settle_shared(value_total: Any, shares: Sequence[ShareInput],
                  fee_percentage: Any = ZERO) -> SharedSettlement:
    """多人共享服务结算。

    每位员工按自己的比例、针对自己的份额计算毛提成；
    份额手续费按最大余数法分配到分，使其总和等于
    ``round(Σshare × fee%)``。流水级手续费为 ``round(value_total × fee%)``。
    """
    value = to_decimal(value_total, "value_total")
    fee_pct = to_decimal(fee_percentage, "fee_percentage")
    normalized = [
        ShareInput(
            worker_id=s.worker_id,
            share_value=to_decimal(s.share_value, "share_value"),
            commission_percentage=s.commission_percentage,
        )
        for s in shares
    ]
    # 校验使用原始值，不足一分的金额直接拒绝
    validate_shares(value, normalized)
    for amount in [value] + [s.share_value for s in normalized]:
        if amount != round_money(amount):
            raise ValidationError(
                f"Amount {amount} has fractions of a cent"
            )
    value = round_money(value)
    normalized = [replace(s, share_value=round_money(s.share_value)) for s in normalized]

    distributed = sum((s.share_value for s in normalized), ZERO)
    raw_fees = [s.share_value * fee_pct / HUNDRED for s in normalized]
    share_fees = allocate_largest_remainder(
        raw_fees, percentage_of(distributed, fee_pct)
    )

    results = []
    for share, fee in zip(normalized, share_fees):
        gross = percentage_of(
            share.share_value,
            resolve_commission_percentage(share.commission_percentage)
        )
        results.append(ShareSettlement(
            worker_id=share.worker_id,
            share_value=share.share_value,
            commission_gross=gross,
            fee_amount=fee,
            commission_worker=gross - fee,
        ))

    entry_fee = percentage_of(value, fee_pct)
    worker_total = sum((r.commission_worker for r in results), ZERO)
    return SharedSettlement(
        value_total=value,
        fee_amount=entry_fee,
        commission_worker=worker_total,
        commission_house=value - worker_total - entry_fee,
        shares=results,
    )


# ------------------------------------------------------------
# 套餐
# ------------------------------------------------------------

def value_per_session(value_total: Any, total_sessions: int) -> Decimal:
    if total_sessions <= 0:
        raise ValidationError("total_sessions must be positive")
    return round_money(to_decimal(value_total, "value_total") / Decimal(total_sessions))


def refund_ceiling(total_sessions: int, used_sessions: int,
                   per_session: Any) -> Decimal:
    """退款上限 = 剩余次数 × 每次价值。"""
    remaining = max(total_sessions - used_sessions, 0)
    return round_money(Decimal(remaining) * to_decimal(per_session))
