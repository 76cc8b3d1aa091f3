"""
订单金额计算。

- subtotal: 由 settings.PRESCRIPTION_PRICE_MODE 决定 item.price 的含义
    line_total → price 已经是整行金额（默认，与历史数据一致）
    unit       → price 是单价，行金额 = price × quantity
- tax:      PaymentConfig.tax_type
    inclusive → 价格已含税，额外税额 0
    exclusive → subtotal × tax_rate%
- shipping: settings.SHIPPING_RATE_PROVIDER 选择的运费查询实现

新增运费来源只需：
  1. 新建一个 XxxShippingRate(BaseShippingRate) 类
  2. 在 _REGISTRY 加一行
"""
import random
import string
import time
from abc import ABC, abstractmethod
from decimal import ROUND_HALF_UP, Decimal

from django.conf import settings

from .models import PaymentConfig
from .types import OrderTotals

CENT = Decimal('0.01')


def _money(value) -> Decimal:
    return Decimal(value or 0).quantize(CENT, rounding=ROUND_HALF_UP)


# ── 运费查询 ─────────────────────────────────────────────────────────────────

class BaseShippingRate(ABC):

    @abstractmethod
    def rate_for(self, config) -> Decimal:
        """返回这单的运费。config 为当前 PaymentConfig（可能为 None）。"""


class PaymentConfigShippingRate(BaseShippingRate):
    """使用 payment_config 表里配置的统一配送费。"""

    def rate_for(self, config) -> Decimal:
        return _money(config.delivery_cost if config is not None else 0)


class FlatShippingRate(BaseShippingRate):
    """使用 settings.FLAT_SHIPPING_RATE。"""

    def rate_for(self, config) -> Decimal:
        return _money(settings.FLAT_SHIPPING_RATE)


_REGISTRY: dict[str, type[BaseShippingRate]] = {
    'payment_config': PaymentConfigShippingRate,
    'flat': FlatShippingRate,
}


def get_shipping_rate() -> BaseShippingRate:
    """
    从 settings.SHIPPING_RATE_PROVIDER 读取实现，返回实例。

    Raises:
        ValueError: SHIPPING_RATE_PROVIDER 未知
    """
    provider = getattr(settings, 'SHIPPING_RATE_PROVIDER', 'payment_config')
    rate_cls = _REGISTRY.get(provider)

    if rate_cls is None:
        raise ValueError(
            f"Unknown SHIPPING_RATE_PROVIDER: {provider!r}. "
            f"Known providers: {list(_REGISTRY.keys())}"
        )

    return rate_cls()


# ── 金额 ─────────────────────────────────────────────────────────────────────

def billed_quantity(item) -> int:
    """本轮已发数量；还没发过药时按未发数量计。"""
    return item.quantity_filled or item.quantity


def line_total(item) -> Decimal:
    mode = getattr(settings, 'PRESCRIPTION_PRICE_MODE', 'line_total')
    if mode == 'unit':
        return _money(Decimal(item.price) * billed_quantity(item))
    if mode == 'line_total':
        return _money(item.price)
    raise ValueError(f'Unknown PRESCRIPTION_PRICE_MODE: {mode!r}')


def compute_tax(subtotal: Decimal, config) -> Decimal:
    if config is None or config.tax_type == 'inclusive':
        return _money(0)
    if config.tax_type == 'exclusive':
        return _money(subtotal * Decimal(config.tax_rate) / Decimal(100))
    raise ValueError(f'Unknown tax_type: {config.tax_type!r}')


def current_payment_config():
    return PaymentConfig.objects.order_by('-updated_at').first()


def compute_totals(items, config=None) -> OrderTotals:
    subtotal = _money(sum((line_total(item) for item in items), Decimal(0)))
    return OrderTotals(
        subtotal=subtotal,
        tax=compute_tax(subtotal, config),
        shipping=get_shipping_rate().rate_for(config),
    )


def generate_order_number() -> str:
    """RX- + 时间戳后 6 位 + 6 位随机大写字母数字，例如 RX-482913K3ZQ8A。"""
    timestamp = str(int(time.time() * 1000))[-6:]
    suffix = ''.join(random.choices(string.ascii_uppercase + string.digits, k=6))
    return f'RX-{timestamp}{suffix}'
