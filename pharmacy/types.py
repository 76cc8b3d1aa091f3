"""
Service 层使用的标准输入结构。

View 层把请求体交给 intake.py 解析成这些 dataclass，
service 层只消费这些结构，永远不碰原始请求数据。
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional
from uuid import UUID


@dataclass(frozen=True)
class FillLine:
    item_id: UUID
    quantity_filled: int


@dataclass(frozen=True)
class RefillQuantity:
    item_id: UUID
    quantity: Optional[int] = None       # None → 恢复为原处方数量


@dataclass
class ItemInput:
    medication_name: str
    quantity: int
    dosage: str = ''
    price: Optional[Decimal] = None
    notes: str = ''
    id: Optional[UUID] = None            # 有 id → 更新；没有 → 新建


@dataclass
class UploadedFile:
    content: bytes
    content_type: str
    filename: str = ''


@dataclass
class PrescriptionSubmission:
    patient_id: Optional[int] = None     # doctor 提交时必填
    items: list[ItemInput] = field(default_factory=list)
    refill_limit: int = 0
    notes: str = ''
    file: Optional[UploadedFile] = field(default=None, repr=False)


@dataclass(frozen=True)
class OrderTotals:
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal

    @property
    def total(self) -> Decimal:
        return self.subtotal + self.tax + self.shipping
