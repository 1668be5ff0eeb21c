"""
Кошелёк курьера и выплаты.

Баланс считается backend по заказам, которые ещё не попали в выплату.
Выплату можно запросить пачкой из PAYOUT_BATCH_ORDERS самых старых заказов.
"""
import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

PAYOUT_BATCH_ORDERS = 20


def _amount(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


class PayoutStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    REJECTED = "rejected"

    @classmethod
    def parse(cls, raw: Any) -> "PayoutStatus":
        """Всё, что не pending и не paid, backend считает отклонённой заявкой."""
        value = str(raw or "").strip().lower()
        try:
            return cls(value)
        except ValueError:
            return cls.REJECTED


@dataclass(frozen=True, slots=True)
class WalletTransaction:
    amount: float
    description: str = ""
    created_at: Optional[str] = None

    @property
    def is_debit(self) -> bool:
        return self.amount < 0

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "WalletTransaction":
        return cls(
            amount=_amount(raw.get("amount")),
            description=str(raw.get("description") or ""),
            created_at=raw.get("created_at"),
        )


@dataclass(frozen=True, slots=True)
class Wallet:
    available_balance: float = 0.0
    unpaid_orders: int = 0
    transactions: Tuple[WalletTransaction, ...] = field(default_factory=tuple)

    @property
    def can_request_payout(self) -> bool:
        return self.unpaid_orders >= PAYOUT_BATCH_ORDERS

    @property
    def orders_to_unlock(self) -> int:
        return max(0, PAYOUT_BATCH_ORDERS - self.unpaid_orders)

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "Wallet":
        transactions = raw.get("recent_transactions") or []
        return cls(
            available_balance=_amount(raw.get("available_balance")),
            unpaid_orders=int(raw.get("unpaid_orders_count") or 0),
            transactions=tuple(
                WalletTransaction.from_api(item) for item in transactions if isinstance(item, dict)
            ),
        )


@dataclass(frozen=True, slots=True)
class Payout:
    """Заявка на выплату из истории."""
    id: str
    amount: float
    status: PayoutStatus
    orders_count: int = 0
    created_at: Optional[str] = None
    processed_at: Optional[str] = None
    admin_note: Optional[str] = None

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "Payout":
        return cls(
            id=str(raw["id"]),
            amount=_amount(raw.get("amount")),
            status=PayoutStatus.parse(raw.get("status")),
            orders_count=int(raw.get("orders_count") or 0),
            created_at=raw.get("created_at"),
            processed_at=raw.get("processed_at"),
            admin_note=(raw.get("admin_note") or "").strip() or None,
        )
