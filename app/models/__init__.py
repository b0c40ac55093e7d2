from app.models.enums import (
    DeliveryStatus,
    EscrowStatus,
    OrderStatus,
    PaymentStatus,
    PayoutStatus,
    RiderApproval,
    RiderStatus,
    Severity,
    WalletOwner,
    WalletTxnType,
    WithdrawalStatus,
)
from app.models.merchant import Merchant, Product
from app.models.order import Order, OrderItem
from app.models.escrow import Escrow, Payout
from app.models.rider import Rider
from app.models.delivery import Delivery, DeliveryEvent, DeliveryFeeTransaction
from app.models.wallet import Wallet, WalletTransaction, Withdrawal
from app.models.invoice import Invoice
from app.models.sequence_counter import SequenceCounter
from app.models.platform_event import PlatformEvent
from app.models.job_run import JobRun
from app.models.webhook_event import WebhookEvent
from app.models.notification import Notification
from app.models.reconciliation_report import ReconciliationReport
from app.models.idempotency_key import IdempotencyKey

__all__ = [
    "DeliveryStatus",
    "EscrowStatus",
    "OrderStatus",
    "PaymentStatus",
    "PayoutStatus",
    "RiderApproval",
    "RiderStatus",
    "Severity",
    "WalletOwner",
    "WalletTxnType",
    "WithdrawalStatus",
    "Merchant",
    "Product",
    "Order",
    "OrderItem",
    "Escrow",
    "Payout",
    "Rider",
    "Delivery",
    "DeliveryEvent",
    "DeliveryFeeTransaction",
    "Wallet",
    "WalletTransaction",
    "Withdrawal",
    "Invoice",
    "SequenceCounter",
    "PlatformEvent",
    "JobRun",
    "WebhookEvent",
    "Notification",
    "ReconciliationReport",
    "IdempotencyKey",
]
