"""
Customer Financial Ledger for a Pharma Distributor

This module provides:
- Per-customer wallet holding the due balance and refundable credit
- Payment reconciliation: online proof review, offline cash, re-upload
- Medicine catalog that prices orders at checkout
- Order checkout, status transitions and return reconciliation
- Admin sales analytics
- Balance queries with fallback for customers created before wallets
- Connection-request onboarding and OTP-verified customer deletion
"""

from .errors import (
    AuthorizationError,
    DuplicateKeyError,
    InvalidStateTransitionError,
    LedgerServiceError,
    NotFoundError,
    ValidationError,
)
from .models import (
    DashboardAnalytics,
    HistoryType,
    Medicine,
    MedicineCategory,
    Order,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Wallet,
)
from .medicines import MedicineService
from .onboarding import OnboardingService
from .orders import OrderService
from .otp import OTPService
from .payments import PaymentService
from .service import LedgerService
from .storage import InMemoryStorage, MongoStorage

__all__ = [
    "AuthorizationError",
    "DuplicateKeyError",
    "InvalidStateTransitionError",
    "LedgerServiceError",
    "NotFoundError",
    "ValidationError",
    "DashboardAnalytics",
    "HistoryType",
    "Medicine",
    "MedicineCategory",
    "Order",
    "OrderStatus",
    "Payment",
    "PaymentMethod",
    "PaymentStatus",
    "Wallet",
    "MedicineService",
    "OnboardingService",
    "OrderService",
    "OTPService",
    "PaymentService",
    "LedgerService",
    "InMemoryStorage",
    "MongoStorage",
]
