import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional
from uuid import uuid4

from .errors import NotFoundError, ValidationError
from .models import (
    ZERO,
    BalanceResponse,
    Customer,
    HistoryType,
    Wallet,
    WalletHistoryEntry,
    WalletHistoryResponse,
)
from .storage import CUSTOMERS, WALLETS, InMemoryStorage, to_document

logger = logging.getLogger(__name__)


def new_id() -> str:
    return uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LedgerService:
    """Owns the per-customer Wallet, the authoritative due/credit ledger.

    ``Customer.due_amount`` is a mirror written on every wallet save and only
    read to seed a wallet for customers created before wallets existed.
    """

    def __init__(self, storage=None, clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage or InMemoryStorage()
        self.clock = clock or utcnow

    # ----------------------- Reads -----------------------

    def get_customer(self, customer_id: str) -> Customer:
        doc = self.storage.get(CUSTOMERS, customer_id)
        if not doc:
            raise NotFoundError(f"Customer {customer_id} not found")
        return Customer(**doc)

    def find_wallet(self, customer_id: str) -> Optional[Wallet]:
        doc = self.storage.find_one(WALLETS, customer_id=customer_id)
        return Wallet(**doc) if doc else None

    def get_balance(self, customer_id: str) -> BalanceResponse:
        wallet = self.find_wallet(customer_id)
        if wallet:
            return BalanceResponse(
                customer_id=customer_id,
                pending_balance=wallet.pending_balance,
                wallet_balance=wallet.wallet_balance,
            )
        customer = self.get_customer(customer_id)
        return BalanceResponse(customer_id=customer_id, pending_balance=customer.due_amount, wallet_balance=ZERO)

    def get_wallet_history(self, customer_id: str, limit: int = 50, offset: int = 0) -> WalletHistoryResponse:
        wallet = self.find_wallet(customer_id)
        balance = self.get_balance(customer_id)
        entries = list(reversed(wallet.wallet_history)) if wallet else []
        return WalletHistoryResponse(
            customer_id=customer_id,
            entries=entries[offset:offset + limit],
            total_count=len(entries),
            pending_balance=balance.pending_balance,
            wallet_balance=balance.wallet_balance,
        )

    def list_due_customers(self) -> list[tuple[Customer, BalanceResponse]]:
        due = []
        for doc in self.storage.find(CUSTOMERS):
            customer = Customer(**doc)
            balance = self.get_balance(customer.id)
            if balance.pending_balance > 0:
                due.append((customer, balance))
        due.sort(key=lambda pair: pair[1].pending_balance, reverse=True)
        return due

    # ----------------------- Wallet lifecycle -----------------------

    def create_wallet(self, customer_id: str, opening_due: Decimal = ZERO) -> Wallet:
        wallet = Wallet(
            id=new_id(),
            customer_id=customer_id,
            total_due=opening_due,
            pending_balance=opening_due,
            created_at=self.clock(),
        )
        self.storage.insert(WALLETS, to_document(wallet))
        return wallet

    def get_or_create_wallet(self, customer_id: str) -> Wallet:
        wallet = self.find_wallet(customer_id)
        if wallet:
            return wallet
        customer = self.get_customer(customer_id)
        logger.info("Seeding wallet for customer %s from legacy due amount %s", customer_id, customer.due_amount)
        return self.create_wallet(customer_id, opening_due=customer.due_amount)

    def save_wallet(self, wallet: Wallet) -> None:
        wallet.updated_at = self.clock()
        self.storage.replace(WALLETS, to_document(wallet))
        customer_doc = self.storage.get(CUSTOMERS, wallet.customer_id)
        if customer_doc:
            customer_doc["due_amount"] = str(wallet.pending_balance)
            self.storage.replace(CUSTOMERS, customer_doc)

    def delete_wallet(self, customer_id: str) -> None:
        wallet = self.find_wallet(customer_id)
        if wallet:
            self.storage.delete(WALLETS, wallet.id)

    # ----------------------- Balance mutations -----------------------
    # These mutate the in-memory Wallet only; callers persist with save_wallet().

    def _append(self, wallet: Wallet, entry_type: HistoryType, amount: Decimal,
                reference: str, balance_after: Decimal) -> WalletHistoryEntry:
        entry = WalletHistoryEntry(
            type=entry_type,
            amount=amount,
            reference=reference,
            balance_after=balance_after,
            created_at=self.clock(),
        )
        wallet.wallet_history.append(entry)
        return entry

    def apply_payment(self, wallet: Wallet, amount: Decimal, reference: str) -> WalletHistoryEntry:
        if amount > wallet.pending_balance:
            raise ValidationError(
                f"Entered amount (₹{amount}) exceeds the due balance (₹{wallet.pending_balance})"
            )
        wallet.total_paid += amount
        wallet.pending_balance -= amount
        return self._append(wallet, HistoryType.PAYMENT, amount, reference, wallet.pending_balance)

    def accrue_due(self, wallet: Wallet, amount: Decimal) -> None:
        wallet.total_due += amount
        wallet.pending_balance += amount

    def reduce_due(self, wallet: Wallet, amount: Decimal, reference: str) -> Decimal:
        reduced = min(amount, wallet.pending_balance)
        if reduced > 0:
            wallet.total_due -= reduced
            wallet.pending_balance -= reduced
            self._append(wallet, HistoryType.RETURN_ADJUSTMENT, reduced, reference, wallet.pending_balance)
        return reduced

    def credit_wallet(self, wallet: Wallet, amount: Decimal, reference: str) -> None:
        if amount <= 0:
            return
        wallet.wallet_balance += amount
        self._append(wallet, HistoryType.RETURN_ADJUSTMENT, amount, reference, wallet.wallet_balance)

    def use_wallet_credit(self, wallet: Wallet, amount: Decimal, reference: str) -> Decimal:
        used = min(amount, wallet.wallet_balance)
        if used <= 0:
            return ZERO
        wallet.wallet_balance -= used
        # Credit spent on an order settles that part of it, so it counts as both due and paid.
        wallet.total_due += used
        wallet.total_paid += used
        self._append(wallet, HistoryType.ORDER_USAGE, used, reference, wallet.wallet_balance)
        return used

    def restore_wallet_credit(self, wallet: Wallet, amount: Decimal, reference: str) -> None:
        if amount <= 0:
            return
        wallet.total_due -= amount
        wallet.total_paid -= amount
        wallet.wallet_balance += amount
        self._append(wallet, HistoryType.RETURN_ADJUSTMENT, amount, reference, wallet.wallet_balance)
