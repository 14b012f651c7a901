from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import pytest

from pharma_ledger.medicines import MedicineService
from pharma_ledger.models import (
    Customer,
    Medicine,
    MedicineCategory,
    ModifiedOrderLine,
    OrderItem,
    OrderLineRequest,
    OrderStatus,
    PlaceOrderRequest,
    UpdateOrderStatusRequest,
)
from pharma_ledger.onboarding import OnboardingService
from pharma_ledger.orders import OrderService
from pharma_ledger.otp import OTPService
from pharma_ledger.payments import PaymentService
from pharma_ledger.service import LedgerService, new_id
from pharma_ledger.storage import CUSTOMERS, MEDICINES, InMemoryStorage, to_document


ADMIN_ID = "admin-0001"


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(clock):
    return LedgerService(InMemoryStorage(), clock=clock)


@pytest.fixture
def payments(ledger):
    return PaymentService(ledger)


@pytest.fixture
def medicines(ledger):
    return MedicineService(ledger)


@pytest.fixture
def orders(ledger, medicines):
    return OrderService(ledger, medicines)


@pytest.fixture
def otp(ledger, clock):
    return OTPService(ledger.storage, ttl_seconds=300, clock=clock)


@pytest.fixture
def onboarding(ledger, otp):
    return OnboardingService(ledger, otp)


def add_customer(ledger: LedgerService, due: str = "0", with_wallet: bool = True,
                 phone: str = "9876543210", email: Optional[str] = None) -> Customer:
    customer_id = new_id()
    customer = Customer(
        id=customer_id,
        name="Asha Medicals",
        email=email or f"{customer_id}@example.com",
        phone=phone,
        type="Retailer",
        username=f"ASHA{customer_id[:6]}",
        password_hash="not-a-real-hash",
        due_amount=Decimal(due),
        created_at=ledger.clock(),
    )
    ledger.storage.insert(CUSTOMERS, to_document(customer))
    if with_wallet:
        ledger.create_wallet(customer.id, opening_due=Decimal(due))
    return customer


def item(medicine_id: str = "med-paracetamol", name: str = "Paracetamol 500mg",
         quantity: int = 3, price: str = "100") -> OrderItem:
    return OrderItem(medicine_id=medicine_id, name=name, quantity=quantity, price=Decimal(price))


def stock(ledger: LedgerService, medicine_id: str = "med-paracetamol", name: str = "Paracetamol 500mg",
          price: str = "100", category: MedicineCategory = MedicineCategory.ETHICAL,
          company: str = "Sun Pharma") -> Medicine:
    """Put a medicine in the catalog under a fixed id, replacing any earlier listing."""
    medicine = Medicine(
        id=medicine_id,
        name=name,
        description=f"{name} strip",
        company=company,
        mrp=Decimal(price) * 2,
        cost=Decimal(price),
        price=Decimal(price),
        category=category,
        type="Tablet",
        packing="10x10",
        image_url=f"https://cdn.example.com/medicines/{medicine_id}.jpg",
        created_at=ledger.clock(),
    )
    if ledger.storage.get(MEDICINES, medicine_id):
        ledger.storage.replace(MEDICINES, to_document(medicine))
    else:
        ledger.storage.insert(MEDICINES, to_document(medicine))
    return medicine


def place(orders: OrderService, customer_id: str, *items: OrderItem):
    """Stock each item's medicine at the item's price, then order it by id and quantity."""
    lines = []
    for entry in items or [item()]:
        stock(orders.ledger, entry.medicine_id, entry.name, str(entry.price))
        lines.append(OrderLineRequest(medicine_id=entry.medicine_id, quantity=entry.quantity))
    return orders.place_order(customer_id, PlaceOrderRequest(items=lines))


def line(medicine_id: str = "med-paracetamol", quantity: int = 3, price: Optional[str] = None) -> ModifiedOrderLine:
    return ModifiedOrderLine(
        medicine_id=medicine_id,
        quantity=quantity,
        price=Decimal(price) if price is not None else None,
    )


def advance(orders: OrderService, order_id: str, *statuses: OrderStatus):
    order = None
    for status in statuses:
        order = orders.update_status(order_id, UpdateOrderStatusRequest(
            status=status,
            delivery_slip_url="https://cdn.example.com/slips/1.jpg" if status == OrderStatus.DELIVERED else None,
        ))
    return order


def deliver(orders: OrderService, order_id: str):
    return advance(orders, order_id, OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED)
