from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Optional
from pydantic import (
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    PlainSerializer,
    SerializationInfo,
    model_validator,
)
from pydantic.alias_generators import to_camel


PHONE_PATTERN = r"^[6-9]\d{9}$"
ZERO = Decimal("0")
# Serialization context used when writing documents to storage.
EXACT = {"exact": True}


def _serialize_money(value: Decimal, info: SerializationInfo):
    # Stored documents keep the exact decimal string; API responses carry JSON numbers.
    if info.context and info.context.get("exact"):
        return str(value)
    return float(value)


Money = Annotated[Decimal, PlainSerializer(_serialize_money, when_used="json")]


class CamelModel(BaseModel):
    """camelCase on the wire, snake_case in Python and in stored documents."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Role(str, Enum):
    ADMIN = "admin"
    CUSTOMER = "customer"


class PerformerModel(str, Enum):
    ADMIN = "Admin"
    CUSTOMER = "Customer"


class AccountStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class HistoryType(str, Enum):
    RETURN_ADJUSTMENT = "return_adjustment"
    PAYMENT = "payment"
    ORDER_USAGE = "order_usage"


class PaymentMethod(str, Enum):
    ONLINE = "ONLINE"
    CASH = "CASH"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class OrderPaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


class MedicineCategory(str, Enum):
    ETHICAL = "Ethical"
    PCD = "PCD"
    GENERIC = "Generic"
    OTHER = "Other"


# Each target status may only be reached from the listed one.
ORDER_TRANSITIONS = {
    OrderStatus.PROCESSING: OrderStatus.PENDING,
    OrderStatus.SHIPPED: OrderStatus.PROCESSING,
    OrderStatus.DELIVERED: OrderStatus.SHIPPED,
    OrderStatus.CANCELLED: OrderStatus.PENDING,
}

FINAL_ORDER_STATUSES = (OrderStatus.DELIVERED, OrderStatus.CANCELLED)
RETURNABLE_ORDER_STATUSES = (OrderStatus.SHIPPED, OrderStatus.DELIVERED)


# ----------------------- Entities -----------------------

class Address(CamelModel):
    shop_name: Optional[str] = None
    line1: Optional[str] = None
    line2: Optional[str] = None
    area: Optional[str] = None
    city: str
    district: Optional[str] = None
    state: str
    pincode: str
    landmark: Optional[str] = None


class Customer(CamelModel):
    id: str
    name: str
    email: EmailStr
    phone: str = Field(..., pattern=PHONE_PATTERN)
    address: Optional[Address] = None
    type: str
    username: str
    password_hash: str
    status: AccountStatus = AccountStatus.APPROVED
    # Mirror of Wallet.pending_balance, kept for readers that predate wallets.
    due_amount: Money = ZERO
    terms_accepted_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class WalletHistoryEntry(CamelModel):
    type: HistoryType
    amount: Money
    reference: Optional[str] = None
    balance_after: Money
    created_at: datetime


class Wallet(CamelModel):
    id: str
    customer_id: str
    total_due: Money = ZERO
    total_paid: Money = ZERO
    pending_balance: Money = ZERO
    wallet_balance: Money = ZERO
    wallet_history: list[WalletHistoryEntry] = Field(default_factory=list)
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def entries_for(self, reference: str, entry_type: Optional[HistoryType] = None) -> list[WalletHistoryEntry]:
        return [
            e for e in self.wallet_history
            if e.reference == reference and (entry_type is None or e.type == entry_type)
        ]


class AuditLog(CamelModel):
    action: str
    performed_by: Optional[str] = None
    performer_model: PerformerModel
    timestamp: datetime
    details: Optional[str] = None


class Payment(CamelModel):
    id: str
    customer_id: str
    amount: Money = Field(..., ge=1)
    original_due_amount: Optional[Money] = None
    remaining_due_amount: Optional[Money] = None
    payment_date: datetime
    payment_method: PaymentMethod = PaymentMethod.ONLINE
    transaction_id: Optional[str] = None
    proof_url: Optional[str] = None
    status: PaymentStatus = PaymentStatus.PENDING
    rejection_reason: Optional[str] = None
    can_reupload: bool = False
    admin_comment: Optional[str] = None
    audit_logs: list[AuditLog] = Field(default_factory=list)
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @model_validator(mode="after")
    def _online_needs_proof(self):
        if self.payment_method == PaymentMethod.ONLINE and not self.proof_url:
            raise ValueError("Payment proof is required for online payments")
        return self

    def can_review(self) -> bool:
        return self.status == PaymentStatus.PENDING

    def can_reupload_proof(self) -> bool:
        return self.status == PaymentStatus.REJECTED and self.can_reupload


class Medicine(CamelModel):
    id: str
    name: str
    description: str
    company: str
    mrp: Money = Field(..., ge=0)
    cost: Money = Field(..., ge=0)
    # Selling price; follows cost.
    price: Money = Field(..., ge=0)
    category: MedicineCategory
    type: str
    packing: str
    image_url: str
    quantity: int = 0
    expiry_date: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class OrderItem(CamelModel):
    medicine_id: str
    name: str
    quantity: int = Field(..., ge=1)
    price: Money = Field(..., ge=0)
    image: Optional[str] = None

    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity


class StatusHistoryEntry(CamelModel):
    status: OrderStatus
    timestamp: datetime


class FinancialAdjustment(CamelModel):
    pending_reduced: Money = ZERO
    wallet_credited: Money = ZERO

    @property
    def total(self) -> Decimal:
        return self.pending_reduced + self.wallet_credited


class ReturnEntry(CamelModel):
    medicine_id: str
    name: str
    quantity: int
    price: Money
    reason: str = "No reason provided"
    financial_adjustment: FinancialAdjustment = Field(default_factory=FinancialAdjustment)
    created_at: datetime


class Order(CamelModel):
    id: str
    customer_id: str
    items: list[OrderItem]
    total_price: Money
    wallet_amount_used: Money = ZERO
    status: OrderStatus = OrderStatus.PENDING
    cancellation_reason: Optional[str] = None
    delivery_slip_url: Optional[str] = None
    status_history: list[StatusHistoryEntry] = Field(default_factory=list)
    original_items: Optional[list[OrderItem]] = None
    original_total_price: Optional[Money] = None
    is_admin_modified: bool = False
    payment_status: OrderPaymentStatus = OrderPaymentStatus.PENDING
    returns: list[ReturnEntry] = Field(default_factory=list)
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def find_item(self, medicine_id: Optional[str] = None, name: Optional[str] = None) -> Optional[OrderItem]:
        for item in self.items:
            if medicine_id is not None and item.medicine_id == medicine_id:
                return item
            if medicine_id is None and item.name == name:
                return item
        return None

    def ordered_quantity(self, medicine_id: str) -> int:
        return sum(item.quantity for item in self.items if item.medicine_id == medicine_id)

    def returned_quantity(self, medicine_id: str) -> int:
        return sum(r.quantity for r in self.returns if r.medicine_id == medicine_id)

    def returned_quantities(self) -> dict[str, int]:
        quantities: dict[str, int] = {}
        for r in self.returns:
            quantities[r.medicine_id] = quantities.get(r.medicine_id, 0) + r.quantity
        return quantities

    def can_transition_to(self, status: OrderStatus) -> bool:
        if self.status in FINAL_ORDER_STATUSES:
            return False
        return ORDER_TRANSITIONS.get(status) == self.status

    def can_return(self) -> bool:
        return self.status in RETURNABLE_ORDER_STATUSES


class ConnectionRequest(CamelModel):
    id: str
    name: str
    email: EmailStr
    phone: str = Field(..., pattern=PHONE_PATTERN)
    address: Optional[Address] = None
    type: str
    status: AccountStatus = AccountStatus.PENDING
    rejection_reason: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class OTPRecord(CamelModel):
    id: str
    identifier: str
    code_hash: str
    expires_at: datetime
    created_at: datetime


# ----------------------- Requests -----------------------

class SubmitPaymentRequest(CamelModel):
    amount: Money = Field(..., ge=1, description="Amount paid against the due balance")
    proof_url: Optional[str] = Field(default=None, description="Uploaded payment screenshot")
    transaction_id: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "amount": 500.00,
            "proof_url": "https://res.cloudinary.com/demo/payment_proofs/upi-1234.png",
            "transaction_id": "UPI4512339876",
        }
    })


class OfflinePaymentRequest(CamelModel):
    customer_id: str
    amount: Money = Field(..., ge=1)
    admin_comment: Optional[str] = None


class RejectPaymentRequest(CamelModel):
    reason: str = Field(..., min_length=1, description="Reason shown to the customer")
    can_reupload: bool = True


class ReuploadProofRequest(CamelModel):
    proof_url: str = Field(..., min_length=1)
    transaction_id: Optional[str] = None


class MedicineCreate(CamelModel):
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    company: str = Field(..., min_length=1)
    mrp: Money = Field(..., gt=0)
    cost: Money = Field(..., gt=0)
    category: MedicineCategory
    type: str = Field(..., min_length=1)
    packing: str = Field(..., min_length=1)
    image_url: str = Field(..., min_length=1, description="Uploaded product image")
    quantity: int = Field(default=0, ge=0)
    expiry_date: Optional[datetime] = None


class MedicineUpdate(CamelModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    company: Optional[str] = None
    mrp: Optional[Money] = Field(default=None, ge=0)
    cost: Optional[Money] = Field(default=None, ge=0)
    category: Optional[MedicineCategory] = None
    type: Optional[str] = None
    packing: Optional[str] = None
    image_url: Optional[str] = None
    quantity: Optional[int] = Field(default=None, ge=0)
    expiry_date: Optional[datetime] = None


class OrderLineRequest(CamelModel):
    medicine_id: str
    quantity: int = Field(..., ge=1)


class ModifiedOrderLine(OrderLineRequest):
    # Admin may agree a different unit price when editing an order.
    price: Optional[Money] = Field(default=None, ge=0)


class PlaceOrderRequest(CamelModel):
    items: list[OrderLineRequest] = Field(..., min_length=1)

    model_config = ConfigDict(json_schema_extra={
        "example": {"items": [{"medicineId": "6f1c2a9e4b7d4c0e8a1f3b5d7e9c1a2b", "quantity": 10}]}
    })


class UpdateOrderStatusRequest(CamelModel):
    status: OrderStatus
    cancellation_reason: Optional[str] = None
    modified_items: Optional[list[ModifiedOrderLine]] = None
    delivery_slip_url: Optional[str] = None


class ReturnItemRequest(CamelModel):
    medicine_id: Optional[str] = None
    name: Optional[str] = None
    quantity: int = Field(..., ge=1)
    reason: Optional[str] = None

    @model_validator(mode="after")
    def _needs_line_reference(self):
        if not self.medicine_id and not self.name:
            raise ValueError("Either medicine_id or name is required")
        return self


class ProcessReturnRequest(CamelModel):
    returned_items: list[ReturnItemRequest] = Field(..., min_length=1)


class ConnectionRequestCreate(CamelModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    phone: str = Field(..., pattern=PHONE_PATTERN)
    address: Optional[Address] = None
    type: str = Field(..., min_length=1)


class ReviewConnectionRequest(CamelModel):
    status: AccountStatus
    rejection_reason: Optional[str] = None


class AddCustomerRequest(CamelModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    phone: str = Field(..., pattern=PHONE_PATTERN)
    address: Optional[Address] = None
    type: str = Field(..., min_length=1)


class VerifyOTPRequest(CamelModel):
    otp: str = Field(..., pattern=r"^\d{6}$")


class ForgotPasswordRequest(CamelModel):
    email: EmailStr


class ResetPasswordRequest(CamelModel):
    email: EmailStr
    otp: str = Field(..., pattern=r"^\d{6}$")
    new_password: str


# ----------------------- Responses -----------------------

class BalanceResponse(CamelModel):
    customer_id: str
    pending_balance: Money
    wallet_balance: Money


class WalletHistoryResponse(CamelModel):
    customer_id: str
    entries: list[WalletHistoryEntry]
    total_count: int
    pending_balance: Money
    wallet_balance: Money


class PaymentResponse(CamelModel):
    payment: Payment
    balance: Optional[BalanceResponse] = None
    message: str


class OrderView(Order):
    returned_quantities: dict[str, int] = Field(default_factory=dict)

    @classmethod
    def of(cls, order: Order) -> "OrderView":
        return cls(**order.model_dump(), returned_quantities=order.returned_quantities())


class ReturnResponse(CamelModel):
    success: bool = True
    message: str
    financial_adjustment: FinancialAdjustment
    order: OrderView
    balance: BalanceResponse


class CustomerView(CamelModel):
    id: str
    name: str
    email: EmailStr
    phone: str
    type: str
    username: str
    status: AccountStatus
    pending_balance: Money
    wallet_balance: Money
    created_at: datetime


class OnboardingResponse(CamelModel):
    request: Optional[ConnectionRequest] = None
    customer: Optional[CustomerView] = None
    username: Optional[str] = None
    initial_password: Optional[str] = None
    message: str


class OTPIssuedResponse(CamelModel):
    message: str
    customer_name: str
    expires_at: datetime
    otp: Optional[str] = None


class FastMovingMedicine(Medicine):
    unique_customers: int


class SalesTrendPoint(CamelModel):
    date: str
    revenue: Money
    orders: int


class TopCustomer(CamelModel):
    name: str
    spend: Money


class BestSellingProduct(CamelModel):
    name: str
    quantity: int


class CategorySales(CamelModel):
    name: str
    value: Money


class DashboardAnalytics(CamelModel):
    total_revenue: Money
    total_orders: int
    sales_trends: list[SalesTrendPoint]
    top_customers: list[TopCustomer]
    best_selling_products: list[BestSellingProduct]
    sales_by_category: list[CategorySales]
