import logging
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from .errors import AuthorizationError, InvalidStateTransitionError, NotFoundError, ValidationError
from .medicines import MedicineService
from .models import (
    ZERO,
    BestSellingProduct,
    CategorySales,
    DashboardAnalytics,
    FinancialAdjustment,
    MedicineCategory,
    ModifiedOrderLine,
    Order,
    OrderItem,
    OrderLineRequest,
    OrderPaymentStatus,
    OrderStatus,
    OrderView,
    PlaceOrderRequest,
    ProcessReturnRequest,
    ReturnEntry,
    ReturnResponse,
    Role,
    SalesTrendPoint,
    StatusHistoryEntry,
    TopCustomer,
    UpdateOrderStatusRequest,
)
from .service import LedgerService, new_id
from .storage import CUSTOMERS, ORDERS, to_document

logger = logging.getLogger(__name__)

TREND_DAYS = 7
TOP_CUSTOMERS = 5
BEST_SELLERS = 5


def items_total(items: list[OrderItem]) -> Decimal:
    return sum((item.line_total for item in items), ZERO)


class OrderService:
    def __init__(self, ledger: LedgerService, catalog: Optional[MedicineService] = None):
        self.ledger = ledger
        self.storage = ledger.storage
        self.catalog = catalog or MedicineService(ledger)

    # ----------------------- Checkout -----------------------

    def _snapshot(self, line: OrderLineRequest, price: Optional[Decimal] = None) -> OrderItem:
        medicine = self.catalog.get_medicine(line.medicine_id)
        return OrderItem(
            medicine_id=medicine.id,
            name=medicine.name,
            quantity=line.quantity,
            price=medicine.price if price is None else price,
            image=medicine.image_url,
        )

    def place_order(self, customer_id: str, request: PlaceOrderRequest) -> Order:
        self.ledger.get_customer(customer_id)
        items = [self._snapshot(line) for line in request.items]

        now = self.ledger.clock()
        order = Order(
            id=new_id(),
            customer_id=customer_id,
            items=items,
            total_price=items_total(items),
            status_history=[StatusHistoryEntry(status=OrderStatus.PENDING, timestamp=now)],
            created_at=now,
        )

        # Wallet credit is spent at checkout; the due balance only grows on acceptance.
        wallet = self.ledger.find_wallet(customer_id)
        if wallet and wallet.wallet_balance > 0:
            order.wallet_amount_used = self.ledger.use_wallet_credit(wallet, order.total_price, reference=order.id)
            if order.wallet_amount_used == order.total_price:
                order.payment_status = OrderPaymentStatus.PAID

        self.storage.insert(ORDERS, to_document(order))
        if wallet:
            self.ledger.save_wallet(wallet)
        logger.info(
            "Order %s placed by customer %s for %s (wallet used %s)",
            order.id, customer_id, order.total_price, order.wallet_amount_used,
        )
        return order

    # ----------------------- Status transitions -----------------------

    def update_status(self, order_id: str, request: UpdateOrderStatusRequest) -> Order:
        order = self.get_order(order_id)
        target = request.status

        if order.status in (OrderStatus.DELIVERED, OrderStatus.CANCELLED):
            raise InvalidStateTransitionError("Order is already in a final state")
        if not order.can_transition_to(target):
            raise InvalidStateTransitionError(
                f"Cannot move order from {order.status.value} to {target.value}"
            )
        if target == OrderStatus.CANCELLED and not (request.cancellation_reason or "").strip():
            raise ValidationError("Cancellation reason is required")
        if target == OrderStatus.DELIVERED and not request.delivery_slip_url:
            raise ValidationError("Delivery slip image is required for delivered status")
        if request.modified_items is not None and target != OrderStatus.PROCESSING:
            raise ValidationError("Items can only be modified when accepting an order")

        wallet = None
        if target == OrderStatus.PROCESSING:
            wallet = self.ledger.get_or_create_wallet(order.customer_id)
            if request.modified_items is not None:
                self._modify_items(order, request.modified_items, wallet)
            amount_to_add = max(ZERO, order.total_price - order.wallet_amount_used)
            self.ledger.accrue_due(wallet, amount_to_add)
            logger.info("Order %s accepted, due for customer %s grows by %s", order.id, order.customer_id, amount_to_add)

        elif target == OrderStatus.CANCELLED:
            order.cancellation_reason = request.cancellation_reason
            if order.wallet_amount_used > 0:
                wallet = self.ledger.get_or_create_wallet(order.customer_id)
                self.ledger.restore_wallet_credit(wallet, order.wallet_amount_used, reference=order.id)
                order.wallet_amount_used = ZERO

        elif target == OrderStatus.DELIVERED:
            order.delivery_slip_url = request.delivery_slip_url

        order.status = target
        order.status_history.append(StatusHistoryEntry(status=target, timestamp=self.ledger.clock()))
        self.storage.replace(ORDERS, to_document(order))
        if wallet:
            self.ledger.save_wallet(wallet)
        return order

    def _resolve_modified_line(self, order: Order, line: ModifiedOrderLine) -> OrderItem:
        try:
            return self._snapshot(line, price=line.price)
        except NotFoundError:
            # A medicine delisted since checkout can still be kept from the order's own snapshot.
            existing = order.find_item(medicine_id=line.medicine_id)
            if not existing:
                raise
            return existing.model_copy(update={
                "quantity": line.quantity,
                "price": existing.price if line.price is None else line.price,
            })

    def _modify_items(self, order: Order, lines: list[ModifiedOrderLine], wallet) -> None:
        if not lines:
            raise ValidationError("Modified order must keep at least one item")
        items = [self._resolve_modified_line(order, line) for line in lines]
        if not order.is_admin_modified:
            order.original_items = [item.model_copy() for item in order.items]
            order.original_total_price = order.total_price
            order.is_admin_modified = True

        order.items = items
        order.total_price = items_total(items)

        # Credit spent on lines that were removed goes back to the wallet.
        excess = order.wallet_amount_used - order.total_price
        if excess > 0:
            self.ledger.restore_wallet_credit(wallet, excess, reference=order.id)
            order.wallet_amount_used = order.total_price
        order.payment_status = (
            OrderPaymentStatus.PAID
            if order.total_price > 0 and order.wallet_amount_used == order.total_price
            else OrderPaymentStatus.PENDING
        )

    # ----------------------- Returns -----------------------

    def process_return(self, order_id: str, request: ProcessReturnRequest) -> ReturnResponse:
        order = self.get_order(order_id)
        if not order.can_return():
            raise InvalidStateTransitionError("Returns can only be processed for shipped or delivered orders")

        # Validate every line before touching any balance.
        planned: list[tuple[OrderItem, int, str]] = []
        claimed: dict[str, int] = {}
        for line in request.returned_items:
            item = order.find_item(medicine_id=line.medicine_id, name=line.name)
            if not item:
                raise ValidationError(f"Item {line.medicine_id or line.name} not found in order")
            already = order.returned_quantity(item.medicine_id) + claimed.get(item.medicine_id, 0)
            if already + line.quantity > order.ordered_quantity(item.medicine_id):
                raise ValidationError(f"Return quantity for {item.name} exceeds delivered quantity")
            claimed[item.medicine_id] = claimed.get(item.medicine_id, 0) + line.quantity
            planned.append((item, line.quantity, line.reason or "No reason provided"))

        wallet = self.ledger.get_or_create_wallet(order.customer_id)
        total = FinancialAdjustment()
        now = self.ledger.clock()
        for item, quantity, reason in planned:
            refund = item.price * quantity
            pending_reduced = self.ledger.reduce_due(wallet, refund, reference=order.id)
            wallet_credited = refund - pending_reduced
            self.ledger.credit_wallet(wallet, wallet_credited, reference=order.id)

            adjustment = FinancialAdjustment(pending_reduced=pending_reduced, wallet_credited=wallet_credited)
            order.returns.append(ReturnEntry(
                medicine_id=item.medicine_id,
                name=item.name,
                quantity=quantity,
                price=item.price,
                reason=reason,
                financial_adjustment=adjustment,
                created_at=now,
            ))
            total.pending_reduced += pending_reduced
            total.wallet_credited += wallet_credited

        self.storage.replace(ORDERS, to_document(order))
        self.ledger.save_wallet(wallet)
        logger.info(
            "Return processed on order %s: due reduced %s, wallet credited %s",
            order.id, total.pending_reduced, total.wallet_credited,
        )

        return ReturnResponse(
            message="Return processed successfully",
            financial_adjustment=total,
            order=OrderView.of(order),
            balance=self.ledger.get_balance(order.customer_id),
        )

    # ----------------------- Reads -----------------------

    def get_order(self, order_id: str) -> Order:
        doc = self.storage.get(ORDERS, order_id)
        if not doc:
            raise NotFoundError(f"Order {order_id} not found")
        return Order(**doc)

    def get_order_for(self, order_id: str, user_id: str, role: Role) -> Order:
        order = self.get_order(order_id)
        if role != Role.ADMIN and order.customer_id != user_id:
            raise AuthorizationError("Not authorized to view this order")
        return order

    def list_orders(self, customer_id: Optional[str] = None) -> list[Order]:
        filters = {"customer_id": customer_id} if customer_id else {}
        orders = [Order(**d) for d in self.storage.find(ORDERS, **filters)]
        orders.sort(key=lambda o: o.created_at, reverse=True)
        return orders

    # ----------------------- Analytics -----------------------

    def dashboard_analytics(self) -> DashboardAnalytics:
        """Sales summary over every order that was not cancelled."""
        orders = [o for o in self.list_orders() if o.status != OrderStatus.CANCELLED]
        today = self.ledger.clock().date()

        days = [today - timedelta(days=offset) for offset in range(TREND_DAYS - 1, -1, -1)]
        trend = {day: [ZERO, 0] for day in days}
        spend: dict[str, Decimal] = {}
        sold: dict[str, int] = {}
        for order in orders:
            bucket = trend.get(order.created_at.date())
            if bucket:
                bucket[0] += order.total_price
                bucket[1] += 1
            spend[order.customer_id] = spend.get(order.customer_id, ZERO) + order.total_price
            for item in order.items:
                sold[item.name] = sold.get(item.name, 0) + item.quantity

        top_customers = []
        for customer_id, amount in sorted(spend.items(), key=lambda pair: pair[1], reverse=True)[:TOP_CUSTOMERS]:
            doc = self.storage.get(CUSTOMERS, customer_id)
            top_customers.append(TopCustomer(name=doc["name"] if doc else "Unknown", spend=amount))

        medicines = self.catalog.list_medicines()
        by_id = {m.id: m.category for m in medicines}
        by_name = {m.name: m.category for m in medicines}
        categories: dict[str, Decimal] = {}
        for order in orders:
            for item in order.items:
                category = by_id.get(item.medicine_id) or by_name.get(item.name) or MedicineCategory.OTHER
                categories[category.value] = categories.get(category.value, ZERO) + item.line_total

        return DashboardAnalytics(
            total_revenue=sum((o.total_price for o in orders), ZERO),
            total_orders=len(orders),
            sales_trends=[
                SalesTrendPoint(date=f"{day:%b} {day.day}", revenue=trend[day][0], orders=trend[day][1])
                for day in days
            ],
            top_customers=top_customers,
            best_selling_products=[
                BestSellingProduct(name=name, quantity=quantity)
                for name, quantity in sorted(sold.items(), key=lambda pair: pair[1], reverse=True)[:BEST_SELLERS]
            ],
            sales_by_category=[CategorySales(name=name, value=value) for name, value in categories.items()],
        )
