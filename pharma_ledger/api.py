import logging
import traceback
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .auth import CurrentUser, get_current_user, require_admin, require_customer
from .config import configure_logging, settings
from .errors import (
    AuthorizationError,
    DuplicateKeyError,
    LedgerServiceError,
    NotFoundError,
    ValidationError,
)
from .models import (
    AccountStatus,
    AddCustomerRequest,
    BalanceResponse,
    ConnectionRequest,
    ConnectionRequestCreate,
    CustomerView,
    DashboardAnalytics,
    FastMovingMedicine,
    ForgotPasswordRequest,
    Medicine,
    MedicineCreate,
    MedicineUpdate,
    OfflinePaymentRequest,
    OnboardingResponse,
    OrderView,
    OTPIssuedResponse,
    Payment,
    PaymentResponse,
    PaymentStatus,
    PlaceOrderRequest,
    ProcessReturnRequest,
    RejectPaymentRequest,
    ResetPasswordRequest,
    ReturnResponse,
    ReuploadProofRequest,
    ReviewConnectionRequest,
    SubmitPaymentRequest,
    UpdateOrderStatusRequest,
    VerifyOTPRequest,
    WalletHistoryResponse,
)
from .medicines import MedicineService
from .onboarding import OnboardingService
from .orders import OrderService
from .otp import OTPService
from .payments import PaymentService
from .service import LedgerService
from .storage import InMemoryStorage, MongoStorage

configure_logging(settings.log_level)
logger = logging.getLogger(__name__)


def log_otp_delivery(identifier: str, code: str) -> None:
    logger.info("OTP ready for delivery for %s", identifier)


@dataclass
class Services:
    ledger: LedgerService
    payments: PaymentService
    medicines: MedicineService
    orders: OrderService
    onboarding: OnboardingService
    # Hands a freshly issued code to whatever delivers it (email in production).
    deliver_otp: Callable[[str, str], None] = log_otp_delivery


def build_services(storage=None, otp_ttl_seconds: Optional[int] = None, clock=None) -> Services:
    if storage is None:
        storage = MongoStorage(settings.mongo_uri, settings.mongo_db_name) if settings.mongo_uri else InMemoryStorage()
    ledger = LedgerService(storage, clock=clock)
    otp = OTPService(storage, ttl_seconds=otp_ttl_seconds or settings.otp_ttl_seconds, clock=clock)
    catalog = MedicineService(ledger)
    return Services(
        ledger=ledger,
        payments=PaymentService(ledger),
        medicines=catalog,
        orders=OrderService(ledger, catalog),
        onboarding=OnboardingService(ledger, otp),
    )


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services()
    return _services


app = FastAPI(
    title="Pharma Ledger API",
    description="Customer due balance, wallet credit, payment and return reconciliation for a pharma distributor",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----------------------- Error handling -----------------------

def error_response(status_code: int, message: str, exc: Optional[BaseException] = None) -> JSONResponse:
    stack = None
    if exc is not None and not settings.is_production:
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return JSONResponse(status_code=status_code, content={"message": message, "stack": stack})


ERROR_STATUS = (
    (DuplicateKeyError, status.HTTP_400_BAD_REQUEST),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (AuthorizationError, status.HTTP_401_UNAUTHORIZED),
)


@app.exception_handler(LedgerServiceError)
async def ledger_error_handler(request: Request, exc: LedgerServiceError) -> JSONResponse:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            break
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    logger.warning("%s %s -> %s: %s", request.method, request.url.path, status_code, exc)
    return error_response(status_code, str(exc), exc)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    message = "; ".join(
        f"{'.'.join(str(p) for p in err['loc'] if p != 'body')}: {err['msg']}" for err in exc.errors()
    )
    logger.warning("%s %s -> 400: %s", request.method, request.url.path, message)
    return error_response(status.HTTP_400_BAD_REQUEST, message)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    if exc.status_code == status.HTTP_404_NOT_FOUND and exc.detail == "Not Found":
        message = f"Not Found - {request.url.path}"
    return error_response(exc.status_code, message)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc) or "Internal server error", exc)


# ----------------------- Health -----------------------

@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "pharma-ledger"}


# ----------------------- Payments -----------------------

@app.post("/payments", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED, tags=["Payments"])
def submit_payment(
    request: SubmitPaymentRequest,
    user: CurrentUser = Depends(require_customer),
    services: Services = Depends(get_services),
) -> PaymentResponse:
    return services.payments.submit_payment(user.id, request)


@app.get("/payments/my", response_model=list[Payment], tags=["Payments"])
def my_payments(user: CurrentUser = Depends(require_customer), services: Services = Depends(get_services)):
    return services.payments.list_customer_payments(user.id)


@app.get("/payments/admin", response_model=list[Payment], tags=["Payments"])
def all_payments(
    status_filter: Optional[PaymentStatus] = Query(default=None, alias="status"),
    user: CurrentUser = Depends(require_admin),
    services: Services = Depends(get_services),
):
    return services.payments.list_payments(status_filter)


@app.post("/payments/offline", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED, tags=["Payments"])
def submit_offline_payment(
    request: OfflinePaymentRequest,
    user: CurrentUser = Depends(require_admin),
    services: Services = Depends(get_services),
) -> PaymentResponse:
    return services.payments.submit_offline_payment(user.id, request)


@app.put("/payments/{payment_id}/approve", response_model=PaymentResponse, tags=["Payments"])
def approve_payment(
    payment_id: str,
    user: CurrentUser = Depends(require_admin),
    services: Services = Depends(get_services),
) -> PaymentResponse:
    return services.payments.approve_payment(payment_id, user.id)


@app.put("/payments/{payment_id}/reject", response_model=PaymentResponse, tags=["Payments"])
def reject_payment(
    payment_id: str,
    request: RejectPaymentRequest,
    user: CurrentUser = Depends(require_admin),
    services: Services = Depends(get_services),
) -> PaymentResponse:
    return services.payments.reject_payment(payment_id, user.id, request)


@app.put("/payments/{payment_id}/reupload", response_model=PaymentResponse, tags=["Payments"])
def reupload_proof(
    payment_id: str,
    request: ReuploadProofRequest,
    user: CurrentUser = Depends(require_customer),
    services: Services = Depends(get_services),
) -> PaymentResponse:
    return services.payments.reupload_proof(payment_id, user.id, request)


@app.get("/payments/wallet", response_model=BalanceResponse, tags=["Wallet"])
def my_balance(user: CurrentUser = Depends(require_customer), services: Services = Depends(get_services)):
    return services.ledger.get_balance(user.id)


@app.get("/payments/wallet/history", response_model=WalletHistoryResponse, tags=["Wallet"])
def my_wallet_history(
    limit: int = Query(default=50, ge=1),
    offset: int = Query(default=0, ge=0),
    user: CurrentUser = Depends(require_customer),
    services: Services = Depends(get_services),
):
    return services.ledger.get_wallet_history(user.id, limit, offset)


# ----------------------- Medicines -----------------------

@app.get("/medicines", response_model=list[Medicine], tags=["Medicines"])
def list_medicines(company: Optional[str] = None, services: Services = Depends(get_services)):
    return services.medicines.list_medicines(company)


@app.get("/medicines/fast-moving", response_model=list[FastMovingMedicine], tags=["Medicines"])
def fast_moving_medicines(services: Services = Depends(get_services)):
    return services.medicines.fast_moving()


@app.get("/medicines/{medicine_id}", response_model=Medicine, tags=["Medicines"])
def get_medicine(medicine_id: str, services: Services = Depends(get_services)):
    return services.medicines.get_medicine(medicine_id)


@app.post("/medicines", response_model=Medicine, status_code=status.HTTP_201_CREATED, tags=["Medicines"])
def create_medicine(
    request: MedicineCreate,
    user: CurrentUser = Depends(require_admin),
    services: Services = Depends(get_services),
):
    return services.medicines.create_medicine(request)


@app.put("/medicines/{medicine_id}", response_model=Medicine, tags=["Medicines"])
def update_medicine(
    medicine_id: str,
    request: MedicineUpdate,
    user: CurrentUser = Depends(require_admin),
    services: Services = Depends(get_services),
):
    return services.medicines.update_medicine(medicine_id, request)


@app.delete("/medicines/{medicine_id}", tags=["Medicines"])
def delete_medicine(
    medicine_id: str,
    user: CurrentUser = Depends(require_admin),
    services: Services = Depends(get_services),
):
    services.medicines.delete_medicine(medicine_id)
    return {"message": "Medicine removed"}


# ----------------------- Orders -----------------------

@app.post("/orders", response_model=OrderView, status_code=status.HTTP_201_CREATED, tags=["Orders"])
def place_order(
    request: PlaceOrderRequest,
    user: CurrentUser = Depends(require_customer),
    services: Services = Depends(get_services),
):
    return OrderView.of(services.orders.place_order(user.id, request))


@app.get("/orders/myorders", response_model=list[OrderView], tags=["Orders"])
def my_orders(user: CurrentUser = Depends(require_customer), services: Services = Depends(get_services)):
    return [OrderView.of(o) for o in services.orders.list_orders(user.id)]


@app.get("/orders", response_model=list[OrderView], tags=["Orders"])
def all_orders(user: CurrentUser = Depends(require_admin), services: Services = Depends(get_services)):
    return [OrderView.of(o) for o in services.orders.list_orders()]


@app.get("/orders/customer/{customer_id}", response_model=list[OrderView], tags=["Orders"])
def customer_orders(
    customer_id: str,
    user: CurrentUser = Depends(require_admin),
    services: Services = Depends(get_services),
):
    return [OrderView.of(o) for o in services.orders.list_orders(customer_id)]


@app.get("/orders/{order_id}", response_model=OrderView, tags=["Orders"])
def get_order(
    order_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return OrderView.of(services.orders.get_order_for(order_id, user.id, user.role))


@app.put("/orders/{order_id}/status", response_model=OrderView, tags=["Orders"])
def update_order_status(
    order_id: str,
    request: UpdateOrderStatusRequest,
    user: CurrentUser = Depends(require_admin),
    services: Services = Depends(get_services),
):
    return OrderView.of(services.orders.update_status(order_id, request))


@app.post("/orders/{order_id}/return", response_model=ReturnResponse, tags=["Orders"])
def process_return(
    order_id: str,
    request: ProcessReturnRequest,
    user: CurrentUser = Depends(require_admin),
    services: Services = Depends(get_services),
) -> ReturnResponse:
    return services.orders.process_return(order_id, request)


# ----------------------- Onboarding -----------------------

def _otp_issued(services: Services, identifier: str, code: str, issued: OTPIssuedResponse) -> OTPIssuedResponse:
    services.deliver_otp(identifier, code)
    # Outside production the code is echoed back so the flow can be exercised without a mailbox.
    return issued if settings.is_production else issued.model_copy(update={"otp": code})


@app.post("/auth/request-connection", response_model=ConnectionRequest, status_code=status.HTTP_201_CREATED,
          tags=["Onboarding"])
def request_connection(request: ConnectionRequestCreate, services: Services = Depends(get_services)):
    return services.onboarding.request_connection(request)


@app.post("/auth/forgot-password", response_model=OTPIssuedResponse, tags=["Onboarding"])
def forgot_password(request: ForgotPasswordRequest, services: Services = Depends(get_services)):
    code, issued = services.onboarding.request_password_reset(request.email)
    return _otp_issued(services, request.email, code, issued)


@app.put("/auth/reset-password", tags=["Onboarding"])
def reset_password(request: ResetPasswordRequest, services: Services = Depends(get_services)):
    services.onboarding.reset_password(request.email, request.otp, request.new_password)
    return {"message": "Password reset successfully"}


@app.get("/admin/connection-requests", response_model=list[ConnectionRequest], tags=["Admin"])
def connection_requests(
    status_filter: Optional[AccountStatus] = Query(default=None, alias="status"),
    user: CurrentUser = Depends(require_admin),
    services: Services = Depends(get_services),
):
    return services.onboarding.list_connection_requests(status_filter)


@app.put("/admin/connection-requests/{request_id}", response_model=OnboardingResponse, tags=["Admin"])
def review_connection_request(
    request_id: str,
    review: ReviewConnectionRequest,
    user: CurrentUser = Depends(require_admin),
    services: Services = Depends(get_services),
):
    return services.onboarding.review_connection_request(request_id, review)


@app.post("/admin/customers", response_model=OnboardingResponse, status_code=status.HTTP_201_CREATED, tags=["Admin"])
def add_customer(
    request: AddCustomerRequest,
    user: CurrentUser = Depends(require_admin),
    services: Services = Depends(get_services),
):
    return services.onboarding.add_customer(request)


@app.get("/admin/customers", response_model=list[CustomerView], tags=["Admin"])
def all_customers(user: CurrentUser = Depends(require_admin), services: Services = Depends(get_services)):
    return services.onboarding.list_customers()


@app.get("/admin/due-customers", response_model=list[CustomerView], tags=["Admin"])
def due_customers(user: CurrentUser = Depends(require_admin), services: Services = Depends(get_services)):
    return [services.onboarding.customer_view(c) for c, _ in services.ledger.list_due_customers()]


@app.get("/admin/analytics", response_model=DashboardAnalytics, tags=["Admin"])
def dashboard_analytics(user: CurrentUser = Depends(require_admin), services: Services = Depends(get_services)):
    return services.orders.dashboard_analytics()


@app.get("/admin/customers/{customer_id}/balance", response_model=BalanceResponse, tags=["Admin"])
def customer_balance(
    customer_id: str,
    user: CurrentUser = Depends(require_admin),
    services: Services = Depends(get_services),
):
    return services.ledger.get_balance(customer_id)


@app.post("/admin/customers/{customer_id}/request-delete-otp", response_model=OTPIssuedResponse, tags=["Admin"])
def request_delete_otp(
    customer_id: str,
    user: CurrentUser = Depends(require_admin),
    services: Services = Depends(get_services),
):
    code, issued = services.onboarding.request_customer_delete_otp(customer_id)
    return _otp_issued(services, f"customer {customer_id}", code, issued)


@app.post("/admin/customers/{customer_id}/verify-delete-otp", tags=["Admin"])
def verify_delete_otp(
    customer_id: str,
    request: VerifyOTPRequest,
    user: CurrentUser = Depends(require_admin),
    services: Services = Depends(get_services),
):
    services.onboarding.delete_customer(customer_id, request.otp)
    return {"success": True, "message": "Customer deleted successfully"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
