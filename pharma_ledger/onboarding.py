import hashlib
import logging
import re
import secrets
from typing import Optional

from .errors import DuplicateKeyError, InvalidStateTransitionError, NotFoundError, ValidationError
from .models import (
    AccountStatus,
    AddCustomerRequest,
    ConnectionRequest,
    ConnectionRequestCreate,
    Customer,
    CustomerView,
    OnboardingResponse,
    OTPIssuedResponse,
    ReviewConnectionRequest,
)
from .otp import OTPService
from .service import LedgerService, new_id
from .storage import CONNECTION_REQUESTS, CUSTOMERS, to_document

logger = logging.getLogger(__name__)

PASSWORD_SPECIALS = "@#$!%&"
PBKDF2_ITERATIONS = 260000


def validate_password(password: str) -> list[str]:
    errors = []
    if not password or len(password) < 8:
        errors.append("Password must be at least 8 characters long")
    if not re.search(r"[A-Z]", password or ""):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password or ""):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"\d", password or ""):
        errors.append("Password must contain at least one number")
    if not any(c in PASSWORD_SPECIALS for c in password or ""):
        errors.append(f"Password must contain at least one special character ({PASSWORD_SPECIALS})")
    return errors


def hash_password(password: str) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PBKDF2_ITERATIONS).hex()
    return f"pbkdf2_sha256${PBKDF2_ITERATIONS}${salt}${digest}"


def generate_username(name: str, phone: str, customer_type: str, suffix: str = "") -> str:
    cleaned = re.sub(r"\s+", "", name or "USER").upper()
    first4 = cleaned[:4].ljust(4, "X")
    last4 = (phone or "0000")[-4:]
    base = f"{first4}{last4}{suffix}"
    return f"Dr_{base}" if customer_type == "Doctor" else base


def generate_initial_password(name: str, phone: str) -> str:
    last4 = (phone or "0000")[-4:]
    name_part = (name or "user").lower()[:4]
    return f"SVP{last4}{name_part}"


def password_reset_identifier(email: str) -> str:
    return f"password_reset_{email}"


def delete_otp_identifier(customer_id: str) -> str:
    return f"delete_customer_{customer_id}"


class OnboardingService:
    """Connection requests, customer accounts and OTP-gated customer deletion.

    Credentials generated here are returned to the caller; delivering them
    (email) happens outside this service.
    """

    def __init__(self, ledger: LedgerService, otp: OTPService):
        self.ledger = ledger
        self.otp = otp
        self.storage = ledger.storage

    # ----------------------- Connection requests -----------------------

    def request_connection(self, request: ConnectionRequestCreate) -> ConnectionRequest:
        if self.storage.find_one(CONNECTION_REQUESTS, email=request.email.lower()):
            raise DuplicateKeyError("email", "A connection request for this Email already exists")
        if self.storage.find_one(CONNECTION_REQUESTS, phone=request.phone):
            raise DuplicateKeyError("phone", "A connection request for this Mobile Number already exists")
        self._ensure_no_customer(request.email, request.phone)

        connection = ConnectionRequest(
            id=new_id(),
            name=request.name,
            email=request.email.lower(),
            phone=request.phone,
            address=request.address,
            type=request.type,
            created_at=self.ledger.clock(),
        )
        self.storage.insert(CONNECTION_REQUESTS, to_document(connection))
        logger.info("Connection request %s received from %s", connection.id, connection.email)
        return connection

    def list_connection_requests(self, status: Optional[AccountStatus] = None) -> list[ConnectionRequest]:
        filters = {"status": status.value} if status else {}
        requests = [ConnectionRequest(**d) for d in self.storage.find(CONNECTION_REQUESTS, **filters)]
        requests.sort(key=lambda r: r.created_at, reverse=True)
        return requests

    def review_connection_request(self, request_id: str, review: ReviewConnectionRequest) -> OnboardingResponse:
        doc = self.storage.get(CONNECTION_REQUESTS, request_id)
        if not doc:
            raise NotFoundError(f"Request {request_id} not found")
        connection = ConnectionRequest(**doc)
        if connection.status != AccountStatus.PENDING:
            raise InvalidStateTransitionError(f"Request is already {connection.status.value}. Action denied.")

        if review.status == AccountStatus.REJECTED:
            if not (review.rejection_reason or "").strip():
                raise ValidationError("Rejection reason is mandatory when rejecting a request.")
            connection.status = AccountStatus.REJECTED
            connection.rejection_reason = review.rejection_reason
            self.storage.replace(CONNECTION_REQUESTS, to_document(connection))
            logger.info("Connection request %s rejected", connection.id)
            return OnboardingResponse(request=connection, message="Connection request rejected")

        if review.status != AccountStatus.APPROVED:
            raise ValidationError("Status must be approved or rejected")

        customer, password = self._create_customer(
            name=connection.name,
            email=connection.email,
            phone=connection.phone,
            address=connection.address,
            customer_type=connection.type,
        )
        connection.status = AccountStatus.APPROVED
        self.storage.replace(CONNECTION_REQUESTS, to_document(connection))
        logger.info("Connection request %s approved as customer %s", connection.id, customer.id)

        return OnboardingResponse(
            request=connection,
            customer=self.customer_view(customer),
            username=customer.username,
            initial_password=password,
            message="Connection request approved",
        )

    # ----------------------- Customers -----------------------

    def add_customer(self, request: AddCustomerRequest) -> OnboardingResponse:
        self._ensure_no_customer(request.email, request.phone)
        customer, password = self._create_customer(
            name=request.name,
            email=request.email.lower(),
            phone=request.phone,
            address=request.address,
            customer_type=request.type,
        )
        return OnboardingResponse(
            customer=self.customer_view(customer),
            username=customer.username,
            initial_password=password,
            message="Customer created successfully",
        )

    def list_customers(self) -> list[CustomerView]:
        customers = [Customer(**d) for d in self.storage.find(CUSTOMERS)]
        customers.sort(key=lambda c: c.created_at, reverse=True)
        return [self.customer_view(c) for c in customers]

    def customer_view(self, customer: Customer) -> CustomerView:
        balance = self.ledger.get_balance(customer.id)
        return CustomerView(
            id=customer.id,
            name=customer.name,
            email=customer.email,
            phone=customer.phone,
            type=customer.type,
            username=customer.username,
            status=customer.status,
            pending_balance=balance.pending_balance,
            wallet_balance=balance.wallet_balance,
            created_at=customer.created_at,
        )

    def request_customer_delete_otp(self, customer_id: str) -> tuple[str, OTPIssuedResponse]:
        customer = self.ledger.get_customer(customer_id)
        code, record = self.otp.issue(delete_otp_identifier(customer_id))
        return code, OTPIssuedResponse(
            message="OTP sent to admin email",
            customer_name=customer.name,
            expires_at=record.expires_at,
        )

    def delete_customer(self, customer_id: str, code: str) -> None:
        customer = self.ledger.get_customer(customer_id)
        verification = self.otp.verify(delete_otp_identifier(customer_id), code)
        if not verification.valid:
            raise ValidationError(verification.message)

        self.ledger.delete_wallet(customer_id)
        self.storage.delete(CUSTOMERS, customer_id)
        logger.info("Customer %s (%s) deleted after OTP verification", customer_id, customer.email)

    # ----------------------- Password reset -----------------------

    def request_password_reset(self, email: str) -> tuple[str, OTPIssuedResponse]:
        doc = self.storage.find_one(CUSTOMERS, email=email.strip().lower())
        if not doc:
            raise NotFoundError("No customer is registered with this email")
        customer = Customer(**doc)
        code, record = self.otp.issue(password_reset_identifier(customer.email))
        return code, OTPIssuedResponse(
            message="OTP has been sent to your registered email.",
            customer_name=customer.name,
            expires_at=record.expires_at,
        )

    def reset_password(self, email: str, code: str, new_password: str) -> None:
        errors = validate_password(new_password)
        if errors:
            raise ValidationError(". ".join(errors))

        doc = self.storage.find_one(CUSTOMERS, email=email.strip().lower())
        if not doc:
            raise NotFoundError("No customer is registered with this email")
        verification = self.otp.verify(password_reset_identifier(doc["email"]), code)
        if not verification.valid:
            raise ValidationError(verification.message)

        doc["password_hash"] = hash_password(new_password)
        self.storage.replace(CUSTOMERS, doc)
        logger.info("Password reset for customer %s", doc["id"])

    # ----------------------- Helpers -----------------------

    def _ensure_no_customer(self, email: str, phone: str) -> None:
        if self.storage.find_one(CUSTOMERS, email=email.lower()):
            raise DuplicateKeyError("email", "A customer is already registered with this Email")
        if self.storage.find_one(CUSTOMERS, phone=phone):
            raise DuplicateKeyError("phone", "A customer is already registered with this Mobile Number")

    def _create_customer(self, name, email, phone, address, customer_type) -> tuple[Customer, str]:
        username = generate_username(name, phone, customer_type)
        # Same name prefix and phone tail: keep drawing suffixes until one is free.
        while self.storage.find_one(CUSTOMERS, username=username):
            username = generate_username(name, phone, customer_type, secrets.token_hex(2).upper())

        password = generate_initial_password(name, phone)
        now = self.ledger.clock()
        customer = Customer(
            id=new_id(),
            name=name,
            email=email.lower(),
            phone=phone,
            address=address,
            type=customer_type,
            username=username,
            password_hash=hash_password(password),
            status=AccountStatus.APPROVED,
            terms_accepted_at=now,
            created_at=now,
        )
        self.storage.insert(CUSTOMERS, to_document(customer))
        self.ledger.create_wallet(customer.id)
        return customer, password
