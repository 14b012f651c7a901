import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from .models import OTPRecord
from .service import new_id, utcnow
from .storage import OTPS, to_document

logger = logging.getLogger(__name__)


@dataclass
class OTPVerification:
    valid: bool
    message: str


class OTPService:
    """Single-use verification codes keyed by an identifier.

    Codes live in the document store rather than process memory, so any
    instance can verify a code another instance issued. Only a SHA256 hash of
    the code is stored.
    """

    def __init__(self, storage, ttl_seconds: int = 300, clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock or utcnow

    @staticmethod
    def generate_code() -> str:
        return "".join(secrets.choice("0123456789") for _ in range(6))

    @staticmethod
    def _hash(code: str) -> str:
        return hashlib.sha256(code.encode()).hexdigest()

    def issue(self, identifier: str) -> tuple[str, OTPRecord]:
        self.clear(identifier)
        code = self.generate_code()
        now = self.clock()
        record = OTPRecord(
            id=new_id(),
            identifier=identifier,
            code_hash=self._hash(code),
            expires_at=now + self.ttl,
            created_at=now,
        )
        self.storage.insert(OTPS, to_document(record))
        logger.info("OTP issued for %s, expires at %s", identifier, record.expires_at.isoformat())
        return code, record

    def verify(self, identifier: str, code: str) -> OTPVerification:
        doc = self.storage.find_one(OTPS, identifier=identifier)
        if not doc:
            return OTPVerification(False, "OTP not found or expired")

        record = OTPRecord(**doc)
        if self.clock() > record.expires_at:
            self.storage.delete(OTPS, record.id)
            return OTPVerification(False, "OTP has expired")

        if not hmac.compare_digest(record.code_hash, self._hash(code)):
            return OTPVerification(False, "Invalid OTP")

        self.storage.delete(OTPS, record.id)
        return OTPVerification(True, "OTP verified successfully")

    def clear(self, identifier: str) -> None:
        for doc in self.storage.find(OTPS, identifier=identifier):
            self.storage.delete(OTPS, doc["id"])
