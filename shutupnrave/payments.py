from abc import ABC, abstractmethod
from typing import Dict, Optional, TypedDict
import base64
import hashlib
import hmac
import json
import logging

import httpx
from fastapi import HTTPException

from .config import MOCK_SECRET, PAYSTACK_BASE_URL

logger = logging.getLogger(__name__)


class PaymentError(RuntimeError):
    pass


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class InitResult(TypedDict):
    reference: str
    payment_url: str
    access_code: str


class PaymentAdapter(ABC):
    @abstractmethod
    async def initialize(
        self, reference: str, email: str, amount: float, metadata: dict,
        callback_url: str,
    ) -> InitResult: ...

    # True only when the provider reports a successful charge
    @abstractmethod
    async def verify(self, reference: str) -> bool: ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    # "succeeded" | "failed" | anything else is ignored
    @abstractmethod
    def event_kind(self, event: dict) -> str: ...

    @abstractmethod
    def event_reference(self, event: dict) -> Optional[str]: ...


# ----------------------------
# Paystack implementation
# ----------------------------
class Paystack(PaymentAdapter):
    def __init__(self, http: httpx.AsyncClient, secret_key: str,
                 base_url: str = PAYSTACK_BASE_URL) -> None:
        self.http = http
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    async def initialize(self, reference, email, amount, metadata,
                         callback_url) -> InitResult:
        r = await self.http.post(
            f"{self.base_url}/transaction/initialize",
            headers=self._headers(),
            json={
                "reference": reference,
                "email": email,
                # Paystack expects kobo
                "amount": int(round(amount * 100)),
                "currency": "NGN",
                "metadata": metadata,
                "callback_url": callback_url,
            },
        )
        if r.status_code >= 400:
            raise PaymentError("Failed to initialize payment")
        data = r.json().get("data") or {}
        return {
            "reference": data.get("reference", reference),
            "payment_url": data["authorization_url"],
            "access_code": data.get("access_code", ""),
        }

    async def verify(self, reference: str) -> bool:
        r = await self.http.get(
            f"{self.base_url}/transaction/verify/{reference}",
            headers=self._headers(),
        )
        if r.status_code >= 400:
            raise PaymentError("Payment verification failed")
        data = r.json().get("data") or {}
        return data.get("status") == "success"

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("x-paystack-signature")
        expected = hmac.new(
            self.secret_key.encode(), payload, hashlib.sha512
        ).hexdigest()
        if not sig or not hmac.compare_digest(expected, sig):
            raise HTTPException(status_code=400, detail="Invalid signature")
        try:
            return json.loads(payload.decode())
        except json.JSONDecodeError:
            raise HTTPException(status_code=400, detail="Invalid JSON")

    def event_kind(self, event: dict) -> str:
        return {
            "charge.success": "succeeded",
            "charge.failed": "failed",
        }.get(event.get("event", ""), "ignored")

    def event_reference(self, event: dict) -> Optional[str]:
        return (event.get("data") or {}).get("reference")


# ----------------------------
# MockPay implementation (local development)
# ----------------------------
class MockPay(PaymentAdapter):

    def __init__(self, secret: str = MOCK_SECRET,
                 max_outcomes: int = 10000) -> None:
        self.secret = secret
        self.max_outcomes = max_outcomes
        # reference -> "succeeded" | "failed", oldest first
        self.outcomes: Dict[str, str] = {}

    async def initialize(self, reference, email, amount, metadata,
                         callback_url) -> InitResult:
        return {
            "reference": reference,
            "payment_url": f"/mockpay/{reference}",
            "access_code": f"mock_{reference}",
        }

    def emit(self, reference: str, kind: str) -> None:
        self.outcomes.pop(reference, None)
        self.outcomes[reference] = kind
        # in-process only; forget the oldest outcomes past the cap
        while len(self.outcomes) > self.max_outcomes:
            del self.outcomes[next(iter(self.outcomes))]

    async def verify(self, reference: str) -> bool:
        return self.outcomes.get(reference) == "succeeded"

    def sign(self, payload: bytes) -> str:
        mac = hmac.new(self.secret.encode(), payload, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("x-mockpay-signature")
        expected = self.sign(payload)
        if not sig or not hmac.compare_digest(expected, sig):
            raise HTTPException(status_code=400, detail="Invalid signature")
        try:
            event = json.loads(payload.decode())
        except json.JSONDecodeError:
            raise HTTPException(status_code=400, detail="Invalid JSON")
        # a signed event is the mock provider's record of the charge
        reference = self.event_reference(event)
        if reference:
            self.emit(reference, self.event_kind(event))
        return event

    def event_kind(self, event: dict) -> str:
        return event.get("type", "").split(".")[-1]

    def event_reference(self, event: dict) -> Optional[str]:
        return event.get("reference")
