"""
Input validation for the form/JSON payloads the actions accept.
"""
from __future__ import annotations
from typing import Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from .config import MAX_TICKETS, TICKET_CATALOG
from .helpers import is_valid_email


def first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid input"
    msg = errors[0].get("msg", "Invalid input")
    # pydantic prefixes custom ValueError messages
    return msg.removeprefix("Value error, ")


class CheckoutForm(BaseModel):
    full_name: str
    phone: str
    email: str

    @field_validator("full_name")
    @classmethod
    def _name(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 4:
            raise ValueError("Full name must be at least 4 characters")
        return v

    @field_validator("phone")
    @classmethod
    def _phone(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 11:
            raise ValueError("Phone number must be at least 11 digits")
        if len(v) > 11:
            raise ValueError("Phone number must be maximum 11 digits")
        return v

    @field_validator("email")
    @classmethod
    def _email(cls, v: str) -> str:
        v = v.strip().lower()
        if not is_valid_email(v):
            raise ValueError("Please enter a valid email address")
        return v


class OrderData(BaseModel):
    ticket_type: str
    quantity: int

    @field_validator("ticket_type")
    @classmethod
    def _ticket_type(cls, v: str) -> str:
        if v not in TICKET_CATALOG:
            raise ValueError(f"Unknown ticket type: {v}")
        return v

    @field_validator("quantity")
    @classmethod
    def _quantity(cls, v: int) -> int:
        if v < 1 or v > MAX_TICKETS:
            raise ValueError(
                f"Quantity must be between 1 and {MAX_TICKETS}"
            )
        return v


class CreateAffiliateInput(BaseModel):
    email: str
    full_name: Optional[str] = None
    phone_number: Optional[str] = None
    password: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _email(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if not is_valid_email(v):
            raise ValueError("Valid email is required")
        return v

    @field_validator("password")
    @classmethod
    def _password(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 6:
            raise ValueError("Password must be at least 6 characters")
        return v or None


class DiscountInput(BaseModel):
    code: Optional[str] = Field(default=None, min_length=3, max_length=32)
    percentage: float = Field(gt=0, le=1)  # 0.1 for 10%
    is_active: bool = True

    @field_validator("code", mode="before")
    @classmethod
    def _code(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None


class DiscountUpdate(BaseModel):
    code: str = Field(min_length=3, max_length=32)
    percentage: float = Field(gt=0, le=1)
    is_active: bool

    @field_validator("code", mode="before")
    @classmethod
    def _code(cls, v):
        return str(v or "").strip()
