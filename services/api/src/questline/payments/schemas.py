"""Pydantic models for payment endpoints."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field


class CreateTransactionRequest(BaseModel):
    amount: Decimal = Field(gt=0, max_digits=10, decimal_places=2)
    item_type: str
    item_name: str = Field(min_length=1, max_length=128)
    currency: str = "INR"


class TransactionResponse(BaseModel):
    id: int
    amount: Decimal
    currency: str
    item_type: str
    item_name: str
    status: str
    created_at: datetime


class SubmitProofRequest(BaseModel):
    file_path: str = Field(min_length=1, max_length=256)
    file_name: str = Field(min_length=1, max_length=128)


class ProofResponse(BaseModel):
    id: int
    transaction_id: int
    status: str
    uploaded_at: datetime


class ReviewProofRequest(BaseModel):
    decision: str = Field(pattern="^(approved|rejected)$")
    admin_note: str | None = Field(default=None, max_length=1000)
    duration_days: int | None = Field(default=None, ge=1, le=3650)


class ReviewProofResponse(BaseModel):
    status: str
    activated_features: list[str]
    audit_logged: bool
    idempotent: bool
