"""Payment API endpoints: purchase intents, proof uploads and admin review."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from questline.auth.dependencies import get_current_user, require_admin
from questline.database import get_session
from questline.db.models import Profile
from questline.dependencies import get_redis_dep
from questline.errors import (
    ConstraintViolation,
    PaymentProofNotFound,
    ProofAlreadyReviewed,
    TransactionNotFound,
)
from questline.payments.schemas import (
    CreateTransactionRequest,
    ProofResponse,
    ReviewProofRequest,
    ReviewProofResponse,
    SubmitProofRequest,
    TransactionResponse,
)
from questline.payments.service import create_transaction, review_proof, submit_proof

router = APIRouter(prefix="/api/v1", tags=["Payments"])


@router.post("/payments/transactions", response_model=TransactionResponse, status_code=201)
async def create(
    body: CreateTransactionRequest,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    try:
        transaction = await create_transaction(
            db,
            user_id=user.id,
            amount=body.amount,
            item_type=body.item_type,
            item_name=body.item_name,
            currency=body.currency,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return TransactionResponse(
        id=transaction.id,
        amount=transaction.amount,
        currency=transaction.currency,
        item_type=transaction.item_type,
        item_name=transaction.item_name,
        status=transaction.status,
        created_at=transaction.created_at,
    )


@router.post(
    "/payments/transactions/{transaction_id}/proofs",
    response_model=ProofResponse,
    status_code=201,
)
async def upload_proof(
    transaction_id: int,
    body: SubmitProofRequest,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Record an uploaded payment screenshot. Storage happens client-side."""
    try:
        proof = await submit_proof(db, transaction_id, user.id, body.file_path, body.file_name)
    except TransactionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except ConstraintViolation as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return ProofResponse(
        id=proof.id,
        transaction_id=proof.transaction_id,
        status=proof.status,
        uploaded_at=proof.uploaded_at,
    )


@router.post("/admin/payment-proofs/{proof_id}/review", response_model=ReviewProofResponse)
async def review(
    proof_id: int,
    body: ReviewProofRequest,
    admin: Profile = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
    redis: object | None = Depends(get_redis_dep),
):
    """Approve or reject a proof. PartialActivationError is handled globally."""
    try:
        result = await review_proof(
            db,
            redis,
            proof_id=proof_id,
            reviewer_id=admin.id,
            decision=body.decision,
            admin_note=body.admin_note,
            duration_days=body.duration_days,
        )
    except PaymentProofNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except ProofAlreadyReviewed as e:
        raise HTTPException(
            status_code=409,
            detail={"message": str(e), "error_code": e.error_code, "status": e.status},
        ) from e
    return ReviewProofResponse(
        status=result.status,
        activated_features=result.activated_features,
        audit_logged=result.audit.ok if result.audit is not None else False,
        idempotent=result.idempotent,
    )
