"""Manual UPI payments: transactions, proofs and the approval reconciler.

Approving a proof activates what was bought. The proof's conditional
``pending -> approved`` update is the guard against double activation, and
the whole review (status changes and activation) commits or rolls back as
one unit. Only the audit row is best-effort.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from questline.config import get_settings
from questline.db.base import utcnow
from questline.db.models import (
    BadgeDefinition,
    Notification,
    PaymentProof,
    PaymentTransaction,
    Profile,
    Subscription,
)
from questline.errors import (
    AlreadyApproved,
    ConstraintViolation,
    NotPermitted,
    PartialActivationError,
    PaymentProofNotFound,
    PowerUpNotFound,
    ProofAlreadyReviewed,
    TransactionNotFound,
)
from questline.gamification.badge_service import award_badge
from questline.gamification.power_up_service import get_power_up_by_name, grant_power_up
from questline.gamification.xp_service import get_profile
from questline.payments.audit import AuditOutcome, record_admin_action
from questline.social.notification_push import build_notification, push_all

logger = logging.getLogger(__name__)

PREMIUM_ITEM_TYPES = ("premium", "subscription")
POWER_UP_ITEM_TYPES = ("power_up", "booster", "shield")
ITEM_TYPES = PREMIUM_ITEM_TYPES + POWER_UP_ITEM_TYPES
DECISIONS = ("approved", "rejected")


@dataclass
class ReviewResult:
    status: str
    activated_features: list[str] = field(default_factory=list)
    audit: AuditOutcome | None = None
    idempotent: bool = False


def duration_label(days: int) -> str:
    if days == 365:
        return "1 Year"
    if days == 30:
        return "1 Month"
    return f"{days} Days"


# ---------------------------------------------------------------------------
# Upload flow
# ---------------------------------------------------------------------------


async def create_transaction(
    db: AsyncSession,
    user_id: int,
    amount: Decimal,
    item_type: str,
    item_name: str,
    currency: str = "INR",
    now: datetime | None = None,
) -> PaymentTransaction:
    """Record a purchase intent awaiting proof of payment."""
    if item_type not in ITEM_TYPES:
        raise ValueError(f"Unknown item type: {item_type}")
    if amount <= 0:
        raise ValueError("Amount must be positive")
    if now is None:
        now = utcnow()

    await get_profile(db, user_id)
    transaction = PaymentTransaction(
        user_id=user_id,
        amount=amount,
        currency=currency,
        item_type=item_type,
        item_name=item_name.strip(),
        status="pending",
        created_at=now,
        updated_at=now,
    )
    db.add(transaction)
    await db.commit()
    logger.info(
        "Payment transaction created: id=%d user_id=%d item=%s:%s",
        transaction.id,
        user_id,
        item_type,
        transaction.item_name,
    )
    return transaction


async def submit_proof(
    db: AsyncSession,
    transaction_id: int,
    user_id: int,
    file_path: str,
    file_name: str,
    now: datetime | None = None,
) -> PaymentProof:
    """Attach an uploaded proof to a pending transaction. One open proof at a time."""
    if now is None:
        now = utcnow()
    try:
        transaction = await db.get(PaymentTransaction, transaction_id)
        if transaction is None or transaction.user_id != user_id:
            raise TransactionNotFound(f"Transaction {transaction_id} not found")
        if transaction.status != "pending":
            raise ConstraintViolation(f"This payment is already {transaction.status}")

        open_proof = await db.execute(
            select(PaymentProof.id).where(
                PaymentProof.transaction_id == transaction_id,
                PaymentProof.status == "pending",
            )
        )
        if open_proof.first() is not None:
            raise ConstraintViolation("A proof for this payment is already awaiting review")

        proof = PaymentProof(
            transaction_id=transaction_id,
            user_id=user_id,
            file_path=file_path,
            file_name=file_name,
            status="pending",
            uploaded_at=now,
        )
        db.add(proof)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return proof


# ---------------------------------------------------------------------------
# Activation
# ---------------------------------------------------------------------------


async def _upsert_subscription(db: AsyncSession, user_id: int, days: int, now: datetime) -> None:
    """One subscription per user; a new approval replaces the expiry."""
    expires_at = now + timedelta(days=days)
    result = await db.execute(
        select(Subscription).where(Subscription.user_id == user_id).with_for_update()
    )
    subscription = result.scalar_one_or_none()
    if subscription is None:
        subscription = Subscription(
            user_id=user_id, tier="premium", status="active", started_at=now, expires_at=expires_at
        )
        try:
            async with db.begin_nested():
                db.add(subscription)
            return
        except IntegrityError:
            result = await db.execute(select(Subscription).where(Subscription.user_id == user_id))
            subscription = result.scalar_one()
    subscription.status = "active"
    subscription.started_at = now
    subscription.expires_at = expires_at
    await db.flush()


async def _grant_premium_badges(
    db: AsyncSession,
    profile: Profile,
    now: datetime,
    outbox: list[Notification],
) -> int:
    result = await db.execute(
        select(BadgeDefinition)
        .where(
            BadgeDefinition.requirement_type == "premium_unlock",
            BadgeDefinition.is_premium_only.is_(True),
        )
        .order_by(BadgeDefinition.sort_order.asc(), BadgeDefinition.id.asc())
    )
    granted = 0
    for badge in result.scalars().all():
        if await award_badge(db, profile, badge, source="premium", now=now, outbox=outbox):
            granted += 1
    return granted


async def _activate_features(
    db: AsyncSession,
    proof: PaymentProof,
    transaction: PaymentTransaction,
    duration_days: int | None,
    now: datetime,
    outbox: list[Notification],
) -> list[str]:
    """Dispatch on item type. Any failure becomes PartialActivationError."""
    activated: list[str] = []
    step = "dispatch"
    try:
        profile = await get_profile(db, transaction.user_id, for_update=True)
        if transaction.item_type in PREMIUM_ITEM_TYPES:
            days = duration_days or get_settings().default_premium_duration_days
            step = "subscription"
            await _upsert_subscription(db, profile.id, days, now)
            profile.premium_status = True
            profile.updated_at = now
            activated.append(f"Premium Tier ({duration_label(days)})")

            step = "premium_badges"
            granted = await _grant_premium_badges(db, profile, now, outbox)
            if granted:
                activated.append(f"{granted} Premium Badge{'s' if granted != 1 else ''}")
        elif transaction.item_type in POWER_UP_ITEM_TYPES:
            step = "power_up"
            power_up = await get_power_up_by_name(db, transaction.item_name)
            if power_up is None:
                raise PowerUpNotFound(f"Power-up '{transaction.item_name}' not found")
            await grant_power_up(db, profile.id, power_up, source="purchase", now=now)
            activated.append(power_up.name)
        else:
            raise ValueError(f"Unknown item type: {transaction.item_type}")
    except Exception as exc:
        logger.error(
            "Activation failed: proof_id=%d step=%s activated=%s",
            proof.id,
            step,
            activated,
            exc_info=True,
        )
        raise PartialActivationError(proof.id, step, activated, str(exc)) from exc
    return activated


# ---------------------------------------------------------------------------
# Review
# ---------------------------------------------------------------------------


async def _lock_pending(
    db: AsyncSession,
    proof: PaymentProof,
    decision: str,
    reviewer_id: int,
    admin_note: str | None,
    now: datetime,
) -> None:
    """Move the proof out of pending, or raise if someone else got there first."""
    claimed = await db.execute(
        update(PaymentProof)
        .where(PaymentProof.id == proof.id, PaymentProof.status == "pending")
        .values(status=decision, reviewed_at=now, reviewed_by=reviewer_id, admin_note=admin_note)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount == 1:
        proof.status = decision
        proof.reviewed_at = now
        proof.reviewed_by = reviewer_id
        proof.admin_note = admin_note
        return

    current = await db.execute(select(PaymentProof.status).where(PaymentProof.id == proof.id))
    status = current.scalar_one()
    if status == "approved" and decision == "approved":
        raise AlreadyApproved(f"Payment proof {proof.id} is already approved")
    raise ProofAlreadyReviewed(proof.id, status)


async def review_proof(
    db: AsyncSession,
    redis: object | None,
    proof_id: int,
    reviewer_id: int,
    decision: str,
    admin_note: str | None = None,
    duration_days: int | None = None,
    now: datetime | None = None,
) -> ReviewResult:
    """Approve or reject a payment proof.

    Repeating the decision a proof already carries is a no-op success with
    ``idempotent=True`` and no features. Changing a terminal decision raises
    ProofAlreadyReviewed. An activation failure rolls the review back and
    raises PartialActivationError.
    """
    if decision not in DECISIONS:
        raise ValueError(f"Unknown decision: {decision}")
    if now is None:
        now = utcnow()
    outbox: list[Notification] = []

    try:
        reviewer = await get_profile(db, reviewer_id)
        if not reviewer.is_admin:
            raise NotPermitted("Admin access required")

        proof = await db.get(PaymentProof, proof_id)
        if proof is None:
            raise PaymentProofNotFound(f"Payment proof {proof_id} not found")
        if proof.status == decision:
            if decision == "approved":
                raise AlreadyApproved(f"Payment proof {proof_id} is already approved")
            await db.rollback()
            return ReviewResult(status=decision, idempotent=True)
        if proof.status != "pending":
            raise ProofAlreadyReviewed(proof_id, proof.status)

        await _lock_pending(db, proof, decision, reviewer_id, admin_note, now)

        transaction = await db.get(PaymentTransaction, proof.transaction_id, with_for_update=True)
        if transaction is None:
            raise TransactionNotFound(f"Transaction {proof.transaction_id} not found")
        transaction.status = "completed" if decision == "approved" else "rejected"
        transaction.updated_at = now

        audit = await record_admin_action(
            db,
            admin_user_id=reviewer_id,
            action=f"payment_{decision}",
            target_type="payment_proof",
            target_id=proof_id,
            details={
                "transaction_id": transaction.id,
                "item_type": transaction.item_type,
                "item_name": transaction.item_name,
                "amount": str(transaction.amount),
                "admin_note": admin_note,
            },
            now=now,
        )

        activated: list[str] = []
        if decision == "approved":
            activated = await _activate_features(db, proof, transaction, duration_days, now, outbox)
            notification = build_notification(
                user_id=proof.user_id,
                subtype="payment_approved",
                title="Payment Approved",
                description=", ".join(activated) or transaction.item_name,
                action_url="/shop",
                type_="payment",
                now=now,
            )
        else:
            notification = build_notification(
                user_id=proof.user_id,
                subtype="payment_rejected",
                title="Payment Rejected",
                description=admin_note,
                action_url="/shop",
                type_="payment",
                now=now,
            )
        db.add(notification)
        outbox.append(notification)
        await db.commit()
    except AlreadyApproved:
        await db.rollback()
        logger.info("Payment proof %d already approved; nothing to do", proof_id)
        return ReviewResult(status="approved", idempotent=True)
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "Payment proof reviewed: proof_id=%d decision=%s features=%s audit_ok=%s",
        proof_id,
        decision,
        activated,
        audit.ok,
    )
    await push_all(redis, outbox)
    return ReviewResult(status=decision, activated_features=activated, audit=audit)
