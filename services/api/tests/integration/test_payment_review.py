"""Payment proof review: activation, idempotency and audit."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from conftest import NOW
from questline.db.base import ensure_utc
from questline.db.models import (
    AdminAuditLog,
    PaymentProof,
    PaymentTransaction,
    Profile,
    Subscription,
    UserBadge,
    UserPowerUp,
)
from questline.errors import (
    ConstraintViolation,
    NotPermitted,
    PartialActivationError,
    PaymentProofNotFound,
    ProofAlreadyReviewed,
    TransactionNotFound,
)
from questline.payments import audit
from questline.payments.service import create_transaction, duration_label, review_proof, submit_proof


async def _count(db, column, *criteria) -> int:
    result = await db.execute(select(func.count(column)).where(*criteria))
    return result.scalar_one()


@pytest_asyncio.fixture
async def admin(factory) -> Profile:
    return await factory.profile("admin", is_admin=True)


@pytest_asyncio.fixture
async def premium_badges(factory):
    return [
        await factory.badge("premium_supporter", requirement_type="premium_unlock", is_premium_only=True),
        await factory.badge("premium_golden_heart", requirement_type="premium_unlock", is_premium_only=True),
    ]


class TestDurationLabel:
    def test_known_durations(self):
        assert duration_label(30) == "1 Month"
        assert duration_label(365) == "1 Year"
        assert duration_label(90) == "90 Days"


class TestPremiumApproval:
    """Approving a premium purchase activates subscription and badges."""

    @pytest.mark.asyncio
    async def test_activates_premium(self, db_session, factory, redis_mock, admin, premium_badges):
        buyer = await factory.profile("buyer")
        proof = await factory.payment(buyer)

        result = await review_proof(db_session, redis_mock, proof.id, admin.id, "approved", now=NOW)

        assert result.status == "approved"
        assert result.activated_features == ["Premium Tier (1 Month)", "2 Premium Badges"]
        assert result.audit.ok
        assert not result.idempotent
        assert buyer.premium_status is True

        subscription = (
            await db_session.execute(select(Subscription).where(Subscription.user_id == buyer.id))
        ).scalar_one()
        assert subscription.status == "active"
        assert ensure_utc(subscription.expires_at) == NOW + timedelta(days=30)

        transaction = await db_session.get(PaymentTransaction, proof.transaction_id)
        assert transaction.status == "completed"
        assert proof.status == "approved"
        assert proof.reviewed_by == admin.id
        assert await _count(db_session, UserBadge.id, UserBadge.user_id == buyer.id) == 2

        channels = [call.args[0] for call in redis_mock.publish.await_args_list]
        assert f"ws:user:{buyer.id}" in channels

    @pytest.mark.asyncio
    async def test_custom_duration(self, db_session, factory, redis_mock, admin):
        buyer = await factory.profile("buyer")
        proof = await factory.payment(buyer, item_type="subscription", item_name="Premium Yearly")

        result = await review_proof(
            db_session, redis_mock, proof.id, admin.id, "approved", duration_days=365, now=NOW
        )

        assert result.activated_features == ["Premium Tier (1 Year)"]

    @pytest.mark.asyncio
    async def test_badges_already_held_are_not_regranted(self, db_session, factory, redis_mock, admin, premium_badges):
        buyer = await factory.profile("buyer")
        db_session.add(UserBadge(user_id=buyer.id, badge_id=premium_badges[0].id, earned_at=NOW, source="premium"))
        await db_session.commit()
        proof = await factory.payment(buyer)

        result = await review_proof(db_session, redis_mock, proof.id, admin.id, "approved", now=NOW)

        assert result.activated_features == ["Premium Tier (1 Month)", "1 Premium Badge"]

    @pytest.mark.asyncio
    async def test_renewal_replaces_subscription_expiry(self, db_session, factory, redis_mock, admin):
        buyer = await factory.profile("buyer")
        first = await factory.payment(buyer)
        await review_proof(db_session, redis_mock, first.id, admin.id, "approved", now=NOW)

        later = NOW + timedelta(days=20)
        second = await factory.payment(buyer)
        await review_proof(db_session, redis_mock, second.id, admin.id, "approved", now=later)

        rows = (
            await db_session.execute(select(Subscription).where(Subscription.user_id == buyer.id))
        ).scalars().all()
        assert len(rows) == 1
        await db_session.refresh(rows[0])
        assert rows[0].expires_at.replace(tzinfo=None) == (later + timedelta(days=30)).replace(tzinfo=None)


class TestIdempotentReview:
    """Repeating a decision changes nothing; contradicting it is refused."""

    @pytest.mark.asyncio
    async def test_reapproval_is_a_noop(self, db_session, factory, redis_mock, admin, premium_badges):
        buyer = await factory.profile("buyer")
        proof = await factory.payment(buyer)
        buyer_id, proof_id, admin_id = buyer.id, proof.id, admin.id
        await review_proof(db_session, redis_mock, proof_id, admin_id, "approved", now=NOW)

        again = await review_proof(db_session, redis_mock, proof_id, admin_id, "approved", now=NOW)

        assert again.status == "approved"
        assert again.idempotent
        assert again.activated_features == []
        assert await _count(db_session, Subscription.id, Subscription.user_id == buyer_id) == 1
        assert await _count(db_session, UserBadge.id, UserBadge.user_id == buyer_id) == 2
        assert await _count(db_session, AdminAuditLog.id) == 1

    @pytest.mark.asyncio
    async def test_reject_after_approve_refused(self, db_session, factory, redis_mock, admin):
        buyer = await factory.profile("buyer")
        proof = await factory.payment(buyer)
        await review_proof(db_session, redis_mock, proof.id, admin.id, "approved", now=NOW)

        with pytest.raises(ProofAlreadyReviewed) as exc_info:
            await review_proof(db_session, redis_mock, proof.id, admin.id, "rejected", now=NOW)

        assert exc_info.value.status == "approved"

    @pytest.mark.asyncio
    async def test_stale_reviewer_sees_prior_approval(self, db_session, session_factory, factory, redis_mock, admin):
        buyer = await factory.profile("buyer")
        proof = await factory.payment(buyer)

        async with session_factory() as other:
            stale = await other.get(PaymentProof, proof.id)
            assert stale.status == "pending"
            await other.commit()

            await review_proof(db_session, redis_mock, proof.id, admin.id, "approved", now=NOW)
            result = await review_proof(other, redis_mock, proof.id, admin.id, "approved", now=NOW)

        assert result.idempotent
        assert result.activated_features == []
        async with session_factory() as check:
            assert await _count(check, Subscription.id) == 1
            assert await _count(check, AdminAuditLog.id) == 1


class TestRejection:
    @pytest.mark.asyncio
    async def test_reject_grants_nothing(self, db_session, factory, redis_mock, admin):
        buyer = await factory.profile("buyer")
        proof = await factory.payment(buyer)

        result = await review_proof(
            db_session, redis_mock, proof.id, admin.id, "rejected", admin_note="blurry screenshot", now=NOW
        )

        assert result.status == "rejected"
        assert result.activated_features == []
        assert buyer.premium_status is False
        assert proof.admin_note == "blurry screenshot"
        transaction = await db_session.get(PaymentTransaction, proof.transaction_id)
        assert transaction.status == "rejected"
        assert await _count(db_session, Subscription.id) == 0

    @pytest.mark.asyncio
    async def test_rereject_is_a_noop(self, db_session, factory, redis_mock, admin):
        buyer = await factory.profile("buyer")
        proof = await factory.payment(buyer)
        await review_proof(db_session, redis_mock, proof.id, admin.id, "rejected", now=NOW)

        again = await review_proof(db_session, redis_mock, proof.id, admin.id, "rejected", now=NOW)

        assert again.idempotent

    @pytest.mark.asyncio
    async def test_non_admin_cannot_review(self, db_session, factory, redis_mock):
        buyer = await factory.profile("buyer")
        proof = await factory.payment(buyer)

        with pytest.raises(NotPermitted):
            await review_proof(db_session, redis_mock, proof.id, buyer.id, "approved", now=NOW)

    @pytest.mark.asyncio
    async def test_unknown_proof(self, db_session, redis_mock, admin):
        with pytest.raises(PaymentProofNotFound):
            await review_proof(db_session, redis_mock, 404, admin.id, "approved", now=NOW)


class TestPowerUpPurchase:
    """Power-up purchases put one unit into the buyer's inventory."""

    @pytest.mark.asyncio
    async def test_grants_inventory_unit(self, db_session, factory, redis_mock, admin):
        buyer = await factory.profile("buyer")
        await factory.power_up("xp_booster", "XP Booster", "xp_boost", 24)
        proof = await factory.payment(buyer, item_type="power_up", item_name="xp booster", amount=Decimal("19.00"))

        result = await review_proof(db_session, redis_mock, proof.id, admin.id, "approved", now=NOW)

        assert result.activated_features == ["XP Booster"]
        units = (
            await db_session.execute(select(UserPowerUp).where(UserPowerUp.user_id == buyer.id))
        ).scalars().all()
        assert len(units) == 1
        assert units[0].source == "purchase"
        assert units[0].used_at is None

    @pytest.mark.asyncio
    async def test_unknown_power_up_rolls_back_review(self, db_session, session_factory, factory, redis_mock, admin):
        buyer = await factory.profile("buyer")
        proof = await factory.payment(buyer, item_type="power_up", item_name="Mystery Box")
        proof_id, transaction_id = proof.id, proof.transaction_id

        with pytest.raises(PartialActivationError) as exc_info:
            await review_proof(db_session, redis_mock, proof_id, admin.id, "approved", now=NOW)

        assert exc_info.value.proof_id == proof_id
        assert exc_info.value.step == "power_up"
        assert exc_info.value.activated == []
        async with session_factory() as check:
            assert (await check.get(PaymentProof, proof_id)).status == "pending"
            assert (await check.get(PaymentTransaction, transaction_id)).status == "pending"
            assert await _count(check, AdminAuditLog.id) == 0


class TestAuditFailure:
    @pytest.mark.asyncio
    async def test_approval_commits_when_audit_write_fails(
        self, db_session, session_factory, factory, redis_mock, admin, monkeypatch
    ):
        async def _broken(db, row):
            raise OperationalError("INSERT INTO admin_audit_log", {}, Exception("disk full"))

        monkeypatch.setattr(audit, "_write_audit_row", _broken)
        buyer = await factory.profile("buyer")
        proof = await factory.payment(buyer)

        result = await review_proof(db_session, redis_mock, proof.id, admin.id, "approved", now=NOW)

        assert result.status == "approved"
        assert result.audit.ok is False
        assert "disk full" in result.audit.error
        async with session_factory() as check:
            assert (await check.get(PaymentProof, proof.id)).status == "approved"
            assert (await check.get(Profile, buyer.id)).premium_status is True
            assert await _count(check, AdminAuditLog.id) == 0


class TestProofUpload:
    @pytest.mark.asyncio
    async def test_one_open_proof_per_transaction(self, db_session, factory):
        buyer = await factory.profile("buyer")
        transaction = await create_transaction(
            db_session, buyer.id, Decimal("99.00"), "premium", " Premium Monthly ", now=NOW
        )
        assert transaction.item_name == "Premium Monthly"
        assert transaction.currency == "INR"

        proof = await submit_proof(db_session, transaction.id, buyer.id, "proofs/a.png", "a.png", now=NOW)
        assert proof.status == "pending"

        with pytest.raises(ConstraintViolation):
            await submit_proof(db_session, transaction.id, buyer.id, "proofs/b.png", "b.png", now=NOW)

    @pytest.mark.asyncio
    async def test_cannot_attach_to_someone_elses_transaction(self, db_session, factory):
        buyer = await factory.profile("buyer")
        other = await factory.profile("other")
        transaction = await create_transaction(db_session, buyer.id, Decimal("99.00"), "premium", "Premium", now=NOW)

        with pytest.raises(TransactionNotFound):
            await submit_proof(db_session, transaction.id, other.id, "proofs/x.png", "x.png", now=NOW)

    @pytest.mark.asyncio
    async def test_rejects_bad_input(self, db_session, factory):
        buyer = await factory.profile("buyer")
        with pytest.raises(ValueError):
            await create_transaction(db_session, buyer.id, Decimal("0"), "premium", "Premium", now=NOW)
        with pytest.raises(ValueError):
            await create_transaction(db_session, buyer.id, Decimal("5"), "sticker", "Sticker", now=NOW)
