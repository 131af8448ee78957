"""Initial schema.

Creates profiles, quests and quest_logs, the XP ledger, badge and power-up
catalogues with their grants, teams and friendships, solo/duo/team
challenges with reward audit rows, payment transactions, proofs and
subscriptions, admin audit log and notifications.

Tables come from the ORM metadata as of this revision. The duo capacity
triggers on ``teams`` are emitted with the table for the connected dialect.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-18
"""

from collections.abc import Sequence

from alembic import op

from questline.db import models  # noqa: F401
from questline.db.base import Base

revision: str = "001_initial_schema"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    Base.metadata.create_all(bind=op.get_bind())


def downgrade() -> None:
    bind = op.get_bind()
    Base.metadata.drop_all(bind=bind)
    if bind.dialect.name == "postgresql":
        op.execute("DROP FUNCTION IF EXISTS teams_clamp_duo_capacity()")
