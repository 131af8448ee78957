"""Alembic migration tests.

File named test_zzz_alembic.py to sort LAST in pytest collection order.
"""

import os
import subprocess
import sys
from pathlib import Path

from sqlalchemy import create_engine, inspect, text

API_DIR = Path(__file__).resolve().parents[1]


def _alembic(db_path: Path, *args: str) -> subprocess.CompletedProcess[str]:
    env = {
        **os.environ,
        "QL_DATABASE_URL": f"sqlite+aiosqlite:///{db_path}",
        "PYTHONPATH": os.pathsep.join(filter(None, [str(API_DIR / "src"), os.environ.get("PYTHONPATH")])),
    }
    return subprocess.run(
        [sys.executable, "-m", "alembic", *args],
        cwd=API_DIR,
        env=env,
        capture_output=True,
        text=True,
    )


def test_alembic_upgrade_head(tmp_path: Path) -> None:
    """alembic upgrade head creates every table on an empty database."""
    db_path = tmp_path / "migrated.db"

    result = _alembic(db_path, "upgrade", "head")

    assert result.returncode == 0, f"alembic upgrade failed: {result.stderr}"
    tables = set(inspect(create_engine(f"sqlite:///{db_path}")).get_table_names())
    assert {"profiles", "quest_logs", "teams", "payment_proofs", "alembic_version"} <= tables


def test_alembic_current_shows_head(tmp_path: Path) -> None:
    """alembic current shows the latest revision."""
    db_path = tmp_path / "migrated.db"
    assert _alembic(db_path, "upgrade", "head").returncode == 0

    result = _alembic(db_path, "current")

    assert result.returncode == 0
    assert "001_initial_schema" in result.stdout


def test_migrated_schema_clamps_raw_duo_insert(tmp_path: Path) -> None:
    """The duo capacity trigger ships with the migration, not only the ORM."""
    db_path = tmp_path / "migrated.db"
    assert _alembic(db_path, "upgrade", "head").returncode == 0

    engine = create_engine(f"sqlite:///{db_path}")
    with engine.begin() as conn:
        conn.execute(
            text(
                "INSERT INTO teams (name, team_type, max_members, creator_id, xp, created_at) "
                "VALUES ('Pair', 'duo', 100, 1, 0, '2024-01-10 09:00:00')"
            )
        )
        max_members = conn.execute(text("SELECT max_members FROM teams WHERE name = 'Pair'")).scalar_one()

    assert max_members == 2


def test_alembic_downgrade_base(tmp_path: Path) -> None:
    db_path = tmp_path / "migrated.db"
    assert _alembic(db_path, "upgrade", "head").returncode == 0

    result = _alembic(db_path, "downgrade", "base")

    assert result.returncode == 0, f"alembic downgrade failed: {result.stderr}"
    assert "teams" not in inspect(create_engine(f"sqlite:///{db_path}")).get_table_names()
