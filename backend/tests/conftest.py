from __future__ import annotations

import os
from pathlib import Path

import pytest

DB_PATH = Path(__file__).resolve().parent / "test_consensus.db"
os.environ["DATABASE_URL"] = f"sqlite:///{DB_PATH}"

from sqlalchemy import func, select  # noqa: E402

from consensus import models  # noqa: E402,F401
from consensus.db import Base, SessionLocal, engine  # noqa: E402
from consensus.models import VoteModel  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def database():
    engine.dispose()
    if DB_PATH.exists():
        DB_PATH.unlink()
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
    if DB_PATH.exists():
        DB_PATH.unlink()


@pytest.fixture
def vote_count():
    """Count stored vote rows for one member, option and round."""

    def count(lobby_id: str, round_number: int, user_id: str, option_id: str) -> int:
        with SessionLocal() as db:
            return db.scalar(
                select(func.count(VoteModel.id)).where(
                    VoteModel.lobby_id == lobby_id,
                    VoteModel.round_number == round_number,
                    VoteModel.user_id == user_id,
                    VoteModel.option_id == option_id,
                )
            )

    return count
