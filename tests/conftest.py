from pathlib import Path

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from datashift.config import ShifterConfig
from datashift.database import build_session_factory
from shift_models import Base, User


@pytest.fixture()
def database_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'test.db'}"


@pytest.fixture()
def session_factory(database_url: str) -> sessionmaker[Session]:
    return build_session_factory(database_url, Base.metadata)


@pytest.fixture()
def shift_config(database_url: str) -> ShifterConfig:
    return ShifterConfig(
        database_url=database_url,
        progress_enabled=False,
        no_transaction_countdown=0,
    )


@pytest.fixture()
def users(session_factory: sessionmaker[Session]) -> list[int]:
    with session_factory() as db:
        db.add_all([User(email=f"user{index}@example.com") for index in range(1, 4)])
        db.commit()
        return list(db.scalars(select(User.id).order_by(User.id)))

