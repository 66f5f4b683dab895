import os
import tempfile
from datetime import date
from pathlib import Path

import pytest
from sqlmodel import Session, SQLModel, create_engine

TEST_DB = Path(tempfile.gettempdir()) / "outings_test_app.sqlite3"
os.environ["DATABASE_URL"] = f"sqlite:///{TEST_DB}"

from outings.database import Outing  # noqa: E402
from outings.rules import MODES  # noqa: E402


def make_outing(**overrides) -> Outing:
    values = {
        "name": "Blue Ridge Scramble",
        "format_type": "Scramble",
        "start_date": date(2026, 6, 14),
        "end_date": date(2026, 6, 14),
        "status": "open",
        "team_size_min": 2,
        "team_size_max": 4,
        "allowed_modes": list(MODES),
        "member_only": False,
        "allow_guests": True,
    }
    values.update(overrides)
    return Outing(**values)


def player(name: str, **extra) -> dict[str, object]:
    entry = {"name": name, "email": f"{name.lower().replace(' ', '.')}@example.com"}
    entry.update(extra)
    return entry


@pytest.fixture
def db_engine():
    engine = create_engine("sqlite://")
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(db_engine):
    with Session(db_engine) as session:
        yield session


@pytest.fixture
def add_outing(session):
    def _add(**overrides) -> Outing:
        outing = make_outing(**overrides)
        session.add(outing)
        session.commit()
        session.refresh(outing)
        return outing

    return _add
