import os
import sys
import pytest

# ensure project root in sys.path so the flat modules import without installing
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from sqlmodel import SQLModel, create_engine
from notifications import bus
import db as db_mod


@pytest.fixture(autouse=True)
def fresh_db(tmp_path, monkeypatch):
    """Each test runs against a fresh SQLite file and an empty notification bus."""
    test_db = f"sqlite:///{tmp_path}/test.db"
    new_engine = create_engine(test_db, echo=False, connect_args={"check_same_thread": False})
    monkeypatch.setattr(db_mod, "engine", new_engine)
    SQLModel.metadata.create_all(new_engine)
    bus.reset()
    yield new_engine
    bus.reset()
    SQLModel.metadata.drop_all(new_engine)
    new_engine.dispose()
