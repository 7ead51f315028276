import os
import tempfile

# keep the module-level engine in database.py away from ./data
os.environ.setdefault("LEDGER_DATA_DIR", tempfile.mkdtemp(prefix="ledger-tests-"))
os.environ.setdefault("LEDGER_TIMEZONE", "UTC")

import pytest
from sqlalchemy.orm import sessionmaker

from database import Base, make_engine
import models  # noqa: F401


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'ledger.db'}", timeout_secs=5)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
