import pytest

from testbay.db import models  # noqa: F401
from testbay.db.base import Base, build_engine, build_session_factory


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(engine)
    try:
        yield build_session_factory(engine)
    finally:
        engine.dispose()
