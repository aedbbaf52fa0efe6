import logging

import pytest


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'leaderboard.db'}"


@pytest.fixture(autouse=True)
def quiet_sqlalchemy():
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
