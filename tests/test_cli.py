"""
Test the database commands of the CLI.
"""

import pytest
from sqlalchemy import create_engine, inspect
from typer.testing import CliRunner

from basepulse.cli import app
from basepulse.core.config import settings


runner = CliRunner()


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = tmp_path / "cli.db"
    monkeypatch.setattr(settings, "database_url", f"sqlite+aiosqlite:///{path}")
    return path


def table_names(path):
    engine = create_engine(f"sqlite:///{path}")
    try:
        return set(inspect(engine).get_table_names())
    finally:
        engine.dispose()


def test_init_db_then_reset(db_path):
    result = runner.invoke(app, ["init-db"])
    assert result.exit_code == 0, result.output
    assert {"polls", "distribution_logs", "vote_records", "leaderboard", "checkpoints"} <= table_names(db_path)

    declined = runner.invoke(app, ["reset"], input="n\n")
    assert declined.exit_code == 0
    assert "cancelled" in declined.output
    assert "checkpoints" in table_names(db_path)

    result = runner.invoke(app, ["reset", "--yes"])
    assert result.exit_code == 0, result.output
    assert table_names(db_path) == set()
