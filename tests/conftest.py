"""Shared fixtures for musync tests."""

from __future__ import annotations

from pathlib import Path

import pytest
import pytest_asyncio

from musync.storage import Database


@pytest.fixture()
def base_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Redirect all musync runtime files to a temporary directory.

    Patches ``musync.config.get_base_dir`` (and the re-imported reference in
    ``musync.cli``) so that nothing touches the real ``~/.musync/``.
    """
    fake_base = tmp_path / ".musync"
    fake_base.mkdir()
    (fake_base / "logs").mkdir()

    monkeypatch.setattr("musync.config.get_base_dir", lambda: fake_base)
    monkeypatch.setattr("musync.cli.get_base_dir", lambda: fake_base)

    return fake_base


@pytest_asyncio.fixture()
async def db(tmp_path: Path):
    database = Database(tmp_path / "test.db")
    await database.connect()
    yield database
    await database.close()
