"""Shared pytest fixtures for the migration tests."""

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Callable, Dict, List, Tuple

import pytest


# Same shape the Playback Reporting plugin creates.
PLAYBACK_ACTIVITY_SCHEMA = """
CREATE TABLE PlaybackActivity (
    DateCreated DATETIME NOT NULL,
    UserId TEXT,
    ItemId TEXT,
    ItemType TEXT,
    ItemName TEXT,
    PlaybackMethod TEXT,
    ClientName TEXT,
    DeviceName TEXT,
    PlayDuration INT
)
"""


@pytest.fixture
def playback_db(tmp_path: Path) -> Path:
    path = tmp_path / "playback_reporting.db"
    conn = sqlite3.connect(path)
    with conn:
        conn.execute(PLAYBACK_ACTIVITY_SCHEMA)
    conn.close()
    return path


@pytest.fixture
def fetch_rows() -> Callable[[Path], List[Tuple[Any, ...]]]:
    def _fetch(path: Path) -> List[Tuple[Any, ...]]:
        conn = sqlite3.connect(path)
        try:
            return conn.execute(
                "SELECT * FROM PlaybackActivity ORDER BY rowid"
            ).fetchall()
        finally:
            conn.close()

    return _fetch


@pytest.fixture
def input_tsv(tmp_path: Path) -> Callable[..., Path]:
    def _write(*lines: str, name: str = "input.tsv") -> Path:
        path = tmp_path / name
        path.write_text("".join(f"{line}\n" for line in lines), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def write_config(tmp_path: Path) -> Callable[..., Path]:
    def _write(overrides: Dict[str, Any], name: str = "config.json") -> Path:
        payload: Dict[str, Any] = {
            "instance_old": {"base_url": "old.local:8096/", "api_token": "old-token"},
            "instance_new": {"base_url": "https://new.local", "api_token": "new-token"},
            "runtime": {
                "log_file_path": str(tmp_path / "logs" / "migration.log"),
                "console_mode": "raw",
            },
        }
        payload.update(overrides)
        path = tmp_path / name
        path.write_text(json.dumps(payload), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def restore_root_logging():
    root_logger = logging.getLogger()
    saved_handlers = list(root_logger.handlers)
    saved_level = root_logger.level
    yield
    for handler in list(root_logger.handlers):
        if handler not in saved_handlers:
            root_logger.removeHandler(handler)
            handler.close()
    for handler in saved_handlers:
        if handler not in root_logger.handlers:
            root_logger.addHandler(handler)
    root_logger.setLevel(saved_level)
    logging.captureWarnings(False)
