"""Shared fixtures: miniature Apple Books databases."""

import sqlite3
from pathlib import Path

import pytest


class AppleBooksDBs:
    """Builds BKLibrary / AEAnnotation databases with the tables booksync reads."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.annotation_db = root / "AEAnnotation" / "AEAnnotation_v10312011_1727_local.sqlite"
        self.library_db = root / "BKLibrary" / "BKLibrary-1-091020131601.sqlite"
        self.annotation_db.parent.mkdir(parents=True)
        self.library_db.parent.mkdir(parents=True)

        with sqlite3.connect(self.library_db) as conn:
            conn.execute(
                "CREATE TABLE ZBKLIBRARYASSET ("
                "Z_PK INTEGER PRIMARY KEY, ZASSETID TEXT, ZTITLE TEXT, ZAUTHOR TEXT)"
            )
        with sqlite3.connect(self.annotation_db) as conn:
            conn.execute(
                "CREATE TABLE ZAEANNOTATION ("
                "Z_PK INTEGER PRIMARY KEY, ZANNOTATIONASSETID TEXT, "
                "ZANNOTATIONSELECTEDTEXT TEXT, ZANNOTATIONDELETED INTEGER DEFAULT 0)"
            )

    def add_book(self, asset_id: str, title, author) -> None:
        with sqlite3.connect(self.library_db) as conn:
            conn.execute(
                "INSERT INTO ZBKLIBRARYASSET (ZASSETID, ZTITLE, ZAUTHOR) VALUES (?, ?, ?)",
                (asset_id, title, author),
            )

    def add_highlight(self, pk: int, asset_id: str, text, deleted: int = 0) -> None:
        with sqlite3.connect(self.annotation_db) as conn:
            conn.execute(
                "INSERT INTO ZAEANNOTATION "
                "(Z_PK, ZANNOTATIONASSETID, ZANNOTATIONSELECTEDTEXT, ZANNOTATIONDELETED) "
                "VALUES (?, ?, ?, ?)",
                (pk, asset_id, text, deleted),
            )


@pytest.fixture()
def apple_books(tmp_path):
    return AppleBooksDBs(tmp_path / "Documents")


_BOOKSYNC_VARS = [
    "OBSIDIAN_VAULT_PATH", "BOOKSYNC_FOLDER", "BOOKSYNC_TEMPLATE",
    "BOOKSYNC_SOURCE_BASE", "BOOKSYNC_ANNOTATION_DIR", "BOOKSYNC_ANNOTATION_FILE",
    "BOOKSYNC_LIBRARY_DIR", "BOOKSYNC_LIBRARY_FILE", "BOOKSYNC_STAGING_DIR",
    "BOOKSYNC_ATTACH_ALIAS", "BOOKSYNC_DEBOUNCE_SECONDS", "BOOKSYNC_SYNC_INTERVAL",
    "BOOKSYNC_NOTIFY", "LOG_LEVEL",
]


@pytest.fixture()
def clean_env(tmp_path, monkeypatch):
    """Unset every booksync variable and hide any real .env file."""
    from booksync import config

    for key in _BOOKSYNC_VARS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(config, "ENV_PATH", tmp_path / ".env")
    monkeypatch.setattr(config, "CONFIG_DIR", tmp_path / "cfg")
    return monkeypatch
