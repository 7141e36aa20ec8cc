"""Read highlights from the Apple Books SQLite databases.

The library database (BKLibrary) holds book titles and authors; the
annotation database (AEAnnotation) holds the highlights. Both are opened
read-only: the library database is the main connection and the annotation
database is attached under a configurable alias.
"""

import logging
import sqlite3
from contextlib import closing
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional, Tuple

if TYPE_CHECKING:
    from booksync.staging import StagedDatabases

log = logging.getLogger(__name__)

# Table names are the same on every Mac; only the attach alias is configurable
ANNOTATION_TABLE = "ZAEANNOTATION"
LIBRARY_ASSET_TABLE = "ZBKLIBRARYASSET"

_NO_LOWER_BOUND = -(2 ** 63)

_HIGHLIGHTS_SQL = """\
SELECT
    a.Z_PK,
    COALESCE(NULLIF(b.ZTITLE, ''), 'Unknown Title'),
    COALESCE(NULLIF(b.ZAUTHOR, ''), 'Unknown Author'),
    a.ZANNOTATIONSELECTEDTEXT
FROM [{alias}].{annotations} AS a
LEFT JOIN {assets} AS b ON b.ZASSETID = a.ZANNOTATIONASSETID
WHERE a.ZANNOTATIONDELETED = 0
  AND a.ZANNOTATIONSELECTEDTEXT IS NOT NULL
  AND TRIM(a.ZANNOTATIONSELECTEDTEXT) != ''
  AND a.Z_PK > ?
ORDER BY a.Z_PK ASC
"""


class SourceUnavailable(Exception):
    """The highlight databases could not be opened or queried."""


@dataclass(frozen=True)
class Highlight:
    pk: int
    book_title: str
    book_author: str
    text: str


def _ro_uri(path: Path) -> str:
    return f"{Path(path).resolve().as_uri()}?mode=ro"


class AnnotationStore:
    """Highlight source backed by (staged copies of) the Apple Books databases.

    A fresh read-only connection is opened for each query so that a database
    copy refreshed between queries is always read in full.
    """

    def __init__(
        self,
        annotation_db: Path,
        library_db: Path,
        attach_alias: str = "AEAnnotation",
        staging: Optional["StagedDatabases"] = None,
    ) -> None:
        self.annotation_db = Path(annotation_db)
        self.library_db = Path(library_db)
        self.attach_alias = attach_alias
        self.staging = staging

    def _connect(self) -> sqlite3.Connection:
        log.debug("Opening library DB: %s", self.library_db)
        conn = sqlite3.connect(_ro_uri(self.library_db), uri=True)
        try:
            conn.execute(
                f"ATTACH DATABASE ? AS [{self.attach_alias}]",
                (_ro_uri(self.annotation_db),),
            )
        except sqlite3.Error:
            conn.close()
            raise
        return conn

    def check(self) -> None:
        """Verify both databases look like Apple Books databases.

        Warns if the library has no books (highlights would all be
        "Unknown Title"); raises SourceUnavailable if a table is missing.
        """
        try:
            with closing(self._connect()) as conn:
                row = conn.execute(
                    f"SELECT 1 FROM [{LIBRARY_ASSET_TABLE}] LIMIT 1"
                ).fetchone()
                if row is None:
                    log.warning(
                        "Table %s is empty, highlights will have no book info",
                        LIBRARY_ASSET_TABLE,
                    )
                found = conn.execute(
                    f"SELECT name FROM [{self.attach_alias}].sqlite_master "
                    "WHERE type = 'table' AND name = ?",
                    (ANNOTATION_TABLE,),
                ).fetchone()
        except sqlite3.Error as e:
            raise SourceUnavailable(f"Could not open highlight databases: {e}") from e
        if found is None:
            raise SourceUnavailable(
                f"Table {ANNOTATION_TABLE} not found in {self.annotation_db}"
            )
        log.debug("Verified %s and %s", LIBRARY_ASSET_TABLE, ANNOTATION_TABLE)

    def _query(self, min_exclusive_pk: int) -> List[Highlight]:
        if self.staging is not None:
            try:
                self.staging.refresh()
            except OSError as e:
                raise SourceUnavailable(f"Could not refresh staged databases: {e}") from e

        sql = _HIGHLIGHTS_SQL.format(
            alias=self.attach_alias,
            annotations=ANNOTATION_TABLE,
            assets=LIBRARY_ASSET_TABLE,
        )
        try:
            with closing(self._connect()) as conn:
                rows: List[Tuple[int, str, str, str]] = conn.execute(
                    sql, (min_exclusive_pk,)
                ).fetchall()
        except sqlite3.Error as e:
            raise SourceUnavailable(f"Highlight query failed: {e}") from e

        return [
            Highlight(pk=pk, book_title=title, book_author=author, text=text)
            for pk, title, author, text in rows
        ]

    def fetch_since(self, min_exclusive_pk: int) -> List[Highlight]:
        """Return highlights with a primary key above min_exclusive_pk, ascending."""
        highlights = self._query(min_exclusive_pk)
        log.debug("Fetched %d highlight(s) since PK %d", len(highlights), min_exclusive_pk)
        return highlights

    def fetch_all(self) -> List[Highlight]:
        """Return every highlight, ascending by primary key."""
        highlights = self._query(_NO_LOWER_BOUND)
        log.debug("Fetched %d highlight(s) in total", len(highlights))
        return highlights
