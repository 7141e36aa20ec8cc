"""One sync pass: fetch new highlights, write book notes, advance the watermark."""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List

from booksync.annotations import AnnotationStore, Highlight
from booksync.exporter import BookData, Exporter, WriteError, book_key
from booksync.state import State

log = logging.getLogger(__name__)


@dataclass
class SyncResult:
    records: int = 0
    books: int = 0
    errors: int = 0
    watermark_before: int = 0
    watermark_after: int = 0
    state_saved: bool = True

    @property
    def ok(self) -> bool:
        """False if the new watermark could not be persisted."""
        return self.state_saved

    def summary(self) -> str:
        if not self.records:
            return f"No new highlights since PK {self.watermark_before}"
        line = (
            f"{self.records} highlight(s), {self.books} book(s), "
            f"{self.errors} error(s), last PK {self.watermark_before} -> "
            f"{self.watermark_after}"
        )
        if not self.state_saved:
            line += " (state NOT saved)"
        return line


def group_highlights(highlights: Iterable[Highlight]) -> Dict[str, BookData]:
    """Group highlights by book key, keeping fetch order within each book.

    The first highlight seen for a book decides its title and author.
    """
    books: Dict[str, BookData] = {}
    for h in highlights:
        key = book_key(h.book_title)
        if key not in books:
            books[key] = BookData(title=h.book_title, author=h.book_author)
        books[key].highlights.append(h.text)
    return books


def _export(
    highlights: List[Highlight], exporter: Exporter, state: State,
) -> SyncResult:
    result = SyncResult(
        watermark_before=state.last_pk, watermark_after=state.last_pk,
    )
    books = group_highlights(highlights)
    max_pk = max([state.last_pk] + [h.pk for h in highlights])
    result.records = len(highlights)
    result.books = len(books)

    log.info(
        "Processing %d highlight(s) across %d book(s) (max PK: %d)...",
        result.records, result.books, max_pk,
    )

    for book in books.values():
        try:
            exporter.write_book(book)
        except WriteError:
            log.exception("Export failed for book '%s'", book.title)
            result.errors += 1

    if max_pk > state.last_pk:
        try:
            state.advance(max_pk)
        except OSError:
            log.exception("Failed to save state with last PK %d", max_pk)
            result.state_saved = False
    else:
        log.info("No update to last PK needed (still %d)", state.last_pk)

    result.watermark_after = state.last_pk
    return result


def run_sync(source: AnnotationStore, exporter: Exporter, state: State) -> SyncResult:
    """Export every highlight newer than the stored watermark.

    SourceUnavailable propagates; the watermark is untouched in that case.
    """
    since = state.last_pk
    highlights = source.fetch_since(since)
    if not highlights:
        result = SyncResult(watermark_before=since, watermark_after=since)
    else:
        result = _export(highlights, exporter, state)
    log.info("Sync finished: %s", result.summary())
    return result


def run_full_export(
    source: AnnotationStore, exporter: Exporter, state: State,
) -> SyncResult:
    """Rewrite the note of every book from all highlights in the source.

    The watermark only ever moves forward, even if the source now holds
    fewer highlights than before.
    """
    highlights = source.fetch_all()
    if not highlights:
        result = SyncResult(watermark_before=state.last_pk, watermark_after=state.last_pk)
    else:
        result = _export(highlights, exporter, state)
    log.info("Full export finished: %s", result.summary())
    return result
