"""Markdown note output (Obsidian vault or plain folder).

Writes one note per book into a folder of the vault. Each write replaces the
note completely with the highlights it is given, and the content depends only
on those inputs, so re-exporting the same book yields an identical file.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from slugify import slugify

log = logging.getLogger(__name__)

_NOTE_TEMPLATE = """\
---
title: "{title_yaml}"
author: "{author_yaml}"
highlight_count: {highlight_count}
tags:
  - book
  - highlights
---

# {title}

*{author}*

## Highlights

{highlights}
"""

_SAMPLE_FIELDS = {
    "title": "Title",
    "title_yaml": "Title",
    "author": "Author",
    "author_yaml": "Author",
    "highlights": "- Highlight",
    "highlight_count": 1,
    "key": "title",
}


class WriteError(Exception):
    """A book's note could not be written."""

    def __init__(self, title: str, reason: str) -> None:
        super().__init__(f"Could not write note for '{title}': {reason}")
        self.title = title


@dataclass
class BookData:
    title: str
    author: str
    highlights: List[str] = field(default_factory=list)


def book_key(title: str) -> str:
    """Derive the note name for a book title.

    Lowercase ASCII words joined by hyphens, so titles that differ only in
    case, accents or punctuation map to the same key. Other scripts are
    transliterated (Cyrillic, CJK, Greek, ...) so they keep distinct keys.
    """
    return slugify(title) or "untitled"


def _escape_yaml(s: str) -> str:
    """Escape a string for use in YAML double-quoted context."""
    return s.replace("\\", "\\\\").replace('"', '\\"').replace("\n", " ")


def _render_highlights_md(highlights: List[str]) -> str:
    """Render highlights as a markdown quote list."""
    if not highlights:
        return "*No highlights.*"
    return "\n\n".join(
        "> " + h.strip().replace("\n", "\n> ") for h in highlights
    )


class Exporter:
    """Writes book notes into <vault>/<folder>/<book key>.md."""

    def __init__(
        self,
        vault_dir: Path,
        template_path: Optional[Path] = None,
        folder: str = "apple_books_sync",
    ) -> None:
        self.vault_dir = Path(vault_dir)
        self.folder = folder
        if template_path is not None:
            try:
                self.template = Path(template_path).read_text()
            except OSError as e:
                raise ValueError(f"Could not read template {template_path}: {e}") from e
        else:
            self.template = _NOTE_TEMPLATE
        self._validate_template()

    def _validate_template(self) -> None:
        try:
            self.template.format(**_SAMPLE_FIELDS)
        except (KeyError, IndexError, ValueError) as e:
            raise ValueError(
                f"Invalid note template (allowed fields: "
                f"{', '.join(sorted(_SAMPLE_FIELDS))}): {e!r}"
            ) from e

    @property
    def notes_dir(self) -> Path:
        return self.vault_dir / self.folder

    def note_path(self, title: str) -> Path:
        return self.notes_dir / f"{book_key(title)}.md"

    def render(self, book: BookData) -> str:
        return self.template.format(
            title=book.title,
            title_yaml=_escape_yaml(book.title),
            author=book.author,
            author_yaml=_escape_yaml(book.author),
            highlights=_render_highlights_md(book.highlights),
            highlight_count=len(book.highlights),
            key=book_key(book.title),
        )

    def write_book(self, book: BookData) -> Path:
        """Write (or overwrite) the note for a book.

        Raises WriteError if the note could not be rendered or written.
        """
        path = self.note_path(book.title)
        try:
            content = self.render(book)
            self.notes_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except (OSError, KeyError, IndexError, ValueError) as e:
            raise WriteError(book.title, str(e)) from e
        log.debug("Wrote %d highlight(s) to %s", len(book.highlights), path)
        return path
