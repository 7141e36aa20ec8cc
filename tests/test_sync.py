"""Tests for the sync pass: grouping, partial failures, watermark handling."""

from unittest.mock import MagicMock, patch

import pytest


class FakeSource:
    """In-memory highlight source honouring the fetch_since contract."""

    def __init__(self, highlights=()):
        self.highlights = list(highlights)
        self.calls = []

    def fetch_since(self, pk):
        self.calls.append(pk)
        return sorted((h for h in self.highlights if h.pk > pk), key=lambda h: h.pk)

    def fetch_all(self):
        self.calls.append(None)
        return sorted(self.highlights, key=lambda h: h.pk)


def _h(pk, title, text, author="Someone"):
    from booksync.annotations import Highlight

    return Highlight(pk=pk, book_title=title, book_author=author, text=text)


def _state(tmp_path, last_pk=0):
    from booksync.state import State

    s = State.load(tmp_path)
    if last_pk:
        s.advance(last_pk)
    return s


@pytest.fixture()
def vault(tmp_path):
    return tmp_path / "vault"


class TestGroupHighlights:
    def test_groups_by_normalized_title(self):
        from booksync.sync import group_highlights

        books = group_highlights([
            _h(1, "Dune", "a", author="Frank Herbert"),
            _h(2, "DUNE!", "b", author="F. Herbert"),
            _h(3, "Foundation", "c"),
        ])
        assert list(books) == ["dune", "foundation"]
        assert books["dune"].highlights == ["a", "b"]
        # First record decides title and author
        assert books["dune"].title == "Dune"
        assert books["dune"].author == "Frank Herbert"

    def test_non_latin_titles_are_separate_books(self):
        from booksync.sync import group_highlights

        books = group_highlights([
            _h(1, "Война и мир", "war quote"),
            _h(2, "百年孤独", "solitude quote"),
        ])
        assert len(books) == 2
        assert [b.highlights for b in books.values()] == [["war quote"], ["solitude quote"]]

    def test_repeated_grouping_is_identical(self):
        from booksync.sync import group_highlights

        records = [_h(i, t, str(i)) for i, t in enumerate(["B", "a", "b", "A"], start=1)]
        assert group_highlights(records) == group_highlights(records)


class TestRunSync:
    def test_empty_source(self, vault):
        from booksync.exporter import Exporter
        from booksync.sync import run_sync

        state = _state(vault, 4)
        result = run_sync(FakeSource(), Exporter(vault), state)

        assert (result.records, result.books, result.errors) == (0, 0, 0)
        assert result.watermark_after == 4
        assert result.summary() == "No new highlights since PK 4"
        assert not (vault / "apple_books_sync").exists()

    def test_dune_and_foundation(self, vault):
        from booksync.exporter import Exporter
        from booksync.state import State
        from booksync.sync import run_sync

        source = FakeSource([
            _h(5, "Dune", "Fear is the mind-killer."),
            _h(6, "Foundation", "Violence is the last refuge of the incompetent."),
            _h(7, "Dune", "The spice must flow."),
        ])
        state = _state(vault, 4)
        result = run_sync(source, Exporter(vault), state)

        notes = sorted(p.name for p in (vault / "apple_books_sync").iterdir())
        assert notes == ["dune.md", "foundation.md"]
        dune = (vault / "apple_books_sync" / "dune.md").read_text()
        assert dune.index("mind-killer") < dune.index("spice")
        assert (result.records, result.books, result.errors) == (3, 2, 0)
        assert result.watermark_before == 4
        assert result.watermark_after == 7
        assert State.load(vault).last_pk == 7

    def test_non_latin_books_get_their_own_notes(self, vault):
        from booksync.exporter import Exporter, book_key
        from booksync.sync import run_sync

        source = FakeSource([
            _h(1, "Война и мир", "war quote", author="Лев Толстой"),
            _h(2, "百年孤独", "solitude quote"),
        ])
        result = run_sync(source, Exporter(vault), _state(vault))

        assert result.books == 2
        folder = vault / "apple_books_sync"
        assert len(list(folder.iterdir())) == 2
        war = (folder / f"{book_key('Война и мир')}.md").read_text(encoding="utf-8")
        assert "> war quote" in war
        assert "solitude" not in war
        assert "# Война и мир" in war

    def test_records_not_refetched_after_advance(self, vault):
        from booksync.exporter import Exporter
        from booksync.sync import run_sync

        source = FakeSource([_h(1, "Dune", "a"), _h(2, "Dune", "b")])
        state = _state(vault)
        run_sync(source, Exporter(vault), state)

        source.highlights.append(_h(3, "Dune", "c"))
        result = run_sync(source, Exporter(vault), state)

        assert source.calls == [0, 2]
        assert result.records == 1
        assert "> c" in (vault / "apple_books_sync" / "dune.md").read_text()

    def test_partial_failure_isolated(self, vault):
        from booksync.exporter import Exporter, WriteError
        from booksync.state import State
        from booksync.sync import run_sync

        exporter = Exporter(vault)
        real_write = exporter.write_book

        def flaky_write(book):
            if book.title == "B":
                raise WriteError(book.title, "boom")
            return real_write(book)

        exporter.write_book = flaky_write
        source = FakeSource([_h(1, "A", "a"), _h(2, "B", "b"), _h(3, "C", "c")])
        state = _state(vault)

        result = run_sync(source, exporter, state)

        folder = vault / "apple_books_sync"
        assert (folder / "a.md").exists()
        assert not (folder / "b.md").exists()
        assert (folder / "c.md").exists()
        assert result.errors == 1
        assert result.books == 3
        assert result.ok
        assert State.load(vault).last_pk == 3

    def test_source_unavailable_leaves_watermark(self, vault):
        from booksync.annotations import SourceUnavailable
        from booksync.exporter import Exporter
        from booksync.state import State
        from booksync.sync import run_sync

        source = MagicMock()
        source.fetch_since.side_effect = SourceUnavailable("db locked")
        state = _state(vault, 4)

        with pytest.raises(SourceUnavailable):
            run_sync(source, Exporter(vault), state)
        assert State.load(vault).last_pk == 4

    def test_save_failure_then_recovery(self, vault):
        from booksync.exporter import Exporter
        from booksync.state import State
        from booksync.sync import run_sync

        source = FakeSource([_h(pk, "Dune" if pk % 2 else "Foundation", f"h{pk}") for pk in range(5, 11)])
        exporter = Exporter(vault)
        state = _state(vault, 4)

        with patch("booksync.state.os.replace", side_effect=OSError("read-only")):
            result = run_sync(source, exporter, state)

        assert not result.ok
        assert result.records == 6
        assert result.watermark_after == 4
        assert "state NOT saved" in result.summary()
        folder = vault / "apple_books_sync"
        first = {p.name: p.read_bytes() for p in folder.iterdir()}
        assert sorted(first) == ["dune.md", "foundation.md"]
        assert State.load(vault).last_pk == 4

        # Next pass re-fetches 5..10 and rewrites identical notes
        result = run_sync(source, exporter, state)
        assert source.calls == [4, 4]
        assert result.ok
        assert result.records == 6
        assert {p.name: p.read_bytes() for p in folder.iterdir()} == first
        assert State.load(vault).last_pk == 10

    def test_watermark_seeded_at_current_value(self, vault):
        from booksync.exporter import Exporter
        from booksync.sync import run_sync

        # A source that (wrongly) returns old records must not lower the watermark
        source = MagicMock()
        source.fetch_since.return_value = [_h(2, "Dune", "old")]
        state = _state(vault, 9)

        result = run_sync(source, Exporter(vault), state)
        assert result.watermark_after == 9
        assert state.last_pk == 9


class TestFullExport:
    def test_rewrites_everything(self, vault):
        from booksync.exporter import Exporter
        from booksync.state import State
        from booksync.sync import run_full_export

        source = FakeSource([_h(1, "Dune", "a"), _h(2, "Dune", "b"), _h(3, "Foundation", "c")])
        state = _state(vault, 2)

        result = run_full_export(source, Exporter(vault), state)

        assert source.calls == [None]
        assert result.records == 3
        dune = (vault / "apple_books_sync" / "dune.md").read_text()
        assert "> a" in dune and "> b" in dune
        assert State.load(vault).last_pk == 3

    def test_never_lowers_watermark(self, vault):
        from booksync.exporter import Exporter
        from booksync.sync import run_full_export

        source = FakeSource([_h(1, "Dune", "a")])
        state = _state(vault, 50)

        result = run_full_export(source, Exporter(vault), state)
        assert result.watermark_after == 50
        assert state.last_pk == 50
