"""Tests for the SQLite catalog store."""

from __future__ import annotations

import datetime as dt
import sqlite3
from dataclasses import replace

import pytest

from catalog_ranker import (
    ArchiveBatchError,
    CatalogKey,
    CatalogStore,
    DuplicateEntryError,
    IntegrityViolation,
    InvalidScoreError,
    MissingEntryError,
    MissingRankError,
    RankedEntry,
    decode_date,
    decode_genres,
    decode_optional,
    decode_service,
    encode_date,
    encode_genres,
    encode_optional,
)
from conftest import RESOLVED_AT, make_entry, make_rank


class TestRoundTrip:
    def test_entry_and_rank_read_back_equal(self, store):
        rank = make_rank(101, 91)
        entry = make_entry("Frieren", rank_id=rank.rank_id)
        store.insert(entry, rank)

        assert store.query() == [RankedEntry(entry=entry, rank=rank)]

    def test_absent_fields_read_back_absent(self, store):
        rank = make_rank(102, None, genres=(), release_date=None, summary=None)
        store.insert(make_entry("Unscored"), rank)

        (row,) = store.query()
        assert row.rank == rank
        assert row.rank.score is None
        assert row.rank.release_date is None
        assert row.rank.summary is None
        assert row.rank.genres == ()
        assert row.entry.rank_id == rank.rank_id

    def test_unranked_entry(self, store):
        entry = make_entry("Obscure Title")
        store.insert(entry)

        assert store.query() == [RankedEntry(entry=entry, rank=None)]
        assert store.counts()["entries_ranked"] == 0

    def test_survives_reopen(self, tmp_path):
        path = tmp_path / "reopen.sqlite3"
        first = CatalogStore(path)
        first.insert(make_entry("Frieren"), make_rank(101, 91))
        first.close()

        second = CatalogStore(path)
        try:
            assert [item.entry.source_title for item in second.query()] == ["Frieren"]
            assert second.get_rank("Anilist:101").score == 91
        finally:
            second.close()

    def test_timestamp_is_utc(self, store):
        offset = dt.timezone(dt.timedelta(hours=9))
        rank = make_rank(5, resolved_at=RESOLVED_AT.astimezone(offset))
        store.insert(make_entry("Tokyo"), rank)

        stored = store.get_rank(rank.rank_id)
        assert stored.resolved_at == RESOLVED_AT
        assert stored.resolved_at.utcoffset() == dt.timedelta(0)


def test_query_ordering(store):
    # The tied 79s go in as "R..." then "O..." and on sources whose key order
    # also favours "R...", so only the title tie-break yields the expected order.
    store.insert(make_entry("Zeta", source="Hulu"), make_rank(1, 85))
    store.insert(make_entry("Alpha", source="Netflix"), make_rank(2, 82))
    store.insert(make_entry("Re:Zero", source="Crunchyroll"), make_rank(4, 79))
    store.insert(make_entry("Overlord", source="Hulu"), make_rank(3, 79))

    assert [item.entry.source_title for item in store.query()] == [
        "Zeta",
        "Alpha",
        "Overlord",
        "Re:Zero",
    ]


def test_query_ordering_missing_scores_last_and_source_tiebreak(store):
    store.insert(make_entry("Same", source="Netflix"), make_rank(7, 70))
    store.insert(make_entry("Same", source="Hulu"), make_rank(7, 70))
    store.insert(make_entry("Beaver", source="Crunchyroll"))
    store.insert(make_entry("Aardvark", source="Netflix"), make_rank(8, None))
    store.insert(make_entry("Capybara"), make_rank(9, 10))

    assert [(i.entry.source_title, i.entry.source_name) for i in store.query()] == [
        ("Same", "Hulu"),
        ("Same", "Netflix"),
        ("Capybara", "Crunchyroll"),
        ("Aardvark", "Netflix"),
        ("Beaver", "Crunchyroll"),
    ]


def test_query_filters(store):
    store.insert(make_entry("High", source="Hulu"), make_rank(1, 90))
    store.insert(make_entry("Low", source="Hulu"), make_rank(2, 40))
    store.insert(make_entry("Unranked", source="Hulu"))
    store.insert(make_entry("Elsewhere", source="Netflix"), make_rank(3, 95))

    assert [i.entry.source_title for i in store.query(source_name="Hulu")] == [
        "High",
        "Low",
        "Unranked",
    ]
    assert [i.entry.source_title for i in store.query(source_name="Hulu", ranked_only=True)] == [
        "High",
        "Low",
    ]
    assert [i.entry.source_title for i in store.query(minimum_score=80)] == ["Elsewhere", "High"]


@pytest.mark.parametrize("bad", [-1, 101, 50.5, True])
def test_query_rejects_bad_minimum_score(store, bad):
    with pytest.raises(ValueError):
        store.query(minimum_score=bad)


class TestIntegrity:
    def test_duplicate_insert_fails(self, store):
        store.insert(make_entry("Frieren"), make_rank(1, 90))
        with pytest.raises(DuplicateEntryError):
            store.insert(make_entry("Frieren"), make_rank(1, 90))

    def test_same_title_on_two_sources_is_not_duplicate(self, store):
        store.insert(make_entry("Frieren", source="Hulu"))
        store.insert(make_entry("Frieren", source="Netflix"))
        assert len(store.query()) == 2

    def test_archive_missing_key_fails(self, store):
        with pytest.raises(MissingEntryError):
            store.archive(CatalogKey("Hulu", "Nothing"))

    @pytest.mark.parametrize("bad_score", [-1, 101, 7.5])
    def test_invalid_score_rejected_before_write(self, store, bad_score):
        with pytest.raises(InvalidScoreError):
            store.insert(make_entry("Broken"), make_rank(1, bad_score))
        assert store.query() == []
        assert store.get_rank("Anilist:1") is None

    def test_unknown_rank_reference_rejected(self, store):
        with pytest.raises(MissingRankError):
            store.insert(make_entry("Dangling", rank_id="Anilist:404"))
        assert store.query() == []

    def test_mismatched_rank_rejected(self, store):
        with pytest.raises(IntegrityViolation):
            store.insert(make_entry("Mixed", rank_id="Anilist:2"), make_rank(1))

    def test_score_check_constraint(self, store):
        store.insert(make_entry("Raw"), make_rank(1))
        with pytest.raises(sqlite3.IntegrityError):
            with store.conn:
                store.conn.execute("UPDATE ranks SET score = 150")

    def test_insert_fills_rank_id_from_rank(self, store):
        store.insert(make_entry("Frieren"), make_rank(12))
        assert store.query()[0].entry.rank_id == "Anilist:12"


def test_rank_upsert_refreshes_score_only(store):
    store.insert(make_entry("Frieren", source="Hulu"), make_rank(1, 80, title="Frieren"))
    later = RESOLVED_AT + dt.timedelta(days=3)
    store.insert(
        make_entry("Frieren", source="Netflix"),
        make_rank(1, 88, title="Renamed", resolved_at=later, summary="Other"),
    )

    assert store.counts()["ranks_total"] == 1
    rank = store.get_rank("Anilist:1")
    assert rank.score == 88
    assert rank.resolved_at == later
    assert rank.display_title == "Frieren"
    assert rank.summary == "A summary."


def test_shared_rank_survives_archive_of_one_entry(store):
    shared = make_rank(2001, 77)
    store.insert(make_entry("Belle", source="Hulu"), shared)
    store.insert(make_entry("BELLE", source="Netflix"), shared)

    store.archive(CatalogKey("Hulu", "Belle"))

    (remaining,) = store.query()
    assert remaining.entry.key == CatalogKey("Netflix", "BELLE")
    assert remaining.rank == shared
    assert store.get_rank("Anilist:2001") == shared
    assert [entry.source_title for entry in store.archived()] == ["Belle"]
    assert store.orphaned_rank_ids() == []


def test_orphaned_ranks_are_reported_not_deleted(store):
    store.insert(make_entry("Gone", source="Hulu"), make_rank(3))
    store.archive(CatalogKey("Hulu", "Gone"))

    assert store.orphaned_rank_ids() == ["Anilist:3"]
    assert store.get_rank("Anilist:3") is not None


class TestArchive:
    def test_archive_moves_snapshot(self, store):
        entry = make_entry("Frieren", source="Hulu")
        store.insert(entry, make_rank(1))
        store.archive(entry.key)

        assert store.query() == []
        assert store.archived("Hulu") == [replace(entry, rank_id="Anilist:1")]
        assert store.keys() == set()

    def test_reinsert_after_archive_clears_snapshot(self, store):
        entry = make_entry("Frieren", source="Hulu")
        store.insert(entry)
        store.archive(entry.key)
        store.insert(entry, make_rank(1))

        assert store.archived() == []
        assert store.keys() == {entry.key}

    def test_archive_again_replaces_snapshot(self, store):
        entry = make_entry("Frieren", source="Hulu")
        store.insert(entry)
        store.archive(entry.key)
        store.insert(entry, make_rank(1))
        store.archive(entry.key)

        assert store.archived() == [replace(entry, rank_id="Anilist:1")]

    def test_archive_many_reports_all_failures_after_commit(self, store):
        store.insert(make_entry("A", source="Hulu"))
        store.insert(make_entry("B", source="Hulu"))
        missing = [CatalogKey("Hulu", "X"), CatalogKey("Hulu", "Y")]

        with pytest.raises(ArchiveBatchError) as excinfo:
            store.archive_many(
                [CatalogKey("Hulu", "A"), missing[0], CatalogKey("Hulu", "B"), missing[1]]
            )

        assert excinfo.value.keys == missing
        assert store.keys() == set()
        assert len(store.archived()) == 2

    def test_archive_many_returns_count(self, store):
        store.insert(make_entry("A"))
        assert store.archive_many([CatalogKey("Crunchyroll", "A")]) == 1


def test_insert_many_is_atomic(store):
    store.insert(make_entry("Existing"))
    batch = [
        (make_entry("New One"), make_rank(1)),
        (make_entry("Existing"), None),
    ]
    with pytest.raises(DuplicateEntryError):
        store.insert_many(batch)

    assert store.keys() == {CatalogKey("Crunchyroll", "Existing")}
    assert store.get_rank("Anilist:1") is None


def test_insert_many_returns_count(store):
    inserted = store.insert_many(
        [(make_entry("One"), make_rank(1)), (make_entry("Two"), None)]
    )
    assert inserted == 2
    assert store.counts() == {
        "entries_total": 2,
        "entries_ranked": 1,
        "ranks_total": 1,
        "archived_total": 0,
    }


def test_store_diff_is_scoped(store):
    store.insert(make_entry("A", source="SourceX"))
    store.insert(make_entry("B", source="SourceY"))

    diff = store.diff(
        [CatalogKey("SourceX", "A"), CatalogKey("SourceY", "C")], scope="SourceY"
    )

    assert diff.in_both == []
    assert diff.not_in_store == [CatalogKey("SourceY", "C")]
    assert diff.only_in_store == [CatalogKey("SourceY", "B")]


class TestGenreCodec:
    def test_round_trip(self):
        assert decode_genres(encode_genres(("Action", "Slice of Life"))) == (
            "Action",
            "Slice of Life",
        )

    def test_empty(self):
        assert encode_genres(()) == ""
        assert decode_genres("") == ()

    def test_separator_in_genre_rejected(self):
        with pytest.raises(ValueError):
            encode_genres(("Action, Adventure",))


class TestOptionalCodecs:
    def test_absent_is_null_both_ways(self):
        assert encode_optional(None, str) is None
        assert decode_optional(None, int) is None
        assert encode_date(None) is None
        assert decode_date(None) is None

    def test_present_values_are_converted(self):
        assert encode_optional(dt.date(2024, 1, 5), dt.date.isoformat) == "2024-01-05"
        assert decode_optional(42, str) == "42"
        assert decode_date("2024-01-05") == dt.date(2024, 1, 5)

    def test_stored_unknown_service_is_rejected(self, store):
        store.insert(make_entry("Frieren"), make_rank(1))
        with store.conn:
            store.conn.execute("UPDATE ranks SET service = 'Kitsu'")

        with pytest.raises(ValueError, match="Kitsu"):
            store.query()
        with pytest.raises(ValueError):
            decode_service("Kitsu")
        assert decode_service("Anilist") == "Anilist"
