from __future__ import annotations

import datetime as dt
from typing import Any, Dict, List, Optional

import pytest

from catalog_ranker import CatalogEntry, CatalogStore, Rank


RESOLVED_AT = dt.datetime(2025, 10, 13, 2, 24, 43, tzinfo=dt.timezone.utc)


def make_rank(
    external_id: int,
    score: Optional[int] = 80,
    *,
    title: Optional[str] = None,
    genres: tuple = ("Action", "Drama"),
    release_date: Optional[dt.date] = dt.date(2020, 4, 1),
    summary: Optional[str] = "A summary.",
    resolved_at: dt.datetime = RESOLVED_AT,
) -> Rank:
    return Rank(
        rank_id=f"Anilist:{external_id}",
        display_title=title or f"Title {external_id}",
        display_url=f"https://anilist.co/anime/{external_id}",
        score=score,
        service="Anilist",
        resolved_at=resolved_at,
        poster_url=f"https://img.anili.st/media/{external_id}.jpg",
        genres=genres,
        release_date=release_date,
        summary=summary,
    )


def make_entry(
    title: str,
    source: str = "Crunchyroll",
    kind: str = "SERIES",
    rank_id: Optional[str] = None,
) -> CatalogEntry:
    slug = title.lower().replace(" ", "-")
    return CatalogEntry(
        source_title=title,
        kind=kind,
        source_url=f"https://{source.lower()}.example.com/{slug}",
        source_name=source,
        rank_id=rank_id,
    )


def anilist_media(
    external_id: int,
    *,
    english: Optional[str] = None,
    romaji: str = "Romaji",
    media_format: Optional[str] = "TV",
    synonyms: Optional[List[str]] = None,
    average_score: Optional[int] = 80,
    mean_score: Optional[int] = 81,
    start_date: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    return {
        "id": external_id,
        "averageScore": average_score,
        "meanScore": mean_score,
        "title": {"english": english, "romaji": romaji},
        "synonyms": synonyms or [],
        "format": media_format,
        "siteUrl": f"https://anilist.co/anime/{external_id}",
        "coverImage": {
            "extraLarge": f"https://img.anili.st/media/{external_id}-xl.jpg",
            "large": f"https://img.anili.st/media/{external_id}-l.jpg",
        },
        "genres": ["Action"],
        "startDate": start_date or {"year": 2020, "month": 4, "day": 1},
        "description": "Some description.",
    }


def anilist_page(*media: Dict[str, Any]) -> Dict[str, Any]:
    return {"data": {"Page": {"media": list(media)}}}


@pytest.fixture
def store(tmp_path):
    catalog_store = CatalogStore(tmp_path / "catalog.sqlite3")
    yield catalog_store
    catalog_store.close()
