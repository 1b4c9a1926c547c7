#!/usr/bin/env python3
"""Catalog -> AniList ranking sync.

Architecture:
- Sources: each configured catalog source produces a normalized list of
  (title, kind, url, source) entries.
- Synchronizer: diffs every fetched catalog against the live rows in SQLite,
  resolves only the titles the store has never seen, inserts them with their
  ranking and archives rows that disappeared from their source.
- Resolver: queries AniList through a single throttle (one dispatch every
  2 seconds) and picks the candidate whose titles are close enough to the
  catalog title, or nothing at all.

State is fully persisted in SQLite so repeated runs only do incremental work.
"""

from __future__ import annotations

import argparse
import asyncio
import copy
import datetime as dt
import email.utils
import json
import logging
import math
import random
import re
import signal
import socket
import sqlite3
import threading
import time
import warnings
from dataclasses import dataclass, field, replace
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
    Set,
    Tuple,
)
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

# Suppress urllib3/OpenSSL startup warning on macOS LibreSSL Python builds.
warnings.filterwarnings(
    "ignore",
    message=r"urllib3 v2 only supports OpenSSL 1\.1\.1\+.*",
)

import requests
from rapidfuzz.distance import Levenshtein
from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.progress_bar import ProgressBar
from rich.table import Table
from rich.text import Text


LOGGER = logging.getLogger("catalog-ranker")


DEFAULT_CONFIG: Dict[str, Any] = {
    "runtime": {
        "database_path": "catalog_ranker.sqlite3",
        "log_file_path": "logs/catalog_ranker.log",
        "log_file_max_bytes": 10485760,
        "log_file_backup_count": 5,
        "log_level": "INFO",
        "console_mode": "progress",
        "mode": "update",
        "export_dir": "out",
        "recommend_min_score": 80,
    },
    "anilist": {
        "base_url": "https://graphql.anilist.co",
        "timeout_seconds": 20,
        "results_per_search": 3,
        # AniList allows 30 requests a minute.
        "min_interval_ms": 2000,
        "similarity_threshold": 0.85,
        "max_retry_attempts": None,
        "max_retry_seconds": None,
    },
    "sources": [],
}

MEDIA_KINDS: Tuple[str, ...] = ("SERIES", "FILM", "PRINT")

SUPPORTED_SCORING_SERVICES: Set[str] = {"Anilist"}

SUPPORTED_SOURCE_TYPES: Set[str] = {"file", "http"}

SUPPORTED_RUN_MODES: Set[str] = {"update", "report"}

SUPPORTED_CONSOLE_MODES: Set[str] = {"progress", "raw"}

SIMILARITY_THRESHOLD = 0.85

DEFAULT_RESULTS_PER_SEARCH = 3

TEST_SAMPLE_FRACTION = 0.1

ANILIST_MEDIA_FORMATS: Tuple[str, ...] = (
    "TV",
    "TV_SHORT",
    "MOVIE",
    "SPECIAL",
    "OVA",
    "ONA",
    "MUSIC",
    "MANGA",
    "ONE_SHOT",
    "NOVEL",
)

# Which AniList formats can stand for each catalog kind.
ACCEPTED_MEDIA_FORMATS: Dict[str, Tuple[str, ...]] = {
    "SERIES": ("TV", "TV_SHORT", "SPECIAL", "OVA", "ONA"),
    "FILM": ("MOVIE", "SPECIAL", "OVA", "ONA"),
    "PRINT": ("MANGA", "ONE_SHOT"),
}

ANILIST_CATEGORY_BY_KIND: Dict[str, str] = {
    "SERIES": "ANIME",
    "FILM": "ANIME",
    "PRINT": "MANGA",
}

FULL_SERIES_FORMATS: Set[str] = {"MANGA"}
SINGLE_CHAPTER_FORMATS: Set[str] = {"ONE_SHOT"}

GENRE_SEPARATOR = ", "

RANK_ID_PATTERN = re.compile(r"^[^:\s]+:\S+$")

LANGUAGE_PREFIX_PATTERN = re.compile(r"^\((?:Sub|Dub)\) ")
LANGUAGE_SUFFIX_PATTERN = re.compile(
    r" \((?:Spanish|Eng|Eng Dub|English Dub|Dub|en Español)\)$"
)


class CatalogRankerError(Exception):
    """Base class for every error raised by this module."""


class MalformedResponseError(CatalogRankerError):
    """The scoring service answered with data of an unexpected shape."""


class RetryBudgetExhausted(CatalogRankerError):
    pass


class IntegrityViolation(CatalogRankerError):
    pass


class DuplicateEntryError(IntegrityViolation):
    pass


class MissingEntryError(IntegrityViolation):
    pass


class InvalidScoreError(IntegrityViolation):
    pass


class MissingRankError(IntegrityViolation):
    pass


class ArchiveBatchError(IntegrityViolation):
    def __init__(self, keys: Sequence["CatalogKey"]):
        self.keys: List[CatalogKey] = list(keys)
        listed = ", ".join(str(key) for key in self.keys)
        super().__init__(f"Could not archive {len(self.keys)} entries: {listed}")


def now_epoch() -> int:
    return int(time.time())


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def parse_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def parse_retry_after(value: Optional[str], default_seconds: float = 2.0) -> float:
    if not value:
        return default_seconds

    stripped = value.strip()
    try:
        as_float = float(stripped)
    except ValueError:
        as_float = None
    if as_float is not None:
        if not math.isfinite(as_float):
            return default_seconds
        return max(0.0, as_float)

    try:
        dt_value = email.utils.parsedate_to_datetime(stripped)
    except (TypeError, ValueError):
        return default_seconds
    if dt_value.tzinfo is None:
        dt_value = dt_value.replace(tzinfo=dt.timezone.utc)
    delta = (dt_value - utc_now()).total_seconds()
    return max(0.0, delta)


def sanitize_url_for_logs(url: str) -> str:
    sensitive_keys = {
        "api_key",
        "apikey",
        "token",
        "access_token",
        "auth",
        "authorization",
        "key",
    }
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.query:
        return url
    sanitized_query = []
    for key, value in parse_qsl(parts.query, keep_blank_values=True):
        if key.lower() in sensitive_keys:
            sanitized_query.append((key, "***"))
        else:
            sanitized_query.append((key, value))
    return urlunsplit(
        (
            parts.scheme,
            parts.netloc,
            parts.path,
            urlencode(sanitized_query, doseq=True),
            parts.fragment,
        )
    )


def is_network_unavailable_error(exc: requests.RequestException) -> bool:
    if isinstance(exc, (requests.Timeout, requests.ConnectionError)):
        return True
    marker_text = str(exc).lower()
    markers = (
        "nameresolutionerror",
        "failed to resolve",
        "temporary failure in name resolution",
        "network is unreachable",
        "no route to host",
        "connection refused",
    )
    if any(marker in marker_text for marker in markers):
        return True
    cause = getattr(exc, "__cause__", None)
    return isinstance(cause, (socket.gaierror, TimeoutError, OSError))


def merge_dict(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = merge_dict(result[key], value)
        else:
            result[key] = value
    return result


def _optional_positive(value: Any, name: str, cast: Callable[[Any], Any]) -> Any:
    if value is None:
        return None
    try:
        parsed = cast(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a number or null") from None
    if parsed <= 0:
        raise ValueError(f"{name} must be positive when set")
    return parsed


def load_config(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(
            f"Config file not found at {path}. Create one (for example from config.example.json)."
        )

    with path.open("r", encoding="utf-8") as handle:
        loaded = json.load(handle)
    if not isinstance(loaded, dict):
        raise ValueError("Config root must be a JSON object")

    config = merge_dict(DEFAULT_CONFIG, loaded)
    runtime = config["runtime"]
    anilist = config["anilist"]

    log_file_path = str(runtime.get("log_file_path", "logs/catalog_ranker.log")).strip()
    runtime["log_file_path"] = log_file_path or "logs/catalog_ranker.log"
    runtime["log_file_max_bytes"] = max(1024, int(runtime.get("log_file_max_bytes", 10485760)))
    runtime["log_file_backup_count"] = max(0, int(runtime.get("log_file_backup_count", 5)))
    runtime["recommend_min_score"] = max(0, min(100, int(runtime.get("recommend_min_score", 80))))
    runtime["export_dir"] = str(runtime.get("export_dir") or "out").strip() or "out"

    database_path = str(runtime.get("database_path", "")).strip()
    if not database_path:
        raise ValueError("runtime.database_path must not be empty")
    runtime["database_path"] = database_path

    mode = str(runtime.get("mode", "update")).strip().lower()
    if mode not in SUPPORTED_RUN_MODES:
        raise ValueError(
            "Invalid runtime.mode. Expected one of: " + ", ".join(sorted(SUPPORTED_RUN_MODES))
        )
    runtime["mode"] = mode

    console_mode = str(runtime.get("console_mode", "progress")).strip().lower()
    if console_mode not in SUPPORTED_CONSOLE_MODES:
        raise ValueError(
            "Invalid runtime.console_mode. Expected one of: "
            + ", ".join(sorted(SUPPORTED_CONSOLE_MODES))
        )
    runtime["console_mode"] = console_mode

    anilist["base_url"] = str(anilist["base_url"]).strip()
    anilist["timeout_seconds"] = max(1, int(anilist["timeout_seconds"]))
    anilist["results_per_search"] = max(1, min(50, int(anilist["results_per_search"])))
    anilist["min_interval_ms"] = max(0, int(anilist["min_interval_ms"]))
    threshold = float(anilist["similarity_threshold"])
    if not 0.5 <= threshold <= 1.0:
        raise ValueError("anilist.similarity_threshold must be between 0.5 and 1.0")
    anilist["similarity_threshold"] = threshold
    anilist["max_retry_attempts"] = _optional_positive(
        anilist.get("max_retry_attempts"), "anilist.max_retry_attempts", int
    )
    anilist["max_retry_seconds"] = _optional_positive(
        anilist.get("max_retry_seconds"), "anilist.max_retry_seconds", float
    )

    raw_sources = config.get("sources")
    if not isinstance(raw_sources, list) or not raw_sources:
        raise ValueError("sources must be a non-empty list")

    normalized_sources: List[Dict[str, Any]] = []
    seen_names: Set[str] = set()
    for idx, source in enumerate(raw_sources):
        if not isinstance(source, dict):
            raise ValueError(f"sources[{idx}] must be an object")

        name = str(source.get("name", "")).strip()
        if not name:
            raise ValueError(f"sources[{idx}].name must not be empty")
        if name in seen_names:
            raise ValueError(f"sources[{idx}].name='{name}' is duplicated")
        seen_names.add(name)

        source_type = str(source.get("type", "file")).strip().lower()
        if source_type not in SUPPORTED_SOURCE_TYPES:
            raise ValueError(
                f"sources[{idx}].type='{source_type}' is unsupported. "
                f"Supported values: {', '.join(sorted(SUPPORTED_SOURCE_TYPES))}"
            )

        normalized: Dict[str, Any] = {
            "name": name,
            "type": source_type,
            "enabled": bool(source.get("enabled", True)),
            "strip_language_tags": bool(source.get("strip_language_tags", False)),
        }
        if source_type == "file":
            path_value = str(source.get("path", "")).strip()
            if not path_value:
                raise ValueError(f"sources[{idx}].path is required for file sources")
            normalized["path"] = path_value
        else:
            url_value = str(source.get("url", "")).strip()
            if not is_http_url(url_value):
                raise ValueError(f"sources[{idx}].url must be an http(s) URL")
            normalized["url"] = url_value
            normalized["items_key"] = str(source.get("items_key", "items"))
            normalized["next_key"] = str(source.get("next_key", "next"))
            normalized["min_interval_ms"] = max(0, int(source.get("min_interval_ms", 500)))
            normalized["max_retries"] = max(1, int(source.get("max_retries", 5)))
            normalized["timeout_seconds"] = max(1, int(source.get("timeout_seconds", 20)))
        normalized_sources.append(normalized)

    if not any(src["enabled"] for src in normalized_sources):
        raise ValueError("At least one sources entry must be enabled")

    config["sources"] = normalized_sources
    return config


@dataclass(frozen=True, order=True)
class CatalogKey:
    source_name: str
    source_title: str

    def __str__(self) -> str:
        return f"{self.source_title}@{self.source_name}"


@dataclass(frozen=True)
class CatalogEntry:
    source_title: str
    kind: str  # one of MEDIA_KINDS
    source_url: str
    source_name: str
    rank_id: Optional[str] = None

    @property
    def key(self) -> CatalogKey:
        return CatalogKey(source_name=self.source_name, source_title=self.source_title)


@dataclass(frozen=True)
class Rank:
    rank_id: str
    display_title: str
    display_url: str
    score: Optional[int]
    service: str
    resolved_at: dt.datetime
    poster_url: str
    genres: Tuple[str, ...] = ()
    release_date: Optional[dt.date] = None
    summary: Optional[str] = None


@dataclass(frozen=True)
class RankedEntry:
    entry: CatalogEntry
    rank: Optional[Rank]

    @property
    def score(self) -> Optional[int]:
        return self.rank.score if self.rank is not None else None


@dataclass
class CatalogDiff:
    in_both: List[CatalogKey]
    not_in_store: List[CatalogKey]
    only_in_store: List[CatalogKey]


@dataclass(frozen=True)
class ScoringCandidate:
    rank: Rank
    media_format: Optional[str]
    official_titles: Tuple[str, ...]
    synonyms: Tuple[str, ...]


@dataclass
class APIResponse:
    status: int
    headers: Dict[str, str]
    data: Any
    text: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


def normalize_title_for_comparison(title: str) -> str:
    return "".join(str(title).split()).lower()


def title_similarity(title_a: str, title_b: str) -> float:
    """Normalized Levenshtein similarity in [0, 1], ignoring case and whitespace."""
    return Levenshtein.normalized_similarity(
        normalize_title_for_comparison(title_a),
        normalize_title_for_comparison(title_b),
    )


def titles_similar(
    title_a: str, title_b: str, threshold: float = SIMILARITY_THRESHOLD
) -> bool:
    return title_similarity(title_a, title_b) >= threshold


def clean_title(title: str, strip_language_tags: bool = False) -> str:
    # AniList search ranks queries containing a colon poorly.
    cleaned = str(title).replace(":", "", 1)
    if strip_language_tags:
        cleaned = LANGUAGE_PREFIX_PATTERN.sub("", cleaned)
        cleaned = LANGUAGE_SUFFIX_PATTERN.sub("", cleaned)
    return cleaned.strip()


def is_http_url(value: Any) -> bool:
    if not isinstance(value, str) or not value:
        return False
    try:
        parts = urlsplit(value)
    except ValueError:
        return False
    return parts.scheme in {"http", "https"} and bool(parts.netloc)


def is_valid_rank_id(value: Any) -> bool:
    return isinstance(value, str) and RANK_ID_PATTERN.match(value) is not None


def is_valid_score(value: Any) -> bool:
    if value is None:
        return True
    return isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= 100


# --- store codecs -----------------------------------------------------------
# The domain never sees NULL; every nullable column goes through one of these.


def encode_optional(value: Optional[Any], encoder: Callable[[Any], Any]) -> Any:
    """Encode ``value`` with ``encoder``, storing an absent value as NULL."""
    return None if value is None else encoder(value)


def decode_optional(value: Any, decoder: Callable[[Any], Any]) -> Optional[Any]:
    return None if value is None else decoder(value)


def encode_url(value: str) -> str:
    if not is_http_url(value):
        raise ValueError(f"Not an http(s) URL: {value!r}")
    return value


def decode_url(value: Any) -> str:
    text = str(value)
    if not is_http_url(text):
        raise ValueError(f"Stored value is not an http(s) URL: {text!r}")
    return text


def encode_timestamp(value: dt.datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc).isoformat()


def decode_timestamp(value: str) -> dt.datetime:
    parsed = dt.datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def encode_date(value: Optional[dt.date]) -> Optional[str]:
    return encode_optional(value, dt.date.isoformat)


def decode_date(value: Optional[str]) -> Optional[dt.date]:
    return decode_optional(value, lambda text: dt.date.fromisoformat(str(text)))


def encode_genres(genres: Sequence[str]) -> str:
    for genre in genres:
        if GENRE_SEPARATOR in genre:
            raise ValueError(f"Genre {genre!r} contains the separator {GENRE_SEPARATOR!r}")
    return GENRE_SEPARATOR.join(genres)


def decode_genres(value: str) -> Tuple[str, ...]:
    if not value:
        return ()
    return tuple(str(value).split(GENRE_SEPARATOR))


def encode_kind(kind: str) -> str:
    if kind not in MEDIA_KINDS:
        raise ValueError(f"Unknown media kind {kind!r}")
    return kind


def decode_kind(value: Any) -> str:
    return encode_kind(str(value))


def encode_service(service: str) -> str:
    if service not in SUPPORTED_SCORING_SERVICES:
        raise ValueError(f"Unknown scoring service {service!r}")
    return service


def decode_service(value: Any) -> str:
    return encode_service(str(value))


def _checked_rank_id(rank_id: str) -> str:
    if not is_valid_rank_id(rank_id):
        raise ValueError(f"Rank id {rank_id!r} is not in '<service>:<id>' form")
    return rank_id


def encode_rank_id(rank_id: Optional[str]) -> Optional[str]:
    return encode_optional(rank_id, _checked_rank_id)


def decode_rank_id(value: Any) -> Optional[str]:
    return decode_optional(value, lambda text: _checked_rank_id(str(text)))


def encode_score(score: Optional[int]) -> Optional[int]:
    if not is_valid_score(score):
        raise InvalidScoreError(f"Score {score!r} is not an integer within [0, 100]")
    return encode_optional(score, int)


def decode_score(value: Any) -> Optional[int]:
    return decode_optional(value, int)


def encode_rank(rank: Rank) -> Dict[str, Any]:
    return {
        "rank_id": _checked_rank_id(rank.rank_id),
        "display_title": str(rank.display_title),
        "display_url": encode_url(rank.display_url),
        "score": encode_score(rank.score),
        "service": encode_service(rank.service),
        "resolved_at": encode_timestamp(rank.resolved_at),
        "poster_url": encode_url(rank.poster_url),
        "genres": encode_genres(rank.genres),
        "release_date": encode_date(rank.release_date),
        "summary": encode_optional(rank.summary, str),
    }


def decode_rank(row: sqlite3.Row, prefix: str = "") -> Rank:
    return Rank(
        rank_id=_checked_rank_id(str(row[f"{prefix}rank_id"])),
        display_title=str(row[f"{prefix}display_title"]),
        display_url=decode_url(row[f"{prefix}display_url"]),
        score=decode_score(row[f"{prefix}score"]),
        service=decode_service(row[f"{prefix}service"]),
        resolved_at=decode_timestamp(row[f"{prefix}resolved_at"]),
        poster_url=decode_url(row[f"{prefix}poster_url"]),
        genres=decode_genres(row[f"{prefix}genres"]),
        release_date=decode_date(row[f"{prefix}release_date"]),
        summary=decode_optional(row[f"{prefix}summary"], str),
    )


def encode_entry(entry: CatalogEntry) -> Dict[str, Any]:
    return {
        "source_name": str(entry.source_name),
        "source_title": str(entry.source_title),
        "kind": encode_kind(entry.kind),
        "source_url": encode_url(entry.source_url),
        "rank_id": encode_rank_id(entry.rank_id),
    }


def decode_entry(row: sqlite3.Row) -> CatalogEntry:
    return CatalogEntry(
        source_title=str(row["source_title"]),
        kind=decode_kind(row["kind"]),
        source_url=decode_url(row["source_url"]),
        source_name=str(row["source_name"]),
        rank_id=decode_rank_id(row["rank_id"]),
    )


RANK_COLUMNS = (
    "rank_id",
    "display_title",
    "display_url",
    "score",
    "service",
    "resolved_at",
    "poster_url",
    "genres",
    "release_date",
    "summary",
)


class CatalogStore:
    """SQLite-backed live catalog, shared rankings and the archive."""

    def __init__(self, path: Path):
        self.path = path
        self.conn = sqlite3.connect(str(path))
        self.conn.row_factory = sqlite3.Row
        self._init_schema()

    def close(self) -> None:
        self.conn.close()

    def _init_schema(self) -> None:
        self.conn.execute("PRAGMA foreign_keys=ON")
        with self.conn:
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute("PRAGMA synchronous=NORMAL")

            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS ranks (
                    rank_id TEXT PRIMARY KEY NOT NULL,
                    display_title TEXT NOT NULL,
                    display_url TEXT NOT NULL,
                    score INTEGER CHECK (score >= 0 AND score <= 100),
                    service TEXT NOT NULL,
                    resolved_at TEXT NOT NULL,
                    poster_url TEXT NOT NULL,
                    genres TEXT NOT NULL,
                    release_date TEXT,
                    summary TEXT
                )
                """
            )

            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS catalog_entries (
                    source_name TEXT NOT NULL,
                    source_title TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    source_url TEXT NOT NULL,
                    rank_id TEXT REFERENCES ranks (rank_id),
                    PRIMARY KEY (source_name, source_title)
                )
                """
            )

            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS archived_entries (
                    source_name TEXT NOT NULL,
                    source_title TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    source_url TEXT NOT NULL,
                    rank_id TEXT REFERENCES ranks (rank_id),
                    PRIMARY KEY (source_name, source_title)
                )
                """
            )

            self.conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_catalog_entries_rank
                ON catalog_entries (rank_id)
                """
            )

    def _upsert_rank(self, rank: Rank) -> None:
        encoded = encode_rank(rank)
        self.conn.execute(
            """
            INSERT INTO ranks(
                rank_id,
                display_title,
                display_url,
                score,
                service,
                resolved_at,
                poster_url,
                genres,
                release_date,
                summary
            ) VALUES (
                :rank_id,
                :display_title,
                :display_url,
                :score,
                :service,
                :resolved_at,
                :poster_url,
                :genres,
                :release_date,
                :summary
            )
            ON CONFLICT(rank_id) DO UPDATE SET
                score=excluded.score,
                resolved_at=excluded.resolved_at
            """,
            encoded,
        )

    def _insert(self, entry: CatalogEntry, rank: Optional[Rank]) -> None:
        if rank is not None:
            if entry.rank_id is None:
                entry = replace(entry, rank_id=rank.rank_id)
            elif entry.rank_id != rank.rank_id:
                raise IntegrityViolation(
                    f"{entry.key} references {entry.rank_id} but was given rank {rank.rank_id}"
                )
            self._upsert_rank(rank)

        encoded = encode_entry(entry)
        try:
            self.conn.execute(
                """
                INSERT INTO catalog_entries(
                    source_name,
                    source_title,
                    kind,
                    source_url,
                    rank_id
                ) VALUES (
                    :source_name,
                    :source_title,
                    :kind,
                    :source_url,
                    :rank_id
                )
                """,
                encoded,
            )
        except sqlite3.IntegrityError as exc:
            message = str(exc).upper()
            if "FOREIGN KEY" in message:
                raise MissingRankError(
                    f"{entry.key} references unknown rank {entry.rank_id}"
                ) from exc
            if "UNIQUE" in message or "PRIMARY KEY" in message:
                raise DuplicateEntryError(f"{entry.key} is already in the catalog") from exc
            raise IntegrityViolation(f"Could not insert {entry.key}: {exc}") from exc

        # A title that reappears at its source is live again, not archived.
        self.conn.execute(
            "DELETE FROM archived_entries WHERE source_name = ? AND source_title = ?",
            (entry.source_name, entry.source_title),
        )

    def insert(self, entry: CatalogEntry, rank: Optional[Rank] = None) -> None:
        with self.conn:
            self._insert(entry, rank)

    def insert_many(self, items: Iterable[Tuple[CatalogEntry, Optional[Rank]]]) -> int:
        inserted = 0
        with self.conn:
            for entry, rank in items:
                self._insert(entry, rank)
                inserted += 1
        return inserted

    def _archive(self, key: CatalogKey) -> None:
        params = (key.source_name, key.source_title)
        row = self.conn.execute(
            "SELECT 1 FROM catalog_entries WHERE source_name = ? AND source_title = ?",
            params,
        ).fetchone()
        if row is None:
            raise MissingEntryError(f"{key} is not in the live catalog")

        self.conn.execute(
            """
            INSERT OR REPLACE INTO archived_entries(
                source_name,
                source_title,
                kind,
                source_url,
                rank_id
            )
            SELECT source_name, source_title, kind, source_url, rank_id
            FROM catalog_entries
            WHERE source_name = ? AND source_title = ?
            """,
            params,
        )
        self.conn.execute(
            "DELETE FROM catalog_entries WHERE source_name = ? AND source_title = ?",
            params,
        )

    def archive(self, key: CatalogKey) -> None:
        with self.conn:
            self._archive(key)

    def archive_many(self, keys: Iterable[CatalogKey]) -> int:
        failed: List[CatalogKey] = []
        archived = 0
        with self.conn:
            for key in keys:
                try:
                    self._archive(key)
                except MissingEntryError:
                    failed.append(key)
                    continue
                archived += 1
        if failed:
            raise ArchiveBatchError(failed)
        return archived

    def query(
        self,
        *,
        source_name: Optional[str] = None,
        ranked_only: bool = False,
        minimum_score: Optional[int] = None,
    ) -> List[RankedEntry]:
        if minimum_score is not None and not is_valid_score(minimum_score):
            raise ValueError(f"minimum_score must be an integer within [0, 100], got {minimum_score!r}")

        clauses: List[str] = []
        params: List[Any] = []
        if source_name is not None:
            clauses.append("e.source_name = ?")
            params.append(source_name)
        if ranked_only:
            clauses.append("e.rank_id IS NOT NULL")
        if minimum_score is not None:
            clauses.append("r.score >= ?")
            params.append(minimum_score)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        rank_select = ", ".join(f"r.{column} AS r_{column}" for column in RANK_COLUMNS)
        rows = self.conn.execute(
            f"""
            SELECT e.*, {rank_select}
            FROM catalog_entries AS e
            LEFT JOIN ranks AS r ON r.rank_id = e.rank_id
            {where}
            ORDER BY
                r.score IS NULL,
                r.score DESC,
                e.source_title ASC,
                e.source_name ASC
            """,
            params,
        ).fetchall()

        results: List[RankedEntry] = []
        for row in rows:
            entry = decode_entry(row)
            rank = decode_rank(row, prefix="r_") if row["r_rank_id"] is not None else None
            results.append(RankedEntry(entry=entry, rank=rank))
        return results

    def keys(self, source_name: Optional[str] = None) -> Set[CatalogKey]:
        if source_name is None:
            rows = self.conn.execute(
                "SELECT source_name, source_title FROM catalog_entries"
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT source_name, source_title FROM catalog_entries WHERE source_name = ?",
                (source_name,),
            ).fetchall()
        return {
            CatalogKey(source_name=str(row["source_name"]), source_title=str(row["source_title"]))
            for row in rows
        }

    def diff(
        self, fetched: Iterable[CatalogKey], scope: Optional[str] = None
    ) -> CatalogDiff:
        return diff_catalog(fetched, self.keys(scope), scope=scope)

    def get_rank(self, rank_id: str) -> Optional[Rank]:
        row = self.conn.execute(
            "SELECT * FROM ranks WHERE rank_id = ?", (rank_id,)
        ).fetchone()
        return decode_rank(row) if row is not None else None

    def archived(self, source_name: Optional[str] = None) -> List[CatalogEntry]:
        if source_name is None:
            rows = self.conn.execute(
                "SELECT * FROM archived_entries ORDER BY source_name, source_title"
            ).fetchall()
        else:
            rows = self.conn.execute(
                """
                SELECT * FROM archived_entries
                WHERE source_name = ?
                ORDER BY source_title
                """,
                (source_name,),
            ).fetchall()
        return [decode_entry(row) for row in rows]

    def orphaned_rank_ids(self) -> List[str]:
        """Ranks no live entry points at any more.

        They are kept on purpose: cleanup is deferred, and a title that comes
        back to a source reuses its old ranking row.
        """
        rows = self.conn.execute(
            """
            SELECT r.rank_id
            FROM ranks AS r
            WHERE NOT EXISTS (
                SELECT 1 FROM catalog_entries AS e WHERE e.rank_id = r.rank_id
            )
            ORDER BY r.rank_id
            """
        ).fetchall()
        return [str(row["rank_id"]) for row in rows]

    def counts(self) -> Dict[str, int]:
        row = self.conn.execute(
            """
            SELECT
                (SELECT COUNT(*) FROM catalog_entries) AS entries_total,
                (SELECT COUNT(*) FROM catalog_entries WHERE rank_id IS NOT NULL) AS entries_ranked,
                (SELECT COUNT(*) FROM ranks) AS ranks_total,
                (SELECT COUNT(*) FROM archived_entries) AS archived_total
            """
        ).fetchone()
        return {key: int(row[key] or 0) for key in row.keys()}


def _unique_in_order(keys: Iterable[CatalogKey]) -> List[CatalogKey]:
    seen: Set[CatalogKey] = set()
    ordered: List[CatalogKey] = []
    for key in keys:
        if key in seen:
            continue
        seen.add(key)
        ordered.append(key)
    return ordered


def diff_catalog(
    fetched: Iterable[CatalogKey],
    stored: Iterable[CatalogKey],
    scope: Optional[str] = None,
) -> CatalogDiff:
    """Partition a fresh fetch against the stored live keys.

    When ``scope`` names a source, keys from any other source are ignored on
    both sides. ``in_both`` and ``not_in_store`` keep fetch order;
    ``only_in_store`` is sorted.
    """
    fetched_keys = _unique_in_order(
        key for key in fetched if scope is None or key.source_name == scope
    )
    stored_keys = {key for key in stored if scope is None or key.source_name == scope}
    fetched_set = set(fetched_keys)

    return CatalogDiff(
        in_both=[key for key in fetched_keys if key in stored_keys],
        not_in_store=[key for key in fetched_keys if key not in stored_keys],
        only_in_store=sorted(stored_keys - fetched_set),
    )


class DispatchThrottle:
    """Serializes calls so consecutive dispatches are at least an interval apart.

    Callers queue on an asyncio lock (FIFO), so only one call is in flight at a
    time no matter how many resolutions are waiting.
    """

    def __init__(
        self,
        min_interval_seconds: float,
        name: str,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.min_interval_seconds = max(0.0, float(min_interval_seconds))
        self.name = name
        self.dispatch_count = 0
        self._clock = clock
        self._sleep = sleep
        self._last_dispatch: Optional[float] = None
        self._lock = asyncio.Lock()

    async def _wait_turn(self) -> None:
        if self._last_dispatch is None:
            return
        wait_for = self._last_dispatch + self.min_interval_seconds - self._clock()
        if wait_for > 0:
            await self._sleep(wait_for)

    async def dispatch(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """Wait for this caller's turn, then run ``func`` while holding it."""
        async with self._lock:
            await self._wait_turn()
            self._last_dispatch = self._clock()
            self.dispatch_count += 1
            return await func(*args, **kwargs)


class HTTPClient:
    """JSON over requests, retried until success or until the retry budget runs out.

    ``max_attempts``/``max_wait_seconds`` of ``None`` mean retry forever.
    """

    def __init__(
        self,
        *,
        name: str,
        timeout_seconds: int,
        default_retry_seconds: float,
        max_attempts: Optional[int] = None,
        max_wait_seconds: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.name = name
        self.timeout_seconds = timeout_seconds
        self.default_retry_seconds = max(0.0, float(default_retry_seconds))
        self.max_attempts = max_attempts
        self.max_wait_seconds = max_wait_seconds
        self._sleep = sleep
        self._network_error_throttle_seconds = 20
        self._last_network_error_log_at: Dict[str, int] = {}

    def _should_log_network_error(self, key: str) -> bool:
        now_ts = now_epoch()
        last = self._last_network_error_log_at.get(key, 0)
        if now_ts - last >= self._network_error_throttle_seconds:
            self._last_network_error_log_at[key] = now_ts
            return True
        return False

    async def _send(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]],
        headers: Optional[Dict[str, str]],
        json_body: Optional[Dict[str, Any]],
        throttle: Optional[DispatchThrottle],
    ) -> requests.Response:
        kwargs = {
            "params": params,
            "headers": headers,
            "json": json_body,
            "timeout": self.timeout_seconds,
        }
        if throttle is None:
            return await asyncio.to_thread(requests.request, method, url, **kwargs)
        return await throttle.dispatch(asyncio.to_thread, requests.request, method, url, **kwargs)

    async def request_json(
        self,
        *,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        throttle: Optional[DispatchThrottle] = None,
    ) -> APIResponse:
        safe_url = sanitize_url_for_logs(url)
        started = time.monotonic()
        attempt = 0

        while True:
            attempt += 1
            try:
                raw_resp = await self._send(method, url, params, headers, json_body, throttle)
            except requests.RequestException as exc:
                retry_in = self.default_retry_seconds
                failure = f"{exc.__class__.__name__}: {exc}"
                if is_network_unavailable_error(exc):
                    throttle_key = f"{self.name}:{method}:{safe_url}:{exc.__class__.__name__}"
                    if self._should_log_network_error(throttle_key):
                        LOGGER.warning(
                            "[%s] Network unavailable for %s %s (attempt %s). Backing off %.1fs: %s",
                            self.name,
                            method,
                            safe_url,
                            attempt,
                            retry_in,
                            exc,
                        )
                else:
                    LOGGER.warning(
                        "[%s] HTTP error calling %s %s (attempt %s): %s",
                        self.name,
                        method,
                        safe_url,
                        attempt,
                        exc,
                    )
            else:
                response = self._to_api_response(raw_resp)
                if response.ok:
                    return response
                retry_in = parse_retry_after(
                    response.headers.get("retry-after"), self.default_retry_seconds
                )
                failure = f"HTTP {response.status}"
                LOGGER.warning(
                    "[%s] %s from %s %s, likely rate limited. Sleeping for %.1fs (attempt %s)",
                    self.name,
                    response.status,
                    method,
                    safe_url,
                    retry_in,
                    attempt,
                )

            if self.max_attempts is not None and attempt >= self.max_attempts:
                raise RetryBudgetExhausted(
                    f"[{self.name}] {method} {safe_url} failed after {attempt} attempts ({failure})"
                )
            elapsed = time.monotonic() - started
            if self.max_wait_seconds is not None and elapsed + retry_in > self.max_wait_seconds:
                raise RetryBudgetExhausted(
                    f"[{self.name}] {method} {safe_url} still failing after {elapsed:.0f}s ({failure})"
                )
            await self._sleep(retry_in)

    @staticmethod
    def _to_api_response(raw_resp: requests.Response) -> APIResponse:
        normalized_headers = {str(k).lower(): str(v) for k, v in raw_resp.headers.items()}
        data: Any = None
        text = raw_resp.text or ""
        if text:
            try:
                data = raw_resp.json()
            except ValueError:
                data = None
        return APIResponse(
            status=raw_resp.status_code,
            headers=normalized_headers,
            data=data,
            text=text,
        )


ANILIST_QUERY_TEMPLATE = """
query getRanking($search: String!) {
  Page(perPage: %(per_page)d) {
    media(search: $search, type: %(category)s) {
      id
      averageScore
      meanScore
      title {
        english
        romaji
      }
      synonyms
      format
      siteUrl
      coverImage {
        extraLarge
        large
      }
      genres
      startDate {
        year
        month
        day
      }
      description(asHtml: false)
    }
  }
}
"""


def build_anilist_query(kind: str, per_page: int = DEFAULT_RESULTS_PER_SEARCH) -> str:
    category = ANILIST_CATEGORY_BY_KIND.get(kind)
    if category is None:
        raise ValueError(f"Unknown media kind {kind!r}")
    return ANILIST_QUERY_TEMPLATE % {"per_page": int(per_page), "category": category}


def _optional_text(value: Any, field_name: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise MalformedResponseError(f"{field_name} is not a string: {value!r}")
    stripped = value.strip()
    return stripped or None


def _string_list(value: Any, field_name: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise MalformedResponseError(f"{field_name} is not a list of strings")
    return tuple(item for item in value if item.strip())


def _genre_list(value: Any) -> Tuple[str, ...]:
    genres = _string_list(value, "genres")
    for genre in genres:
        if GENRE_SEPARATOR in genre:
            raise MalformedResponseError(
                f"genre {genre!r} contains the separator {GENRE_SEPARATOR!r}"
            )
    return genres


def _optional_score(value: Any, field_name: str) -> Optional[int]:
    if value is None:
        return None
    if not is_valid_score(value):
        raise MalformedResponseError(f"{field_name} is not a score within [0, 100]: {value!r}")
    return value


def parse_anilist_start_date(value: Any) -> Optional[dt.date]:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise MalformedResponseError("startDate is not an object")
    year = parse_int(value.get("year"))
    if year is None:
        return None
    month = parse_int(value.get("month")) or 1
    day = parse_int(value.get("day")) or 1
    try:
        return dt.date(year, month, day)
    except ValueError as exc:
        raise MalformedResponseError(f"startDate is not a valid date: {value!r}") from exc


def parse_anilist_media(
    item: Any, *, service: str = "Anilist", resolved_at: Optional[dt.datetime] = None
) -> ScoringCandidate:
    if not isinstance(item, dict):
        raise MalformedResponseError("media entry is not an object")

    external_id = parse_int(item.get("id"))
    if external_id is None:
        raise MalformedResponseError(f"media id is missing or invalid: {item.get('id')!r}")

    titles = item.get("title")
    if not isinstance(titles, dict):
        raise MalformedResponseError(f"media {external_id} has no title object")
    romaji = _optional_text(titles.get("romaji"), "title.romaji")
    if romaji is None:
        raise MalformedResponseError(f"media {external_id} has no romaji title")
    english = _optional_text(titles.get("english"), "title.english")

    media_format = item.get("format")
    if media_format is not None and media_format not in ANILIST_MEDIA_FORMATS:
        raise MalformedResponseError(f"media {external_id} has unknown format {media_format!r}")

    site_url = item.get("siteUrl")
    if not is_http_url(site_url):
        raise MalformedResponseError(f"media {external_id} has an invalid siteUrl")

    cover = item.get("coverImage")
    if not isinstance(cover, dict):
        raise MalformedResponseError(f"media {external_id} has no coverImage")
    poster_url = next(
        (cover.get(size) for size in ("extraLarge", "large") if is_http_url(cover.get(size))),
        None,
    )
    if poster_url is None:
        raise MalformedResponseError(f"media {external_id} has no usable cover image")

    average_score = _optional_score(item.get("averageScore"), "averageScore")
    # Smaller entries often have a mean score but not enough ratings for an average.
    mean_score = _optional_score(item.get("meanScore"), "meanScore")
    score = average_score if average_score is not None else mean_score

    rank = Rank(
        rank_id=f"{service}:{external_id}",
        display_title=english or romaji,
        display_url=site_url,
        score=score,
        service=service,
        resolved_at=resolved_at or utc_now(),
        poster_url=poster_url,
        genres=_genre_list(item.get("genres")),
        release_date=parse_anilist_start_date(item.get("startDate")),
        summary=_optional_text(item.get("description"), "description"),
    )
    official_titles = tuple(title for title in (english, romaji) if title)
    return ScoringCandidate(
        rank=rank,
        media_format=media_format,
        official_titles=official_titles,
        synonyms=_string_list(item.get("synonyms"), "synonyms"),
    )


def parse_anilist_candidates(
    payload: Any, *, service: str = "Anilist", resolved_at: Optional[dt.datetime] = None
) -> List[ScoringCandidate]:
    if not isinstance(payload, dict):
        raise MalformedResponseError("response body is not a JSON object")
    errors = payload.get("errors")
    if errors:
        raise MalformedResponseError(f"service reported errors: {errors!r}")

    data = payload.get("data")
    page = data.get("Page") if isinstance(data, dict) else None
    media = page.get("media") if isinstance(page, dict) else None
    if not isinstance(media, list):
        raise MalformedResponseError("response has no data.Page.media list")

    resolved_at = resolved_at or utc_now()
    return [
        parse_anilist_media(item, service=service, resolved_at=resolved_at)
        for item in media
    ]


class AniListClient:
    name = "Anilist"

    def __init__(
        self,
        *,
        config: Dict[str, Any],
        throttle: DispatchThrottle,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.base_url = str(config["base_url"])
        self.results_per_search = int(config.get("results_per_search", DEFAULT_RESULTS_PER_SEARCH))
        self.throttle = throttle
        max_retry_seconds = config.get("max_retry_seconds")
        self.http = HTTPClient(
            name=self.name,
            timeout_seconds=int(config.get("timeout_seconds", 20)),
            default_retry_seconds=throttle.min_interval_seconds,
            max_attempts=config.get("max_retry_attempts"),
            max_wait_seconds=float(max_retry_seconds) if max_retry_seconds is not None else None,
            sleep=sleep,
        )

    async def search(self, title: str, kind: str) -> List[ScoringCandidate]:
        response = await self.http.request_json(
            method="POST",
            url=self.base_url,
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            json_body={
                "query": build_anilist_query(kind, self.results_per_search),
                "variables": {"search": title},
            },
            throttle=self.throttle,
        )
        return parse_anilist_candidates(response.data, service=self.name)


def _shares_title(first: ScoringCandidate, second: ScoringCandidate, threshold: float) -> bool:
    return any(
        titles_similar(a, b, threshold)
        for a in first.official_titles
        for b in second.official_titles
    )


def prefer_full_series(
    candidates: Sequence[ScoringCandidate], threshold: float = SIMILARITY_THRESHOLD
) -> List[ScoringCandidate]:
    """Move a full series ahead of a same-titled single chapter listed before it.

    A one-shot that was later serialized shares the series' name; without this
    the one-shot would win the title match.
    """
    sort_keys: List[float] = []
    for idx, candidate in enumerate(candidates):
        position = float(idx)
        if candidate.media_format in SINGLE_CHAPTER_FORMATS:
            for later_idx in range(idx + 1, len(candidates)):
                later = candidates[later_idx]
                if later.media_format in FULL_SERIES_FORMATS and _shares_title(
                    candidate, later, threshold
                ):
                    position = later_idx + 0.5
        sort_keys.append(position)
    order = sorted(range(len(candidates)), key=lambda i: sort_keys[i])
    return [candidates[i] for i in order]


class RankResolver:
    def __init__(
        self,
        client: Any,
        *,
        similarity_threshold: float = SIMILARITY_THRESHOLD,
    ):
        self.client = client
        self.similarity_threshold = similarity_threshold

    def _title_in(self, title: str, possible_titles: Iterable[str]) -> bool:
        return any(
            titles_similar(candidate_title, title, self.similarity_threshold)
            for candidate_title in possible_titles
        )

    def select_candidates(
        self, candidates: Sequence[ScoringCandidate], kind: str
    ) -> List[ScoringCandidate]:
        accepted = ACCEPTED_MEDIA_FORMATS[kind]
        # A missing format means the title has not been released yet.
        surviving = [
            candidate
            for candidate in candidates
            if candidate.media_format is not None and candidate.media_format in accepted
        ]
        if kind == "PRINT":
            surviving = prefer_full_series(surviving, self.similarity_threshold)
        return surviving

    def match(
        self, title: str, candidates: Sequence[ScoringCandidate]
    ) -> Optional[ScoringCandidate]:
        # Official titles first: synonyms are loosely curated and a shared
        # synonym must not shadow the real entry.
        for candidate in candidates:
            if self._title_in(title, candidate.official_titles):
                return candidate
        for candidate in candidates:
            if self._title_in(title, candidate.synonyms):
                return candidate
        return None

    async def resolve(self, title: str, kind: str) -> Optional[Rank]:
        if kind not in ACCEPTED_MEDIA_FORMATS:
            raise ValueError(f"Unknown media kind {kind!r}")
        try:
            candidates = await self.client.search(title, kind)
        except (MalformedResponseError, RetryBudgetExhausted) as exc:
            LOGGER.warning("[Resolver] Treating '%s' as unmatched: %s", title, exc)
            return None

        matched = self.match(title, self.select_candidates(candidates, kind))
        if matched is None:
            LOGGER.debug(
                "[Resolver] No match for '%s' among %s candidates", title, len(candidates)
            )
            return None
        return matched.rank


class CatalogSource:
    """A catalog collaborator. ``fetch`` returns entries without a rank id."""

    def __init__(self, name: str, *, strip_language_tags: bool = False):
        self.name = name
        self.strip_language_tags = strip_language_tags

    async def fetch(self) -> List[CatalogEntry]:
        raise NotImplementedError

    def _entry_from_item(self, item: Any, base_url: Optional[str] = None) -> CatalogEntry:
        if not isinstance(item, dict):
            raise ValueError(f"[{self.name}] Catalog item is not an object: {item!r}")
        title = str(item.get("title") or "").strip()
        if not title:
            raise ValueError(f"[{self.name}] Catalog item has no title: {item!r}")
        kind = str(item.get("kind") or "").strip().upper()
        if kind not in MEDIA_KINDS:
            raise ValueError(f"[{self.name}] '{title}' has unknown kind {kind!r}")
        url = str(item.get("url") or "").strip()
        if base_url:
            url = urljoin(base_url, url)
        if not is_http_url(url):
            raise ValueError(f"[{self.name}] '{title}' has an invalid url {url!r}")
        return CatalogEntry(source_title=title, kind=kind, source_url=url, source_name=self.name)


class FileCatalogSource(CatalogSource):
    """A catalog exported to a local JSON list of ``{title, kind, url}`` objects."""

    def __init__(self, name: str, path: Path, *, strip_language_tags: bool = False):
        super().__init__(name, strip_language_tags=strip_language_tags)
        self.path = path

    def _read(self) -> List[CatalogEntry]:
        with self.path.open("r", encoding="utf-8") as handle:
            loaded = json.load(handle)
        if not isinstance(loaded, list):
            raise ValueError(f"[{self.name}] {self.path} must contain a JSON list")
        return [self._entry_from_item(item) for item in loaded]

    async def fetch(self) -> List[CatalogEntry]:
        return await asyncio.to_thread(self._read)


class HTTPCatalogSource(CatalogSource):
    def __init__(
        self,
        name: str,
        *,
        url: str,
        http: HTTPClient,
        throttle: DispatchThrottle,
        items_key: str = "items",
        next_key: str = "next",
        strip_language_tags: bool = False,
        max_pages: int = 500,
    ):
        super().__init__(name, strip_language_tags=strip_language_tags)
        self.url = url
        self.http = http
        self.throttle = throttle
        self.items_key = items_key
        self.next_key = next_key
        self.max_pages = max_pages

    async def fetch(self) -> List[CatalogEntry]:
        entries: List[CatalogEntry] = []
        next_url: Optional[str] = self.url
        pages = 0
        while next_url and pages < self.max_pages:
            pages += 1
            response = await self.http.request_json(
                method="GET",
                url=next_url,
                headers={"Accept": "application/json", "User-Agent": "catalog-ranker"},
                throttle=self.throttle,
            )
            payload = response.data
            if not isinstance(payload, dict) or not isinstance(payload.get(self.items_key), list):
                raise ValueError(
                    f"[{self.name}] Page {pages} has no '{self.items_key}' list"
                )
            entries.extend(
                self._entry_from_item(item, base_url=next_url)
                for item in payload[self.items_key]
            )
            raw_next = payload.get(self.next_key)
            next_url = urljoin(next_url, raw_next) if isinstance(raw_next, str) and raw_next else None
        if next_url:
            LOGGER.warning("[%s] Stopped after %s pages; catalog may be partial", self.name, pages)
        return entries


def build_source(entry: Dict[str, Any], *, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> CatalogSource:
    if entry["type"] == "file":
        return FileCatalogSource(
            entry["name"],
            Path(entry["path"]).expanduser(),
            strip_language_tags=entry.get("strip_language_tags", False),
        )
    if entry["type"] == "http":
        throttle = DispatchThrottle(entry["min_interval_ms"] / 1000.0, entry["name"], sleep=sleep)
        http = HTTPClient(
            name=entry["name"],
            timeout_seconds=entry["timeout_seconds"],
            default_retry_seconds=max(1.0, throttle.min_interval_seconds),
            max_attempts=entry["max_retries"],
            sleep=sleep,
        )
        return HTTPCatalogSource(
            entry["name"],
            url=entry["url"],
            http=http,
            throttle=throttle,
            items_key=entry.get("items_key", "items"),
            next_key=entry.get("next_key", "next"),
            strip_language_tags=entry.get("strip_language_tags", False),
        )
    raise ValueError(f"Unsupported source type: {entry['type']}")


def filter_titles_containing(
    entries: Sequence[CatalogEntry], substrings: Sequence[str]
) -> List[CatalogEntry]:
    return [
        entry
        for entry in entries
        if any(substring in entry.source_title for substring in substrings)
    ]


def sample_entries(entries: Sequence[CatalogEntry], seed: int) -> List[CatalogEntry]:
    if not entries:
        return []
    shuffled = list(entries)
    random.Random(seed).shuffle(shuffled)
    size = max(1, int(len(shuffled) * TEST_SAMPLE_FRACTION))
    return shuffled[:size]


def ranked_entry_to_dict(item: RankedEntry) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "sourceTitle": item.entry.source_title,
        "kind": item.entry.kind,
        "sourceURL": item.entry.source_url,
        "sourceName": item.entry.source_name,
        "rankId": item.entry.rank_id,
    }
    rank = item.rank
    if rank is not None:
        payload.update(
            {
                "displayTitle": rank.display_title,
                "displayURL": rank.display_url,
                "score": rank.score,
                "service": rank.service,
                "resolvedAt": encode_timestamp(rank.resolved_at),
                "posterURL": rank.poster_url,
                "genres": list(rank.genres),
                "releaseDate": encode_date(rank.release_date),
                "summary": rank.summary,
            }
        )
    return payload


def export_results(results: Sequence[RankedEntry], export_dir: Path, source_name: str) -> Path:
    export_dir.mkdir(parents=True, exist_ok=True)
    stamp = utc_now().strftime("%Y%m%dT%H%M%SZ")
    safe_name = re.sub(r"[^A-Za-z0-9_.-]+", "_", source_name)
    path = export_dir / f"{safe_name}_{stamp}.json"
    with path.open("w", encoding="utf-8") as handle:
        json.dump([ranked_entry_to_dict(item) for item in results], handle, indent=2, ensure_ascii=False)
        handle.write("\n")
    return path


class LiveLogState:
    def __init__(self):
        self._live_active = False
        self._lock = threading.Lock()

    def set_live_active(self, active: bool) -> None:
        with self._lock:
            self._live_active = bool(active)

    def is_live_active(self) -> bool:
        with self._lock:
            return self._live_active


class LiveAwareConsoleHandler(logging.StreamHandler):
    def __init__(self, *, live_state: LiveLogState):
        super().__init__()
        self.live_state = live_state

    def emit(self, record: logging.LogRecord) -> None:
        if self.live_state.is_live_active():
            return
        clean_record = logging.makeLogRecord(record.__dict__.copy())
        # Keep terminal output single-line; tracebacks go to file logs.
        clean_record.exc_info = None
        clean_record.exc_text = None
        clean_record.stack_info = None
        super().emit(clean_record)


@dataclass
class LoggingRuntime:
    live_state: LiveLogState
    log_file_path: Path
    console_mode: str = "progress"


class ResolutionProgress:
    """Live panel shown while a source's new titles are being resolved."""

    BAR_WIDTH = 30

    def __init__(
        self,
        *,
        source_name: str,
        total: int,
        live_state: Optional[LiveLogState] = None,
        enabled: bool = True,
        console: Optional[Console] = None,
    ):
        self.source_name = source_name
        self.total = max(0, int(total))
        self.completed = 0
        self.matched = 0
        self.unmatched = 0
        self.current_title = ""
        self.started_at = now_epoch()
        self.live_state = live_state
        self.enabled = enabled and self.total > 0
        self.console = console
        self._live: Optional[Live] = None

    def render(self) -> Panel:
        table = Table.grid(expand=True, padding=(0, 1))
        table.add_column("Label", style="bold cyan", no_wrap=True)
        table.add_column("Value")
        table.add_row(
            "Progress",
            Group(
                ProgressBar(total=max(1, self.total), completed=self.completed, width=self.BAR_WIDTH),
                Text(f"{self.completed}/{self.total}"),
            ),
        )
        table.add_row("Matched", Text(str(self.matched), style="green"))
        table.add_row("No match", Text(str(self.unmatched), style="yellow"))
        table.add_row("Searching", Text(self.current_title or "-", overflow="ellipsis"))
        elapsed = max(0, now_epoch() - self.started_at)
        return Panel(table, title=f"{self.source_name} | {elapsed}s", border_style="cyan")

    def __enter__(self) -> "ResolutionProgress":
        if self.enabled:
            if self.live_state is not None:
                self.live_state.set_live_active(True)
            self._live = Live(self.render(), console=self.console, auto_refresh=False, transient=True)
            self._live.__enter__()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        if self._live is not None:
            self._live.__exit__(*exc_info)
            self._live = None
        if self.enabled and self.live_state is not None:
            self.live_state.set_live_active(False)

    def searching(self, title: str) -> None:
        self.current_title = title
        self._refresh()

    def advance(self, matched: bool) -> None:
        self.completed += 1
        if matched:
            self.matched += 1
        else:
            self.unmatched += 1
        self._refresh()

    def _refresh(self) -> None:
        if self._live is not None:
            self._live.update(self.render(), refresh=True)


@dataclass
class SyncSummary:
    source_name: str
    fetched: int = 0
    already_known: int = 0
    inserted: int = 0
    matched: int = 0
    unmatched: List[str] = field(default_factory=list)
    archived: int = 0
    archive_failures: List[CatalogKey] = field(default_factory=list)
    partial: bool = False
    interrupted: bool = False
    error: Optional[str] = None
    export_path: Optional[Path] = None


class CatalogSynchronizer:
    def __init__(
        self,
        *,
        store: CatalogStore,
        resolver: RankResolver,
        mode: str = "update",
        recommend_min_score: int = 80,
        export_dir: Optional[Path] = None,
        test_titles: Optional[Sequence[str]] = None,
        test_sample_seed: Optional[int] = None,
        live_state: Optional[LiveLogState] = None,
        show_progress: bool = False,
        console: Optional[Console] = None,
    ):
        if mode not in SUPPORTED_RUN_MODES:
            raise ValueError(f"Unsupported mode {mode!r}")
        self.store = store
        self.resolver = resolver
        self.mode = mode
        self.recommend_min_score = recommend_min_score
        self.export_dir = export_dir
        self.test_titles = list(test_titles or [])
        self.test_sample_seed = test_sample_seed
        self.live_state = live_state
        self.show_progress = show_progress
        self.console = console or Console()

    def _apply_test_filters(
        self, source_name: str, entries: List[CatalogEntry]
    ) -> Tuple[List[CatalogEntry], bool]:
        if self.test_sample_seed is not None:
            LOGGER.info("[--test-less-titles] %s seed: %s", source_name, self.test_sample_seed)
            return sample_entries(entries, self.test_sample_seed), True
        if self.test_titles:
            filtered = filter_titles_containing(entries, self.test_titles)
            LOGGER.info(
                "[--test-title] Only checking %s",
                ", ".join(entry.source_title for entry in filtered) or "-",
            )
            return filtered, True
        return entries, False

    async def _resolve_new(
        self,
        source: CatalogSource,
        new_entries: List[CatalogEntry],
        summary: SyncSummary,
        stop_event: Optional[asyncio.Event],
    ) -> List[Tuple[CatalogEntry, Optional[Rank]]]:
        resolved: List[Tuple[CatalogEntry, Optional[Rank]]] = []
        with ResolutionProgress(
            source_name=source.name,
            total=len(new_entries),
            live_state=self.live_state,
            enabled=self.show_progress,
            console=self.console,
        ) as progress:
            for entry in new_entries:
                if stop_event is not None and stop_event.is_set():
                    summary.interrupted = True
                    break
                progress.searching(entry.source_title)
                search_title = clean_title(entry.source_title, source.strip_language_tags)
                rank = await self.resolver.resolve(search_title, entry.kind)
                progress.advance(rank is not None)
                if rank is None:
                    summary.unmatched.append(entry.source_title)
                else:
                    summary.matched += 1
                resolved.append((entry, rank))
        return resolved

    async def sync_source(
        self, source: CatalogSource, stop_event: Optional[asyncio.Event] = None
    ) -> SyncSummary:
        summary = SyncSummary(source_name=source.name)
        LOGGER.info("[%s] Querying catalog...", source.name)
        try:
            fetched = await source.fetch()
        except Exception as exc:
            summary.error = f"{exc.__class__.__name__}: {exc}"
            LOGGER.warning("[%s] Skipping due to error: %s", source.name, summary.error)
            return summary

        entries, summary.partial = self._apply_test_filters(source.name, fetched)
        by_key: Dict[CatalogKey, CatalogEntry] = {}
        for entry in entries:
            by_key.setdefault(entry.key, entry)
        summary.fetched = len(by_key)

        diff = self.store.diff(by_key.keys(), scope=source.name)
        summary.already_known = len(diff.in_both)
        LOGGER.info(
            "[%s] fetched=%s known=%s new=%s gone=%s",
            source.name,
            summary.fetched,
            len(diff.in_both),
            len(diff.not_in_store),
            len(diff.only_in_store),
        )

        if self.mode == "report":
            LOGGER.info("[%s] Report-only mode: no titles resolved, nothing written.", source.name)
            return summary

        new_entries = [by_key[key] for key in diff.not_in_store]
        resolved = await self._resolve_new(source, new_entries, summary, stop_event)
        if resolved:
            summary.inserted = self.store.insert_many(resolved)

        if summary.partial or summary.interrupted:
            if diff.only_in_store:
                LOGGER.info(
                    "[%s] Catalog is partial; leaving %s missing titles unarchived.",
                    source.name,
                    len(diff.only_in_store),
                )
        elif diff.only_in_store:
            try:
                summary.archived = self.store.archive_many(diff.only_in_store)
            except ArchiveBatchError as exc:
                summary.archive_failures = exc.keys
                summary.archived = len(diff.only_in_store) - len(exc.keys)
                LOGGER.warning("[%s] %s", source.name, exc)

        if summary.unmatched:
            LOGGER.warning(
                "[%s] AniList couldn't find a match for %s",
                source.name,
                ", ".join(summary.unmatched),
            )
        return summary

    def print_recommendations(self, source_name: str, results: Sequence[RankedEntry]) -> None:
        table = Table(title=f"On {source_name}, you should watch:", title_justify="left")
        table.add_column("Title", style="bold")
        table.add_column("Score", justify="right", style="green")
        table.add_column("Kind")
        table.add_column("Ranked as")
        shown = 0
        for item in results:
            if item.score is None or item.score < self.recommend_min_score:
                continue
            table.add_row(
                item.entry.source_title,
                str(item.score),
                item.entry.kind,
                item.rank.display_title if item.rank is not None else "-",
            )
            shown += 1
        if shown:
            self.console.print(table)
        else:
            self.console.print(
                f"Nothing on {source_name} scores at least {self.recommend_min_score}."
            )

    async def run(
        self, sources: Sequence[CatalogSource], stop_event: Optional[asyncio.Event] = None
    ) -> List[SyncSummary]:
        summaries: List[SyncSummary] = []
        for source in sources:
            if stop_event is not None and stop_event.is_set():
                break
            summary = await self.sync_source(source, stop_event)
            summaries.append(summary)
            if summary.error is not None:
                continue

            results = self.store.query(source_name=source.name)
            self.print_recommendations(source.name, results)
            if self.export_dir is not None and self.mode == "update":
                summary.export_path = export_results(results, self.export_dir, source.name)
                LOGGER.info(
                    "[%s] Wrote all results, sorted by score, to %s",
                    source.name,
                    summary.export_path,
                )
        return summaries


def configure_logging(config: Dict[str, Any]) -> LoggingRuntime:
    runtime_cfg = config.get("runtime", {})
    level_name = runtime_cfg.get("log_level", "INFO")
    level = getattr(logging, str(level_name).upper(), logging.INFO)

    raw_log_path = Path(str(runtime_cfg.get("log_file_path", "logs/catalog_ranker.log"))).expanduser()
    if not raw_log_path.is_absolute():
        raw_log_path = (Path.cwd() / raw_log_path).resolve()
    raw_log_path.parent.mkdir(parents=True, exist_ok=True)

    log_file_max_bytes = max(1024, int(runtime_cfg.get("log_file_max_bytes", 10485760)))
    log_file_backup_count = max(0, int(runtime_cfg.get("log_file_backup_count", 5)))
    console_mode = str(runtime_cfg.get("console_mode", "progress")).strip().lower()

    live_state = LiveLogState()

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()
    root_logger.setLevel(level)

    formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(message)s")

    file_handler = RotatingFileHandler(
        raw_log_path,
        maxBytes=log_file_max_bytes,
        backupCount=log_file_backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)

    console_handler = LiveAwareConsoleHandler(live_state=live_state)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)

    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    logging.captureWarnings(True)

    # Keep third-party debug noise out of terminal output.
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("py.warnings").setLevel(logging.WARNING)

    return LoggingRuntime(
        live_state=live_state,
        log_file_path=raw_log_path,
        console_mode=console_mode,
    )


def select_sources(config: Dict[str, Any], names: Optional[Sequence[str]]) -> List[Dict[str, Any]]:
    configured = {entry["name"]: entry for entry in config["sources"]}
    if not names:
        return [entry for entry in config["sources"] if entry["enabled"]]
    unknown = [name for name in names if name not in configured]
    if unknown:
        raise ValueError(
            f"Unknown sources: {', '.join(unknown)}. Configured: {', '.join(sorted(configured))}"
        )
    return [configured[name] for name in names]


async def run_app(
    config: Dict[str, Any],
    logging_runtime: LoggingRuntime,
    *,
    source_names: Optional[Sequence[str]] = None,
    test_titles: Optional[Sequence[str]] = None,
    test_sample_seed: Optional[int] = None,
) -> List[SyncSummary]:
    db_path = Path(config["runtime"]["database_path"]).expanduser().resolve()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    sources = [build_source(entry) for entry in select_sources(config, source_names)]

    store = CatalogStore(db_path)
    try:
        anilist_cfg = config["anilist"]
        throttle = DispatchThrottle(anilist_cfg["min_interval_ms"] / 1000.0, "anilist")
        resolver = RankResolver(
            AniListClient(config=anilist_cfg, throttle=throttle),
            similarity_threshold=float(anilist_cfg["similarity_threshold"]),
        )
        synchronizer = CatalogSynchronizer(
            store=store,
            resolver=resolver,
            mode=config["runtime"]["mode"],
            recommend_min_score=int(config["runtime"]["recommend_min_score"]),
            export_dir=Path(config["runtime"]["export_dir"]).expanduser(),
            test_titles=test_titles,
            test_sample_seed=test_sample_seed,
            live_state=logging_runtime.live_state,
            show_progress=logging_runtime.console_mode == "progress",
        )

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()

        def _signal_stop() -> None:
            if not stop_event.is_set():
                LOGGER.info("Stop signal received. Saving resolved titles and stopping...")
                stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, _signal_stop)
            except NotImplementedError:
                # Windows event loops may not support this.
                pass

        LOGGER.info("Database: %s", db_path)
        LOGGER.info("Log file: %s", logging_runtime.log_file_path)
        LOGGER.info(
            "Starting sync: mode=%s, sources=%s, anilist_interval=%sms",
            config["runtime"]["mode"],
            ", ".join(source.name for source in sources),
            anilist_cfg["min_interval_ms"],
        )

        summaries = await synchronizer.run(sources, stop_event)

        orphaned = store.orphaned_rank_ids()
        if orphaned:
            LOGGER.info(
                "[Store] %s rankings are no longer referenced by a live title (kept).",
                len(orphaned),
            )
        LOGGER.info("[Store] Totals: %s", store.counts())
        return summaries
    finally:
        store.close()


def parse_seed(value: str) -> int:
    parsed = parse_int(value)
    if parsed is None:
        raise argparse.ArgumentTypeError("Not a number.")
    return parsed


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Rank the titles listed by catalog sources with AniList scores",
    )
    parser.add_argument(
        "--config",
        default="config.json",
        help="Path to config JSON file (default: config.json)",
    )
    parser.add_argument(
        "-p",
        "--sources",
        nargs="+",
        metavar="SOURCE",
        help="Which configured sources to query (default: every enabled source)",
    )
    parser.add_argument(
        "--database",
        help="Path to the SQLite store (overrides runtime.database_path)",
    )
    parser.add_argument(
        "--report-only",
        action="store_true",
        help="Fetch and diff catalogs without resolving or writing anything",
    )
    testing = parser.add_mutually_exclusive_group()
    testing.add_argument(
        "--test-less-titles",
        nargs="?",
        const="random",
        type=parse_seed,
        default=None,
        metavar="SEED",
        help=argparse.SUPPRESS,
    )
    testing.add_argument(
        "--test-title",
        nargs="+",
        metavar="SUBSTRING",
        help=argparse.SUPPRESS,
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    config_path = Path(args.config).expanduser().resolve()

    try:
        config = load_config(config_path)
        if args.database:
            config["runtime"]["database_path"] = args.database
        if args.report_only:
            config["runtime"]["mode"] = "report"
        select_sources(config, args.sources)
    except Exception as exc:
        print(f"[FATAL] Could not load config: {exc}")
        return 1

    test_sample_seed = args.test_less_titles
    if test_sample_seed == "random":
        test_sample_seed = random.randrange(2**53)

    logging_runtime = configure_logging(config)

    try:
        asyncio.run(
            run_app(
                config,
                logging_runtime,
                source_names=args.sources,
                test_titles=args.test_title,
                test_sample_seed=test_sample_seed,
            )
        )
        LOGGER.info("Log file: %s", logging_runtime.log_file_path)
    except KeyboardInterrupt:
        LOGGER.info("Interrupted by user")
        LOGGER.info("Log file: %s", logging_runtime.log_file_path)
        return 0
    except Exception:
        LOGGER.exception("Fatal runtime error")
        LOGGER.info("Log file: %s", logging_runtime.log_file_path)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
