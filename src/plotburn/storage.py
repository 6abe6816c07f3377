from __future__ import annotations

import json
from typing import Any, Iterable

from .db import DBConn, connect_db
from .models import Extraction, Movie, MovieMeta, Roast
from .utils import json_dumps, json_loads_or, utc_now_iso

DEFAULT_LANGUAGE = "en"


def init_db(path: str | None = None) -> DBConn:
    return connect_db(path)


def get_setting(conn: Any, key: str, default: object) -> object:
    row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, json_dumps(value), utc_now_iso()),
    )
    conn.commit()


# movies and category membership


def upsert_movie(
    conn: Any,
    meta: MovieMeta,
    language: str = DEFAULT_LANGUAGE,
    skip_popularity: bool = False,
) -> None:
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO movies
            (id, title, release_date, popularity, vote_average, vote_count, poster_path,
             language, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            title = excluded.title,
            release_date = excluded.release_date,
            vote_average = excluded.vote_average,
            vote_count = excluded.vote_count,
            poster_path = excluded.poster_path,
            language = excluded.language,
            updated_at = excluded.updated_at,
            popularity = CASE WHEN ? = 1 THEN movies.popularity ELSE excluded.popularity END
        """,
        (
            meta.id,
            meta.title,
            meta.release_date or None,
            meta.popularity,
            meta.vote_average,
            meta.vote_count,
            meta.poster_path,
            language,
            now,
            now,
            1 if skip_popularity else 0,
        ),
    )
    conn.commit()


def refresh_category(
    conn: DBConn,
    category: str,
    movies: Iterable[MovieMeta],
    *,
    skip_popularity: bool = False,
) -> int:
    """Upsert ``movies`` and make them the complete membership of ``category``.

    Everything happens in one transaction, so readers see either the previous
    membership or the new one, never an empty or half-written set.
    """
    movies = list(movies)
    now = utc_now_iso()
    with conn.transaction():
        for meta in movies:
            upsert_movie(conn, meta, skip_popularity=skip_popularity)
        conn.execute("DELETE FROM movie_categories WHERE category = ?", (category,))
        if movies:
            conn.executemany(
                """
                INSERT OR IGNORE INTO movie_categories (movie_id, category, added_at)
                VALUES (?, ?, ?)
                """,
                [(meta.id, category, now) for meta in movies],
            )
    return len(movies)


def list_category_movie_ids(conn: Any, category: str) -> set[int]:
    cursor = conn.execute(
        "SELECT movie_id FROM movie_categories WHERE category = ?",
        (category,),
    )
    return {int(row[0]) for row in cursor.fetchall()}


def get_movie(conn: Any, movie_id: int) -> Movie | None:
    row = conn.execute(
        """
        SELECT id, title, release_date, popularity, vote_average, vote_count,
               poster_path, language, created_at, updated_at
        FROM movies
        WHERE id = ?
        """,
        (movie_id,),
    ).fetchone()
    if not row:
        return None
    categories = [
        item[0]
        for item in conn.execute(
            "SELECT category FROM movie_categories WHERE movie_id = ? ORDER BY category",
            (movie_id,),
        ).fetchall()
    ]
    return _row_to_movie(row, categories)


def list_movies_by_category(
    conn: Any, category: str, limit: int = 20, offset: int = 0
) -> tuple[list[Movie], int]:
    total_row = conn.execute(
        "SELECT COUNT(*) FROM movie_categories WHERE category = ?",
        (category,),
    ).fetchone()
    cursor = conn.execute(
        """
        SELECT m.id, m.title, m.release_date, m.popularity, m.vote_average, m.vote_count,
               m.poster_path, m.language, m.created_at, m.updated_at
        FROM movies m
        INNER JOIN movie_categories mc ON m.id = mc.movie_id
        WHERE mc.category = ?
        ORDER BY mc.added_at DESC, m.popularity DESC, m.id ASC
        LIMIT ? OFFSET ?
        """,
        (category, limit, offset),
    )
    movies = [_row_to_movie(row, [category]) for row in cursor.fetchall()]
    return movies, int(total_row[0] or 0)


# extractions (truth records)


def insert_extraction(
    conn: Any,
    movie_id: int,
    *,
    source: str,
    model: str,
    content: Any,
    evidence: Any,
    citations: list[str],
    usage: dict[str, Any],
    total_cost: float,
    fetched_at: str | None = None,
) -> int:
    extraction_id = conn.insert_returning_id(
        """
        INSERT INTO extractions
            (movie_id, source, model, fetched_at, content_json, evidence_json, citations_json,
             prompt_tokens, completion_tokens, total_tokens, total_cost)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            movie_id,
            source,
            model,
            fetched_at or utc_now_iso(),
            json_dumps(content),
            json_dumps(evidence),
            json_dumps(citations),
            int(usage.get("prompt_tokens") or 0),
            int(usage.get("completion_tokens") or 0),
            int(usage.get("total_tokens") or 0),
            float(total_cost),
        ),
    )
    conn.commit()
    return extraction_id


def get_latest_extraction(conn: Any, movie_id: int) -> Extraction | None:
    row = conn.execute(
        """
        SELECT id, movie_id, source, model, fetched_at, content_json, evidence_json,
               citations_json, prompt_tokens, completion_tokens, total_tokens, total_cost
        FROM extractions
        WHERE movie_id = ?
        ORDER BY fetched_at DESC, id DESC
        LIMIT 1
        """,
        (movie_id,),
    ).fetchone()
    return _row_to_extraction(row) if row else None


def list_extractions(conn: Any, movie_id: int) -> list[Extraction]:
    cursor = conn.execute(
        """
        SELECT id, movie_id, source, model, fetched_at, content_json, evidence_json,
               citations_json, prompt_tokens, completion_tokens, total_tokens, total_cost
        FROM extractions
        WHERE movie_id = ?
        ORDER BY fetched_at DESC, id DESC
        """,
        (movie_id,),
    )
    return [_row_to_extraction(row) for row in cursor.fetchall()]


# roasts (versioned commentary)


def upsert_roast(
    conn: DBConn,
    movie_id: int,
    roast: dict[str, Any],
    language: str = DEFAULT_LANGUAGE,
) -> int:
    """Store ``roast`` as the active version for (movie, language).

    The previous active row is deactivated and the new row inserted in the
    same transaction; ``uniq_active_roast`` rejects a concurrent second
    active row.
    """
    with conn.transaction():
        conn.execute(
            """
            UPDATE roasts
            SET is_active = 0
            WHERE movie_id = ? AND language = ? AND is_active = 1
            """,
            (movie_id, language),
        )
        roast_id = conn.insert_returning_id(
            """
            INSERT INTO roasts (movie_id, roast_json, language, created_at, is_featured, is_active)
            VALUES (?, ?, ?, ?, 0, 1)
            """,
            (movie_id, json_dumps(roast), language, utc_now_iso()),
        )
    return roast_id


def get_active_roast(
    conn: Any, movie_id: int, language: str = DEFAULT_LANGUAGE
) -> Roast | None:
    row = conn.execute(
        """
        SELECT id, movie_id, roast_json, language, created_at, is_featured, is_active
        FROM roasts
        WHERE movie_id = ? AND language = ? AND is_active = 1
        """,
        (movie_id, language),
    ).fetchone()
    return _row_to_roast(row) if row else None


def has_active_roast(conn: Any, movie_id: int, language: str = DEFAULT_LANGUAGE) -> bool:
    row = conn.execute(
        """
        SELECT 1 FROM roasts
        WHERE movie_id = ? AND language = ? AND is_active = 1
        LIMIT 1
        """,
        (movie_id, language),
    ).fetchone()
    return row is not None


def count_active_roasts(conn: Any, movie_id: int, language: str = DEFAULT_LANGUAGE) -> int:
    row = conn.execute(
        "SELECT COUNT(*) FROM roasts WHERE movie_id = ? AND language = ? AND is_active = 1",
        (movie_id, language),
    ).fetchone()
    return int(row[0] or 0)


def get_roast_history(
    conn: Any, movie_id: int, language: str = DEFAULT_LANGUAGE
) -> list[Roast]:
    cursor = conn.execute(
        """
        SELECT id, movie_id, roast_json, language, created_at, is_featured, is_active
        FROM roasts
        WHERE movie_id = ? AND language = ?
        ORDER BY id DESC
        """,
        (movie_id, language),
    )
    return [_row_to_roast(row) for row in cursor.fetchall()]


def list_recent_roast_texts(conn: Any, limit: int = 5) -> list[str]:
    cursor = conn.execute(
        """
        SELECT roast_json FROM roasts
        WHERE is_active = 1
        ORDER BY id DESC
        LIMIT ?
        """,
        (limit,),
    )
    texts = []
    for (roast_json,) in cursor.fetchall():
        payload = json_loads_or(roast_json, {})
        text = payload.get("roast") if isinstance(payload, dict) else None
        if text:
            texts.append(str(text))
    texts.reverse()
    return texts


def toggle_roast_featured(conn: Any, roast_id: int) -> bool:
    cursor = conn.execute(
        """
        UPDATE roasts
        SET is_featured = CASE WHEN is_featured = 1 THEN 0 ELSE 1 END
        WHERE id = ?
        """,
        (roast_id,),
    )
    conn.commit()
    return cursor.rowcount == 1


# streaming availability (auxiliary)


def save_streaming_providers(
    conn: DBConn,
    movie_id: int,
    region: str,
    providers: list[dict[str, Any]],
) -> int:
    now = utc_now_iso()
    with conn.transaction():
        conn.execute(
            "DELETE FROM streaming_providers WHERE movie_id = ? AND region = ?",
            (movie_id, region),
        )
        if providers:
            conn.executemany(
                """
                INSERT INTO streaming_providers
                    (movie_id, region, provider_id, provider_name, logo_path, type, link,
                     last_updated)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        movie_id,
                        region,
                        item.get("provider_id"),
                        item.get("provider_name"),
                        item.get("logo_path"),
                        item.get("type"),
                        item.get("link"),
                        now,
                    )
                    for item in providers
                ],
            )
    return len(providers)


def list_streaming_providers(conn: Any, movie_id: int) -> list[dict[str, object]]:
    cursor = conn.execute(
        """
        SELECT region, provider_id, provider_name, logo_path, type, link, last_updated
        FROM streaming_providers
        WHERE movie_id = ?
        ORDER BY region, type, provider_name
        """,
        (movie_id,),
    )
    return [
        {
            "region": region,
            "provider_id": provider_id,
            "provider_name": provider_name,
            "logo_path": logo_path,
            "type": kind,
            "link": link,
            "last_updated": last_updated,
        }
        for region, provider_id, provider_name, logo_path, kind, link, last_updated in cursor.fetchall()
    ]


# feed


def list_feed(
    conn: Any,
    category: str,
    limit: int = 20,
    offset: int = 0,
    language: str = DEFAULT_LANGUAGE,
) -> tuple[list[dict[str, object]], int]:
    movies, total = list_movies_by_category(conn, category, limit=limit, offset=offset)
    items = []
    for movie in movies:
        roast = get_active_roast(conn, movie.id, language)
        extraction = get_latest_extraction(conn, movie.id)
        items.append(
            {
                "movie": movie,
                "roast": roast,
                "truth_source": extraction.source if extraction else None,
                "truth_fetched_at": extraction.fetched_at if extraction else None,
            }
        )
    return items, total


def _row_to_movie(row: tuple, categories: list[str]) -> Movie:
    (
        movie_id,
        title,
        release_date,
        popularity,
        vote_average,
        vote_count,
        poster_path,
        language,
        created_at,
        updated_at,
    ) = row
    return Movie(
        id=int(movie_id),
        title=title,
        release_date=release_date,
        popularity=popularity,
        vote_average=vote_average,
        vote_count=vote_count,
        poster_path=poster_path,
        language=language,
        created_at=created_at,
        updated_at=updated_at,
        categories=categories,
    )


def _row_to_extraction(row: tuple) -> Extraction:
    (
        extraction_id,
        movie_id,
        source,
        model,
        fetched_at,
        content_json,
        evidence_json,
        citations_json,
        prompt_tokens,
        completion_tokens,
        total_tokens,
        total_cost,
    ) = row
    citations = json_loads_or(citations_json, [])
    return Extraction(
        id=int(extraction_id),
        movie_id=int(movie_id),
        source=source,
        model=model,
        fetched_at=fetched_at,
        content=json_loads_or(content_json, None),
        evidence=json_loads_or(evidence_json, None),
        citations=citations if isinstance(citations, list) else [],
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=total_tokens,
        total_cost=total_cost,
    )


def _row_to_roast(row: tuple) -> Roast:
    roast_id, movie_id, roast_json, language, created_at, is_featured, is_active = row
    payload = json_loads_or(roast_json, {})
    return Roast(
        id=int(roast_id),
        movie_id=int(movie_id),
        roast=payload if isinstance(payload, dict) else {},
        language=language,
        created_at=created_at,
        is_featured=bool(is_featured),
        is_active=bool(is_active),
    )
