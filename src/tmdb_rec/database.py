import sqlite3
import json
import logging
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta
from .config import DB_PATH, CACHE_DAYS
from .errors import AlreadyExistsError, NotFoundError, TransactionError
from .models import (
    CastMember, Company, Genre, Keyword, MovieRecord, Priority, Rating,
    RatingEvent, WatchlistEntry, entities_to_json, parse_entities,
)
from .utils import parse_timestamp_naive

logger = logging.getLogger(__name__)

WEIGHT_COLUMNS = (
    'genre_weight',
    'director_weight',
    'actor_weight',
    'keyword_weight',
    'popularity_weight',
    'recency_weight',
    'runtime_weight',
    'era_weight',
)


class ConnectionPool:
    """
    Thread-safe SQLite connection pool.

    Features:
    - One connection per thread (SQLite threading requirement)
    - Periodic health checks via SELECT 1
    - Automatic cleanup of dead thread connections
    - Explicit transaction nesting tracking
    """

    def __init__(self, db_path, max_size: int = 50, health_check_interval: int = 300):
        self._db_path = db_path
        self._max_size = max_size
        self._health_check_interval = health_check_interval

        self._lock = threading.Lock()
        self._connections: dict[int, sqlite3.Connection] = {}
        self._last_health_check: dict[int, float] = {}
        self._transaction_depth: dict[int, int] = {}
        self._last_cleanup = time.time()
        self._cleanup_interval = 60

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA busy_timeout = 5000")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        conn.execute("PRAGMA foreign_keys = ON")

        return conn

    def _health_check(self, conn: sqlite3.Connection) -> bool:
        try:
            conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error:
            return False

    def _maybe_cleanup(self):
        """Close connections owned by threads that have exited (asyncio.to_thread workers come and go)."""
        now = time.time()
        if now - self._last_cleanup < self._cleanup_interval:
            return

        self._last_cleanup = now
        alive_threads = {t.ident for t in threading.enumerate()}
        dead_threads = set(self._connections.keys()) - alive_threads

        for thread_id in dead_threads:
            conn = self._connections.pop(thread_id, None)
            self._last_health_check.pop(thread_id, None)
            self._transaction_depth.pop(thread_id, None)
            if conn:
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing connection for thread {thread_id}: {e}")

        if dead_threads:
            logger.debug(f"Connection pool cleanup: removed {len(dead_threads)} dead connections")

    def get_connection(self) -> sqlite3.Connection:
        thread_id = threading.get_ident()
        now = time.time()

        with self._lock:
            self._maybe_cleanup()
            conn = self._connections.get(thread_id)

            if conn is not None and now - self._last_health_check.get(thread_id, 0) > self._health_check_interval:
                if self._health_check(conn):
                    self._last_health_check[thread_id] = now
                else:
                    logger.warning(f"Connection for thread {thread_id} failed health check, replacing")
                    try:
                        conn.close()
                    except sqlite3.Error as e:
                        logger.debug(f"Error closing unhealthy connection: {e}")
                    conn = None

            if conn is None:
                if len(self._connections) >= self._max_size:
                    self._last_cleanup = 0
                    self._maybe_cleanup()
                    if len(self._connections) >= self._max_size:
                        raise RuntimeError(
                            f"Connection pool exhausted ({self._max_size} connections)"
                        )
                conn = self._create_connection()
                self._connections[thread_id] = conn
                self._last_health_check[thread_id] = now
                self._transaction_depth[thread_id] = 0

            return conn

    def get_transaction_depth(self) -> int:
        return self._transaction_depth.get(threading.get_ident(), 0)

    def increment_transaction_depth(self):
        thread_id = threading.get_ident()
        with self._lock:
            self._transaction_depth[thread_id] = self._transaction_depth.get(thread_id, 0) + 1

    def decrement_transaction_depth(self):
        thread_id = threading.get_ident()
        with self._lock:
            depth = self._transaction_depth.get(thread_id, 1)
            self._transaction_depth[thread_id] = max(0, depth - 1)

    def close_all(self):
        with self._lock:
            for thread_id, conn in list(self._connections.items()):
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing connection for thread {thread_id}: {e}")
            self._connections.clear()
            self._last_health_check.clear()
            self._transaction_depth.clear()


_pool: ConnectionPool | None = None
_pool_lock = threading.Lock()


def init_db() -> None:
    DB_PATH.parent.mkdir(exist_ok=True, parents=True)
    with get_db() as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS movies (
                tmdb_id INTEGER PRIMARY KEY,
                title TEXT NOT NULL,
                overview TEXT,
                poster_path TEXT,
                backdrop_path TEXT,
                release_date TEXT,
                genres TEXT,                -- JSON list of {id, name}
                director TEXT,
                director_id INTEGER,
                cast_members TEXT,          -- JSON list of {id, name, character, profile_path}
                keywords TEXT,              -- JSON list of {id, name}
                collection_id INTEGER,
                collection_name TEXT,
                production_companies TEXT,  -- JSON list of {id, name}
                runtime INTEGER,
                vote_average REAL,
                vote_count INTEGER,
                original_language TEXT,
                last_updated TEXT
            );

            CREATE TABLE IF NOT EXISTS user_movies (
                user_id TEXT NOT NULL,
                tmdb_id INTEGER NOT NULL REFERENCES movies(tmdb_id),
                rating INTEGER NOT NULL,
                watched INTEGER DEFAULT 1,
                rated_at TEXT NOT NULL,
                PRIMARY KEY (user_id, tmdb_id)
            );

            CREATE TABLE IF NOT EXISTS watchlist (
                user_id TEXT NOT NULL,
                tmdb_id INTEGER NOT NULL REFERENCES movies(tmdb_id),
                priority TEXT DEFAULT 'MEDIUM',
                note TEXT,
                added_at TEXT NOT NULL,
                PRIMARY KEY (user_id, tmdb_id)
            );

            CREATE TABLE IF NOT EXISTS user_preference_weights (
                user_id TEXT PRIMARY KEY,
                genre_weight REAL DEFAULT 1.0,
                director_weight REAL DEFAULT 1.0,
                actor_weight REAL DEFAULT 1.0,
                keyword_weight REAL DEFAULT 1.0,
                popularity_weight REAL DEFAULT 1.0,
                recency_weight REAL DEFAULT 1.0,
                runtime_weight REAL DEFAULT 1.0,
                era_weight REAL DEFAULT 1.0,
                rating_count INTEGER DEFAULT 0,
                last_calculated TEXT
            );

            CREATE TABLE IF NOT EXISTS recommendation_interactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                tmdb_id INTEGER NOT NULL,
                action TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_user_movies_user ON user_movies(user_id, rated_at);
            CREATE INDEX IF NOT EXISTS idx_user_movies_rating ON user_movies(user_id, rating);
            CREATE INDEX IF NOT EXISTS idx_watchlist_user ON watchlist(user_id, added_at);
            CREATE INDEX IF NOT EXISTS idx_movies_last_updated ON movies(last_updated);
            CREATE INDEX IF NOT EXISTS idx_interactions_user ON recommendation_interactions(user_id, created_at);
        """)


def _get_pool() -> ConnectionPool:
    global _pool
    if _pool is None:
        with _pool_lock:
            if _pool is None:
                DB_PATH.parent.mkdir(exist_ok=True, parents=True)
                _pool = ConnectionPool(DB_PATH)
    return _pool


@contextmanager
def get_db(read_only: bool = False):
    """
    Get database connection with proper transaction handling.

    Args:
        read_only: If True, skip commit on exit (optimization for read operations)

    Handles nested calls correctly:
    - Only the outermost context commits/rollbacks
    - Inner contexts are no-ops for transaction control
    """
    pool = _get_pool()
    conn = pool.get_connection()

    is_outermost = pool.get_transaction_depth() == 0
    pool.increment_transaction_depth()

    try:
        yield conn
        if is_outermost and not read_only:
            conn.commit()
    except Exception:
        if is_outermost:
            conn.rollback()
        raise
    finally:
        pool.decrement_transaction_depth()


def close_pool():
    """Close the connection pool. Call on application shutdown."""
    global _pool
    if _pool is not None:
        _pool.close_all()
        _pool = None


def load_json(val):
    """Safely load JSON from db field."""
    if not val:
        return []
    if isinstance(val, list):
        return val
    try:
        return json.loads(val)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Failed to parse JSON '{str(val)[:50]}...': {e}")
        return []


# --- Movie cache ---------------------------------------------------------

def _row_to_movie(row: sqlite3.Row) -> MovieRecord:
    return MovieRecord(
        tmdb_id=row['tmdb_id'],
        title=row['title'],
        overview=row['overview'],
        poster_path=row['poster_path'],
        backdrop_path=row['backdrop_path'],
        release_date=row['release_date'],
        genres=parse_entities(load_json(row['genres']), Genre),
        director=row['director'],
        director_id=row['director_id'],
        cast=parse_entities(load_json(row['cast_members']), CastMember),
        keywords=parse_entities(load_json(row['keywords']), Keyword),
        collection_id=row['collection_id'],
        collection_name=row['collection_name'],
        production_companies=parse_entities(load_json(row['production_companies']), Company),
        runtime=row['runtime'],
        vote_average=row['vote_average'],
        vote_count=row['vote_count'],
        original_language=row['original_language'],
        last_updated=parse_timestamp_naive(row['last_updated']) if row['last_updated'] else None,
    )


def upsert_movie(movie: MovieRecord) -> None:
    """Insert or refresh a cached movie; last_updated is stamped now."""
    with get_db() as conn:
        conn.execute("""
            INSERT INTO movies (
                tmdb_id, title, overview, poster_path, backdrop_path, release_date,
                genres, director, director_id, cast_members, keywords, collection_id,
                collection_name, production_companies, runtime, vote_average,
                vote_count, original_language, last_updated
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(tmdb_id) DO UPDATE SET
                title = excluded.title,
                overview = excluded.overview,
                poster_path = excluded.poster_path,
                backdrop_path = excluded.backdrop_path,
                release_date = excluded.release_date,
                genres = excluded.genres,
                director = excluded.director,
                director_id = excluded.director_id,
                cast_members = excluded.cast_members,
                keywords = excluded.keywords,
                collection_id = excluded.collection_id,
                collection_name = excluded.collection_name,
                production_companies = excluded.production_companies,
                runtime = excluded.runtime,
                vote_average = excluded.vote_average,
                vote_count = excluded.vote_count,
                original_language = excluded.original_language,
                last_updated = excluded.last_updated
        """, (
            movie.tmdb_id,
            movie.title,
            movie.overview,
            movie.poster_path,
            movie.backdrop_path,
            movie.release_date,
            json.dumps(entities_to_json(movie.genres)),
            movie.director,
            movie.director_id,
            json.dumps(entities_to_json(movie.cast)),
            json.dumps(entities_to_json(movie.keywords)),
            movie.collection_id,
            movie.collection_name,
            json.dumps(entities_to_json(movie.production_companies)),
            movie.runtime,
            movie.vote_average,
            movie.vote_count,
            movie.original_language,
            datetime.now().isoformat(),
        ))


def get_movie(tmdb_id: int) -> MovieRecord | None:
    with get_db(read_only=True) as conn:
        row = conn.execute("SELECT * FROM movies WHERE tmdb_id = ?", (tmdb_id,)).fetchone()
    return _row_to_movie(row) if row else None


def get_movies(tmdb_ids: list[int]) -> dict[int, MovieRecord]:
    """Batch lookup of cached movies keyed by tmdb_id."""
    if not tmdb_ids:
        return {}

    result = {}
    CHUNK_SIZE = 900
    with get_db(read_only=True) as conn:
        for i in range(0, len(tmdb_ids), CHUNK_SIZE):
            chunk = tmdb_ids[i:i + CHUNK_SIZE]
            placeholders = ','.join('?' * len(chunk))
            rows = conn.execute(
                f"SELECT * FROM movies WHERE tmdb_id IN ({placeholders})", chunk
            ).fetchall()
            for row in rows:
                result[row['tmdb_id']] = _row_to_movie(row)
    return result


def get_stale_movies(max_age_days: int = CACHE_DAYS, limit: int | None = None) -> list[int]:
    """Return tmdb_ids whose cache entry is older than max_age_days (or never stamped)."""
    cutoff = (datetime.now() - timedelta(days=max_age_days)).isoformat()
    sql = """
        SELECT tmdb_id FROM movies
        WHERE last_updated IS NULL OR last_updated < ?
        ORDER BY last_updated ASC
    """
    params: list = [cutoff]
    if limit is not None:
        sql += " LIMIT ?"
        params.append(limit)
    with get_db(read_only=True) as conn:
        return [r['tmdb_id'] for r in conn.execute(sql, params).fetchall()]


# --- Ratings -------------------------------------------------------------

def _row_to_rating(row: sqlite3.Row, movie: MovieRecord | None = None) -> RatingEvent:
    return RatingEvent(
        user_id=row['user_id'],
        tmdb_id=row['tmdb_id'],
        rating=Rating(row['rating']),
        watched=bool(row['watched']),
        rated_at=parse_timestamp_naive(row['rated_at']),
        movie=movie,
    )


def get_rating_history(user_id: str) -> list[RatingEvent]:
    """Full rating history joined with cached movie metadata, most recent first."""
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT um.user_id, um.tmdb_id, um.rating, um.watched, um.rated_at, m.*
            FROM user_movies um
            JOIN movies m ON m.tmdb_id = um.tmdb_id
            WHERE um.user_id = ?
            ORDER BY um.rated_at DESC, um.tmdb_id DESC
        """, (user_id,)).fetchall()
    return [_row_to_rating(row, _row_to_movie(row)) for row in rows]


def get_rating(user_id: str, tmdb_id: int) -> RatingEvent | None:
    with get_db(read_only=True) as conn:
        row = conn.execute(
            "SELECT * FROM user_movies WHERE user_id = ? AND tmdb_id = ?",
            (user_id, tmdb_id),
        ).fetchone()
    return _row_to_rating(row) if row else None


def get_rating_count(user_id: str) -> int:
    with get_db(read_only=True) as conn:
        return conn.execute(
            "SELECT COUNT(*) FROM user_movies WHERE user_id = ?", (user_id,)
        ).fetchone()[0]


def _upsert_rating_row(conn, user_id: str, tmdb_id: int, rating: Rating, watched: bool) -> None:
    conn.execute("""
        INSERT INTO user_movies (user_id, tmdb_id, rating, watched, rated_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(user_id, tmdb_id) DO UPDATE SET
            rating = excluded.rating,
            watched = excluded.watched,
            rated_at = excluded.rated_at
    """, (user_id, tmdb_id, int(rating), int(watched), datetime.now().isoformat()))


def upsert_rating(user_id: str, tmdb_id: int, rating: Rating, watched: bool = True) -> bool:
    """
    Create or overwrite the single rating for (user, movie).

    Returns True when a new rating was created, False when an existing one was updated.
    The movie must already be cached.
    """
    with get_db() as conn:
        existed = conn.execute(
            "SELECT 1 FROM user_movies WHERE user_id = ? AND tmdb_id = ?",
            (user_id, tmdb_id),
        ).fetchone() is not None
        _upsert_rating_row(conn, user_id, tmdb_id, rating, watched)
    return not existed


def delete_rating(user_id: str, tmdb_id: int) -> None:
    with get_db() as conn:
        cursor = conn.execute(
            "DELETE FROM user_movies WHERE user_id = ? AND tmdb_id = ?",
            (user_id, tmdb_id),
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"No rating for movie {tmdb_id}")


# --- Watchlist -----------------------------------------------------------

def get_watchlist(user_id: str) -> list[WatchlistEntry]:
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT w.user_id, w.tmdb_id, w.priority, w.note, w.added_at, m.*
            FROM watchlist w
            JOIN movies m ON m.tmdb_id = w.tmdb_id
            WHERE w.user_id = ?
            ORDER BY w.added_at DESC
        """, (user_id,)).fetchall()
    return [
        WatchlistEntry(
            user_id=row['user_id'],
            tmdb_id=row['tmdb_id'],
            priority=Priority(row['priority']),
            note=row['note'],
            added_at=parse_timestamp_naive(row['added_at']),
            movie=_row_to_movie(row),
        )
        for row in rows
    ]


def create_watchlist_entry(
    user_id: str,
    tmdb_id: int,
    priority: Priority = Priority.MEDIUM,
    note: str | None = None,
) -> WatchlistEntry:
    added_at = datetime.now()
    try:
        with get_db() as conn:
            conn.execute("""
                INSERT INTO watchlist (user_id, tmdb_id, priority, note, added_at)
                VALUES (?, ?, ?, ?, ?)
            """, (user_id, tmdb_id, priority.value, note, added_at.isoformat()))
    except sqlite3.IntegrityError as e:
        # Primary key violation: already on the watchlist
        if 'UNIQUE' in str(e) or 'PRIMARY KEY' in str(e):
            raise AlreadyExistsError(f"Movie {tmdb_id} already in watchlist") from e
        raise
    return WatchlistEntry(user_id, tmdb_id, priority, note, added_at)


def _delete_watchlist_row(conn, user_id: str, tmdb_id: int) -> int:
    cursor = conn.execute(
        "DELETE FROM watchlist WHERE user_id = ? AND tmdb_id = ?",
        (user_id, tmdb_id),
    )
    return cursor.rowcount


def delete_watchlist_entry(user_id: str, tmdb_id: int) -> None:
    with get_db() as conn:
        if _delete_watchlist_row(conn, user_id, tmdb_id) == 0:
            raise NotFoundError(f"Watchlist item {tmdb_id} not found")


def mark_watched(user_id: str, tmdb_id: int, rating: Rating) -> None:
    """
    Convert a watchlist entry into a rating.

    Both writes share one transaction: either the rating exists and the
    entry is gone, or nothing changed.

    Raises:
        NotFoundError: the movie is not on the user's watchlist
        TransactionError: the store failed mid-way (state rolled back)
    """
    try:
        with get_db() as conn:
            exists = conn.execute(
                "SELECT 1 FROM watchlist WHERE user_id = ? AND tmdb_id = ?",
                (user_id, tmdb_id),
            ).fetchone()
            if not exists:
                raise NotFoundError(f"Watchlist item {tmdb_id} not found")

            _upsert_rating_row(conn, user_id, tmdb_id, rating, watched=True)
            if _delete_watchlist_row(conn, user_id, tmdb_id) != 1:
                raise TransactionError(f"Watchlist item {tmdb_id} vanished during transition")
    except sqlite3.Error as e:
        logger.error(f"Mark-as-watched failed for {user_id}/{tmdb_id}: {e}")
        raise TransactionError(f"Failed to mark movie {tmdb_id} as watched") from e


def get_excluded_ids(user_id: str) -> set[int]:
    """Movies the user has already rated or watchlisted."""
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT tmdb_id FROM user_movies WHERE user_id = ?
            UNION
            SELECT tmdb_id FROM watchlist WHERE user_id = ?
        """, (user_id, user_id)).fetchall()
    return {r['tmdb_id'] for r in rows}


# --- Weight profiles -----------------------------------------------------

def get_weight_profile(user_id: str) -> dict | None:
    with get_db(read_only=True) as conn:
        row = conn.execute(
            "SELECT * FROM user_preference_weights WHERE user_id = ?", (user_id,)
        ).fetchone()
    if not row:
        return None
    data = dict(row)
    if data.get('last_calculated'):
        data['last_calculated'] = parse_timestamp_naive(data['last_calculated'])
    return data


def save_weight_profile(user_id: str, weights: dict[str, float], rating_count: int = 0) -> None:
    """Persist a full recomputation; weights are keyed by column name."""
    values = [float(weights.get(col, 1.0)) for col in WEIGHT_COLUMNS]
    columns = ', '.join(WEIGHT_COLUMNS)
    placeholders = ', '.join('?' * len(WEIGHT_COLUMNS))
    updates = ', '.join(f"{col} = excluded.{col}" for col in WEIGHT_COLUMNS)
    with get_db() as conn:
        conn.execute(f"""
            INSERT INTO user_preference_weights (user_id, {columns}, rating_count, last_calculated)
            VALUES (?, {placeholders}, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                {updates},
                rating_count = excluded.rating_count,
                last_calculated = excluded.last_calculated
        """, (user_id, *values, rating_count, datetime.now().isoformat()))


def update_weight_rating_count(user_id: str, rating_count: int) -> None:
    with get_db() as conn:
        conn.execute(
            "UPDATE user_preference_weights SET rating_count = ? WHERE user_id = ?",
            (rating_count, user_id),
        )


# --- Interactions --------------------------------------------------------

def record_interaction(user_id: str, tmdb_id: int, action: str) -> None:
    with get_db() as conn:
        conn.execute("""
            INSERT INTO recommendation_interactions (user_id, tmdb_id, action, created_at)
            VALUES (?, ?, ?, ?)
        """, (user_id, tmdb_id, action, datetime.now().isoformat()))


def get_recently_shown_ids(user_id: str, actions: tuple[str, ...], days: int) -> set[int]:
    cutoff = (datetime.now() - timedelta(days=days)).isoformat()
    placeholders = ','.join('?' * len(actions))
    with get_db(read_only=True) as conn:
        rows = conn.execute(f"""
            SELECT DISTINCT tmdb_id FROM recommendation_interactions
            WHERE user_id = ? AND created_at >= ? AND action IN ({placeholders})
        """, (user_id, cutoff, *actions)).fetchall()
    return {r['tmdb_id'] for r in rows}


def get_stats(user_id: str) -> dict:
    """Counts for the stats command."""
    with get_db(read_only=True) as conn:
        movies = conn.execute("SELECT COUNT(*) FROM movies").fetchone()[0]
        rated = conn.execute(
            "SELECT COUNT(*) FROM user_movies WHERE user_id = ?", (user_id,)
        ).fetchone()[0]
        watchlisted = conn.execute(
            "SELECT COUNT(*) FROM watchlist WHERE user_id = ?", (user_id,)
        ).fetchone()[0]
        by_rating = {
            Rating(r['rating']).name: r['n']
            for r in conn.execute("""
                SELECT rating, COUNT(*) AS n FROM user_movies
                WHERE user_id = ? GROUP BY rating
            """, (user_id,)).fetchall()
        }
        interactions = conn.execute(
            "SELECT COUNT(*) FROM recommendation_interactions WHERE user_id = ?", (user_id,)
        ).fetchone()[0]
    return {
        'cached_movies': movies,
        'rated': rated,
        'watchlisted': watchlisted,
        'by_rating': by_rating,
        'interactions': interactions,
    }
