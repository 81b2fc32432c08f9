"""
Entitlement persistence layer.
Supports both SQLite (development) and PostgreSQL (production).

One row per user in ``users`` holds the subscription flag and the free-tier
counter; ``generated_images`` is the append-only list of results per user and
``processed_payments`` remembers which Razorpay payments were already applied.
"""

import logging
import os
import sqlite3
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from errors import ConflictError, NotFoundError, StorageError

logger = logging.getLogger(__name__)


class EntitlementNotFound(NotFoundError):
    def __init__(self, user_id: str):
        super().__init__("User profile not found.")
        self.user_id = user_id


class PaymentAlreadyClaimed(ConflictError):
    def __init__(self, payment_id: str, owner_id: str):
        super().__init__("Payment has already been applied to another account.")
        self.payment_id = payment_id
        self.owner_id = owner_id


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Entitlement:
    """Per-user subscription flag and free-tier usage."""
    user_id: str
    is_subscribed: bool = False
    generation_count: int = 0
    email: Optional[str] = None
    last_payment_order_id: Optional[str] = None
    last_payment_id: Optional[str] = None
    upgraded_at: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Entitlement":
        return cls(
            user_id=row["id"],
            is_subscribed=bool(row["is_subscribed"]),
            generation_count=int(row["generation_count"] or 0),
            email=row.get("email"),
            last_payment_order_id=row.get("last_payment_order_id"),
            last_payment_id=row.get("last_payment_id"),
            upgraded_at=row.get("upgraded_at"),
            created_at=row.get("created_at"),
        )

    def to_dict(self) -> dict:
        return {
            "userId": self.user_id,
            "email": self.email,
            "isSubscribed": self.is_subscribed,
            "generationCount": self.generation_count,
            "lastPaymentOrderId": self.last_payment_order_id,
            "lastPaymentId": self.last_payment_id,
            "upgradedAt": self.upgraded_at,
            "createdAt": self.created_at,
        }


@dataclass
class Artifact:
    """A generated coloring page."""
    id: str
    user_id: str
    image_url: str
    prompt: str
    created_at: str

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Artifact":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            image_url=row["image_url"],
            prompt=row["prompt"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "imageUrl": self.image_url,
            "prompt": self.prompt,
            "createdAt": self.created_at,
        }


class _Transaction:
    """Connection scope: commit on success, rollback on error, always release."""

    def __init__(self, store: "EntitlementStore"):
        self.store = store
        self.conn = None

    def __enter__(self):
        try:
            self.conn = self.store._get_connection()
        except self.store.driver_errors as exc:
            raise StorageError(f"Database unavailable: {exc}") from exc
        return self.conn

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            if exc_type:
                self.conn.rollback()
            else:
                self.conn.commit()
        except self.store.driver_errors as exc:
            raise StorageError(f"Database error: {exc}") from exc
        finally:
            self.store._release_connection(self.conn)

        if exc_type and issubclass(exc_type, self.store.driver_errors):
            raise StorageError(f"Database error: {exc_val}") from exc_val
        return False


class EntitlementStore:
    """
    Reads and writes entitlement records.

    Built once per process and handed to the request handlers; every
    write touches a single user's rows.
    """

    def __init__(self, database_url: str = "", db_path: str = "./temp/app_data.db"):
        self.database_url = database_url
        self.use_postgres = database_url.startswith("postgres")
        self.db_path = db_path
        self.driver_errors: tuple = (sqlite3.Error,)
        self._pool = None
        self._pool_lock = threading.Lock()

        if self.use_postgres:
            import psycopg2

            self.driver_errors = (sqlite3.Error, psycopg2.Error)
        else:
            db_dir = os.path.dirname(os.path.abspath(db_path))
            os.makedirs(db_dir, exist_ok=True)

    # ----- connections -----

    def _get_connection(self):
        if self.use_postgres:
            if self._pool is None:
                with self._pool_lock:
                    if self._pool is None:
                        from psycopg2.extras import RealDictCursor
                        from psycopg2.pool import SimpleConnectionPool

                        self._pool = SimpleConnectionPool(
                            1, 20,
                            self.database_url,
                            cursor_factory=RealDictCursor,
                        )
            return self._pool.getconn()

        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.row_factory = sqlite3.Row
        return conn

    def _release_connection(self, conn) -> None:
        if conn is None:
            return
        if self.use_postgres:
            if self._pool:
                self._pool.putconn(conn)
        else:
            conn.close()

    def _db(self) -> _Transaction:
        return _Transaction(self)

    def _format_query(self, query: str) -> str:
        """Convert ? placeholders to %s for PostgreSQL if needed."""
        if self.use_postgres:
            return query.replace("?", "%s")
        return query

    def close(self) -> None:
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None

    # ----- schema -----

    def init_schema(self) -> None:
        """Create tables if they do not exist yet."""
        with self._db() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    email TEXT,
                    is_subscribed INTEGER NOT NULL DEFAULT 0,
                    generation_count INTEGER NOT NULL DEFAULT 0,
                    last_payment_order_id TEXT,
                    last_payment_id TEXT,
                    upgraded_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS generated_images (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    image_url TEXT NOT NULL,
                    prompt TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_images_user
                ON generated_images(user_id, created_at)
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS processed_payments (
                    payment_id TEXT PRIMARY KEY,
                    order_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    processed_at TEXT NOT NULL
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS healthchecks (
                    id TEXT PRIMARY KEY,
                    checked_at TEXT NOT NULL
                )
            """)
        logger.info(f"Database initialized: {'PostgreSQL' if self.use_postgres else 'SQLite at ' + self.db_path}")

    # ----- entitlements -----

    def get_entitlement(self, user_id: str) -> Optional[Entitlement]:
        """Get a user's entitlement record, or None if the user has no profile."""
        with self._db() as conn:
            cursor = conn.cursor()
            cursor.execute(self._format_query("SELECT * FROM users WHERE id = ?"), (user_id,))
            row = cursor.fetchone()
            if row:
                return Entitlement.from_row(dict(row))
            return None

    def create_entitlement(self, user_id: str, email: Optional[str] = None) -> Entitlement:
        """
        Create the free-tier record for a new user.
        Calling it again for an existing user leaves the record untouched.
        """
        now = _now()
        with self._db() as conn:
            cursor = conn.cursor()
            cursor.execute(self._format_query("""
                INSERT INTO users (id, email, is_subscribed, generation_count, created_at, updated_at)
                VALUES (?, ?, 0, 0, ?, ?)
                ON CONFLICT(id) DO NOTHING
            """), (user_id, email.lower() if email else None, now, now))
            if cursor.rowcount > 0:
                logger.info(f"Entitlement record created for user {user_id}")
        return self.get_entitlement(user_id)

    def set_subscribed(self, user_id: str, order_id: str, payment_id: str) -> bool:
        """
        Mark a user as Pro and remember the payment that did it.

        The ledger row is claimed first, in the same transaction as the
        upgrade, so one payment can only ever upgrade one user.

        Returns:
            True if the user was upgraded, False if this payment was
            already applied to the same user (nothing is rewritten).
        Raises:
            PaymentAlreadyClaimed: the payment belongs to another user
            EntitlementNotFound: the user has no record
        """
        now = _now()
        with self._db() as conn:
            cursor = conn.cursor()
            cursor.execute(self._format_query("""
                INSERT INTO processed_payments (payment_id, order_id, user_id, processed_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(payment_id) DO NOTHING
            """), (payment_id, order_id, user_id, now))
            if cursor.rowcount == 0:
                cursor.execute(
                    self._format_query("SELECT user_id FROM processed_payments WHERE payment_id = ?"),
                    (payment_id,),
                )
                owner_id = dict(cursor.fetchone())["user_id"]
                if owner_id != user_id:
                    raise PaymentAlreadyClaimed(payment_id, owner_id)
                return False

            cursor.execute(self._format_query("""
                UPDATE users SET
                    is_subscribed = 1,
                    last_payment_order_id = ?,
                    last_payment_id = ?,
                    upgraded_at = ?,
                    updated_at = ?
                WHERE id = ?
            """), (order_id, payment_id, now, now, user_id))
            if cursor.rowcount == 0:
                raise EntitlementNotFound(user_id)
        return True

    def increment_generation_count(self, user_id: str) -> bool:
        """
        Atomically add one free-tier generation.
        Subscribed users are never counted. Returns True if a row changed.
        """
        with self._db() as conn:
            cursor = conn.cursor()
            cursor.execute(self._format_query("""
                UPDATE users SET
                    generation_count = generation_count + 1,
                    updated_at = ?
                WHERE id = ? AND is_subscribed = 0
            """), (_now(), user_id))
            return cursor.rowcount > 0

    # ----- artifacts -----

    def record_artifact(self, user_id: str, image_url: str, prompt: str) -> Artifact:
        """Append a generated image to the user's gallery."""
        artifact = Artifact(
            id=uuid.uuid4().hex,
            user_id=user_id,
            image_url=image_url,
            prompt=prompt,
            created_at=_now(),
        )
        with self._db() as conn:
            cursor = conn.cursor()
            cursor.execute(self._format_query("""
                INSERT INTO generated_images (id, user_id, image_url, prompt, created_at)
                VALUES (?, ?, ?, ?, ?)
            """), (artifact.id, artifact.user_id, artifact.image_url, artifact.prompt, artifact.created_at))
        return artifact

    def list_artifacts(self, user_id: str, limit: int = 50) -> List[Artifact]:
        """Newest first."""
        with self._db() as conn:
            cursor = conn.cursor()
            cursor.execute(self._format_query("""
                SELECT * FROM generated_images
                WHERE user_id = ?
                ORDER BY created_at DESC
                LIMIT ?
            """), (user_id, limit))
            return [Artifact.from_row(dict(row)) for row in cursor.fetchall()]

    # ----- payments -----

    def get_processed_payment(self, payment_id: str) -> Optional[Dict[str, Any]]:
        """Return the ledger entry for a payment that was already applied."""
        with self._db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                self._format_query("SELECT * FROM processed_payments WHERE payment_id = ?"),
                (payment_id,),
            )
            row = cursor.fetchone()
            if row:
                return dict(row)
            return None

    # ----- health -----

    def ping(self) -> bool:
        """Write and read back the health-check row."""
        now = _now()
        with self._db() as conn:
            cursor = conn.cursor()
            cursor.execute(self._format_query("""
                INSERT INTO healthchecks (id, checked_at) VALUES (?, ?)
                ON CONFLICT(id) DO UPDATE SET checked_at = excluded.checked_at
            """), ("test", now))
            cursor.execute(self._format_query("SELECT checked_at FROM healthchecks WHERE id = ?"), ("test",))
            row = cursor.fetchone()
            return row is not None
