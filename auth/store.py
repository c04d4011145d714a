"""
auth/store.py -- SQLAlchemy Core persistence layer for identity entities.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user / _row_to_link are the mappers.
Flow and route code never touches SQL directly.

Error contract:
  Lookups return None (or "") for "not found" -- that is not an error.
  Any IntegrityError (UNIQUE, FK) is re-raised as DuplicateRecordError so
  callers can treat concurrent-insert races as conflicts without looking at
  driver-specific message text. Every other SQLAlchemyError is re-raised as
  StoreError.

Atomicity:
  create_user_with_link() and create_user_with_password() run both inserts
  inside one engine.begin() block. If the second insert fails the first is
  rolled back, so a half-created account is never visible.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.models import AuthProviderLink, User


class StoreError(Exception):
    """A storage failure. The original driver exception is chained as __cause__."""


class DuplicateRecordError(StoreError):
    """An insert or update violated a uniqueness (or referential) constraint."""


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("email", String(255), nullable=False, unique=True),  # stored lower-cased
    Column("user_type", String(20), nullable=False, server_default="standard"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_auth_providers = Table(
    "auth_providers",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("provider", String(20), nullable=False),
    Column("provider_user_id", String(255), nullable=False),
    Column("email", String(255)),
    Column("username", String(255)),
    Column("display_name", String(255)),
    Column("avatar_url", Text),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    UniqueConstraint("provider", "provider_user_id", name="uq_auth_providers_remote_account"),
    UniqueConstraint("user_id", "provider", name="uq_auth_providers_user_provider"),
)

_passwords = Table(
    "passwords",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# SQLite connection pragmas
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. Foreign keys are OFF by default in SQLite.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


@contextmanager
def _storage_errors(operation: str) -> Iterator[None]:
    """Translate SQLAlchemy exceptions into the store's own error kinds."""
    try:
        yield
    except IntegrityError as exc:
        raise DuplicateRecordError(f"{operation}: constraint violation") from exc
    except SQLAlchemyError as exc:
        raise StoreError(f"{operation}: storage failure") from exc


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User, AuthProviderLink and password hash records.

    Usage:
        store = UserStore("sqlite:///task_manager.db")
        user = store.create_user(User(first_name="Ada", last_name="Lovelace", email="ada@example.com"))
        store.upsert_password_hash(user.id, hash_password("secret-pass"))
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            return False
        return True

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> User:
        """Insert a user and return it with id and timestamps filled in.

        Raises DuplicateRecordError if the email is already taken.
        """
        with _storage_errors("create_user"), self.engine.begin() as conn:
            return _insert_user(conn, user)

    def get_user_by_email(self, email: str) -> User | None:
        """Look up a user by email (trimmed, case-insensitive). Returns None if not found."""
        email = normalize_email(email)
        if not email:
            return None
        with _storage_errors("get_user_by_email"), self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_id(self, user_id: str) -> User | None:
        with _storage_errors("get_user_by_id"), self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == str(user_id))).fetchone()
        return _row_to_user(row) if row is not None else None

    # ------------------------------------------------------------------
    # Provider links
    # ------------------------------------------------------------------

    def get_user_by_auth_provider(self, provider: str, provider_user_id: str) -> User | None:
        """Return the user that owns the (provider, provider_user_id) link, or None."""
        query = (
            select(_users)
            .select_from(_auth_providers.join(_users, _users.c.id == _auth_providers.c.user_id))
            .where(
                (_auth_providers.c.provider == provider) & (_auth_providers.c.provider_user_id == provider_user_id)
            )
        )
        with _storage_errors("get_user_by_auth_provider"), self.engine.connect() as conn:
            row = conn.execute(query).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_auth_provider_link(self, user_id: str, provider: str) -> AuthProviderLink | None:
        """Return the user's link for one provider, or None."""
        with _storage_errors("get_auth_provider_link"), self.engine.connect() as conn:
            row = conn.execute(
                _auth_providers.select().where(
                    (_auth_providers.c.user_id == str(user_id)) & (_auth_providers.c.provider == provider)
                )
            ).fetchone()
        return _row_to_link(row) if row is not None else None

    def list_auth_provider_links(self, user_id: str) -> list[AuthProviderLink]:
        """Return every link owned by the user, oldest first."""
        with _storage_errors("list_auth_provider_links"), self.engine.connect() as conn:
            rows = conn.execute(
                _auth_providers.select()
                .where(_auth_providers.c.user_id == str(user_id))
                .order_by(_auth_providers.c.created_at.asc())
            ).fetchall()
        return [_row_to_link(r) for r in rows]

    def create_auth_provider_link(self, link: AuthProviderLink) -> AuthProviderLink:
        """Insert a link. Raises DuplicateRecordError on either UNIQUE constraint."""
        with _storage_errors("create_auth_provider_link"), self.engine.begin() as conn:
            return _insert_link(conn, link)

    def create_user_with_link(self, user: User, link: AuthProviderLink) -> tuple[User, AuthProviderLink]:
        """Create a user and its first provider link in one transaction.

        link.user_id is overwritten with the new user's id. Either both rows
        are committed or neither is.
        """
        with _storage_errors("create_user_with_link"), self.engine.begin() as conn:
            created_user = _insert_user(conn, user)
            created_link = _insert_link(conn, replace(link, user_id=created_user.id))
        return created_user, created_link

    # ------------------------------------------------------------------
    # Passwords (local auth)
    # ------------------------------------------------------------------

    def create_user_with_password(self, user: User, password_hash: str) -> User:
        """Create a local-auth user and its password hash in one transaction."""
        with _storage_errors("create_user_with_password"), self.engine.begin() as conn:
            created = _insert_user(conn, user)
            _upsert_password(conn, created.id, password_hash)
        return created

    def upsert_password_hash(self, user_id: str, password_hash: str) -> None:
        with _storage_errors("upsert_password_hash"), self.engine.begin() as conn:
            _upsert_password(conn, str(user_id), password_hash)

    def get_password_hash(self, user_id: str) -> str:
        """Return the stored hash, or "" for an OAuth-only account."""
        with _storage_errors("get_password_hash"), self.engine.connect() as conn:
            value = conn.execute(
                select(_passwords.c.password_hash).where(_passwords.c.user_id == str(user_id))
            ).scalar()
        return value or ""

    def count_users(self) -> int:
        with _storage_errors("count_users"), self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_users)).scalar() or 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Statement helpers (run on a caller-owned connection / transaction)
# ---------------------------------------------------------------------------


def _insert_user(conn: Connection, user: User) -> User:
    now = _now_iso()
    created = replace(
        user,
        id=user.id or str(uuid.uuid4()),
        email=normalize_email(user.email),
        first_name=user.first_name.strip(),
        last_name=user.last_name.strip(),
        created_at=now,
        updated_at=now,
    )
    conn.execute(
        _users.insert().values(
            id=created.id,
            first_name=created.first_name,
            last_name=created.last_name,
            email=created.email,
            user_type=created.user_type,
            created_at=created.created_at,
            updated_at=created.updated_at,
        )
    )
    return created


def _insert_link(conn: Connection, link: AuthProviderLink) -> AuthProviderLink:
    now = _now_iso()
    created = replace(link, id=link.id or str(uuid.uuid4()), created_at=now, updated_at=now)
    conn.execute(
        _auth_providers.insert().values(
            id=created.id,
            user_id=str(created.user_id),
            provider=created.provider,
            provider_user_id=created.provider_user_id,
            email=created.email,
            username=created.username,
            display_name=created.display_name,
            avatar_url=created.avatar_url,
            created_at=created.created_at,
            updated_at=created.updated_at,
        )
    )
    return created


def _upsert_password(conn: Connection, user_id: str, password_hash: str) -> None:
    # UPDATE-then-INSERT keeps the upsert portable across SQLite and PostgreSQL.
    now = _now_iso()
    result = conn.execute(
        _passwords.update().where(_passwords.c.user_id == user_id).values(password_hash=password_hash, updated_at=now)
    )
    if result.rowcount == 0:
        conn.execute(
            _passwords.insert().values(
                id=str(uuid.uuid4()),
                user_id=user_id,
                password_hash=password_hash,
                created_at=now,
                updated_at=now,
            )
        )


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        first_name=row.first_name or "",
        last_name=row.last_name or "",
        email=row.email,
        user_type=row.user_type,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_link(row) -> AuthProviderLink:
    return AuthProviderLink(
        id=row.id,
        user_id=row.user_id,
        provider=row.provider,
        provider_user_id=row.provider_user_id,
        email=row.email or "",
        username=row.username or "",
        display_name=row.display_name or "",
        avatar_url=row.avatar_url or "",
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
