"""
auth/store.py -- SQLAlchemy Core persistence layer for accounts, sessions and
termination signals.

Pattern: Repository + Data Mapper. AccountStore is the repository;
_row_to_account / _row_to_session are the mappers. Service and route code
never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  UNIQUE(oauth_provider, oauth_subject) is enforced in code rather than SQL
  because SQLite treats two NULL values as distinct in UNIQUE constraints.

Atomic units:
  replace_active_session() reads the active session, marks it superseded,
  inserts the new one and writes the CONFLICT signal in ONE transaction.
  remove_session() deletes a session and writes its signal in one transaction.
  take_signal() selects and deletes in one transaction, so a failed read
  rolls back and the signal stays pending.

DB path: gatehouse.db at the repository root unless DATABASE_URL is set.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Connection, Engine

from auth.errors import AccountDeleted, AccountLocked, InvalidCredentials
from auth.models import Account, AccountStatus, Role, Session, TerminationSignal
from auth.tokens import DUMMY_HASH, verify_password
from core.config import get_settings

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("hashed_password", Text),
    Column("role", String(30), nullable=False, server_default=Role.USER.value),
    Column("status", String(16), nullable=False, server_default=AccountStatus.ACTIVE.value),
    Column("email", String(255), index=True),
    Column("oauth_provider", String(30)),
    Column("oauth_subject", Text),
    Column("display_name", Text),
    Column("photo_ref", Text),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("token", String(64), primary_key=True),
    Column("account_id", Integer, nullable=False, index=True),
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("superseded_by", String(64)),  # NULL = the account's active session
)

# One pending signal per client context. The primary key is the slot;
# put_signal() overwrites it (last-write-wins).
_signals = Table(
    "termination_signals",
    _metadata,
    Column("context", String(64), primary_key=True),
    Column("signal", String(16), nullable=False),
    Column("written_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode per connection (PRAGMAs are not inherited)."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(dt: datetime) -> str:
    # Fixed-width microseconds keep ISO strings comparable as text.
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_iso() -> str:
    return _iso(datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account, Session and termination-signal records.

    Usage:
        store = AccountStore()
        store.create_account(Account(username="admin", role=Role.ADMIN, hashed_password=hash_password("secret")))
        account = store.get_by_username("admin")
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Account queries
    # ------------------------------------------------------------------

    def has_accounts(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_accounts)).scalar()
        return (result or 0) > 0

    def create_account(self, account: Account) -> int:
        """Insert a new account and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username already exists.
        Callers treat that as "a concurrent request got there first".
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.insert().values(
                    username=account.username,
                    hashed_password=account.hashed_password,
                    role=account.role.value,
                    status=account.status.value,
                    email=account.email,
                    oauth_provider=account.oauth_provider,
                    oauth_subject=account.oauth_subject,
                    display_name=account.display_name,
                    photo_ref=account.photo_ref,
                    created_at=_now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def get_by_username(self, username: str) -> Account | None:
        """Look up an account by exact username (case-sensitive)."""
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.username == username)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_id(self, account_id: int) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_email(self, email: str) -> Account | None:
        """Look up an account by email, falling back to username == email.

        Provisioned and admin-pre-created provider accounts use the email as
        their username, so either column may carry it.
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                _accounts.select()
                .where((_accounts.c.email == email) | (_accounts.c.username == email))
                .order_by(_accounts.c.id)
            ).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_oauth(self, provider: str, subject: str) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _accounts.select().where(
                    (_accounts.c.oauth_provider == provider) & (_accounts.c.oauth_subject == subject)
                )
            ).fetchone()
        return _row_to_account(row) if row is not None else None

    def link_oauth(self, account_id: int, provider: str, subject: str) -> None:
        """Associate a provider identity with an existing account (first federated login)."""
        with self.engine.begin() as conn:
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(oauth_provider=provider, oauth_subject=subject)
            )

    def list_accounts(self) -> list[Account]:
        with self.engine.connect() as conn:
            rows = conn.execute(_accounts.select().order_by(_accounts.c.username)).fetchall()
        return [_row_to_account(r) for r in rows]

    def count_accounts(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_accounts)).scalar() or 0

    def update_account(self, account_id: int, **fields) -> bool:
        """Update mutable fields on an existing account.

        Accepted fields: role, status, hashed_password, display_name, photo_ref.
        Enum values are stored by value. Returns True if a row was updated.
        """
        for key in ("role", "status"):
            if key in fields and hasattr(fields[key], "value"):
                fields[key] = fields[key].value
        with self.engine.begin() as conn:
            result = conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(**fields))
        return result.rowcount > 0

    def update_last_login(self, account_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(last_login=_now_iso()))

    def verify_credentials(self, username: str, password: str) -> Account:
        """Check a username/password pair with timing equalization [C1].

        Always runs bcrypt whether or not the account exists:
        - Unknown username: bcrypt runs against DUMMY_HASH
        - Wrong password: bcrypt runs against the real hash

        Status is reported only after the password matched, so locked and
        deleted accounts are not enumerable with a wrong password.

        Raises InvalidCredentials, AccountLocked or AccountDeleted.
        """
        account = self.get_by_username(username)
        if account is None or account.hashed_password is None:
            verify_password(password, DUMMY_HASH)
            raise InvalidCredentials()
        if not verify_password(password, account.hashed_password):
            raise InvalidCredentials()
        if account.status is AccountStatus.LOCKED:
            raise AccountLocked()
        if account.status is AccountStatus.DELETED:
            raise AccountDeleted()
        return account

    # ------------------------------------------------------------------
    # Session records
    # ------------------------------------------------------------------

    def replace_active_session(self, session: Session, on_supersede: TerminationSignal) -> list[str]:
        """Make `session` the account's only active session.

        In one transaction: find the active session(s), point their
        superseded_by at the new token, write `on_supersede` under each old
        token's context and insert the new row. Returns the superseded tokens
        (at most one while the invariant holds).
        """
        with self.engine.begin() as conn:
            previous = [
                row.token
                for row in conn.execute(
                    select(_sessions.c.token).where(
                        (_sessions.c.account_id == session.account_id) & (_sessions.c.superseded_by.is_(None))
                    )
                )
            ]
            if previous:
                conn.execute(
                    _sessions.update()
                    .where(_sessions.c.token.in_(previous))
                    .values(superseded_by=session.token)
                )
                for token in previous:
                    _put_signal(conn, token, on_supersede)
            conn.execute(
                _sessions.insert().values(
                    token=session.token,
                    account_id=session.account_id,
                    issued_at=_iso(session.issued_at),
                    expires_at=_iso(session.expires_at),
                    superseded_by=None,
                )
            )
        return previous

    def get_session(self, token: str) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.token == token)).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_active_session(self, account_id: int) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _sessions.select().where(
                    (_sessions.c.account_id == account_id) & (_sessions.c.superseded_by.is_(None))
                )
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def count_active_sessions(self, account_id: int) -> int:
        with self.engine.connect() as conn:
            return (
                conn.execute(
                    select(func.count())
                    .select_from(_sessions)
                    .where((_sessions.c.account_id == account_id) & (_sessions.c.superseded_by.is_(None)))
                ).scalar()
                or 0
            )

    def remove_session(self, token: str, signal: TerminationSignal | None = None) -> bool:
        """Delete an ACTIVE session and, if given, write `signal` under its context.

        Superseded rows are left alone: their CONFLICT signal is already
        pending and must not be overwritten by a later invalidation.
        Returns True if an active session was removed.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _sessions.delete().where((_sessions.c.token == token) & (_sessions.c.superseded_by.is_(None)))
            )
            if result.rowcount == 0:
                return False
            if signal is not None:
                _put_signal(conn, token, signal)
        return True

    def list_expired_active_sessions(self, now: datetime) -> list[Session]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select().where(
                    (_sessions.c.superseded_by.is_(None)) & (_sessions.c.expires_at <= _iso(now))
                )
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def delete_superseded_sessions(self, before: datetime) -> int:
        """Drop superseded rows whose own expiry passed. Returns the number removed."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _sessions.delete().where(
                    (_sessions.c.superseded_by.is_not(None)) & (_sessions.c.expires_at <= _iso(before))
                )
            )
        return result.rowcount

    # ------------------------------------------------------------------
    # Termination signals
    # ------------------------------------------------------------------

    def put_signal(self, context: str, signal: TerminationSignal) -> None:
        with self.engine.begin() as conn:
            _put_signal(conn, context, signal)

    def take_signal(self, context: str) -> TerminationSignal | None:
        """Read and clear the pending signal for `context` in one transaction."""
        with self.engine.begin() as conn:
            row = conn.execute(select(_signals.c.signal).where(_signals.c.context == context)).fetchone()
            if row is None:
                return None
            conn.execute(_signals.delete().where(_signals.c.context == context))
        return TerminationSignal(row.signal)

    def delete_signals_before(self, cutoff: datetime) -> int:
        """Drop unread signals written at or before `cutoff`. Returns the number removed."""
        with self.engine.begin() as conn:
            result = conn.execute(_signals.delete().where(_signals.c.written_at <= _iso(cutoff)))
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


def _put_signal(conn: Connection, context: str, signal: TerminationSignal) -> None:
    # Delete + insert inside the caller's transaction = portable upsert.
    conn.execute(_signals.delete().where(_signals.c.context == context))
    conn.execute(_signals.insert().values(context=context, signal=signal.value, written_at=_now_iso()))


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        username=row.username,
        hashed_password=row.hashed_password,
        role=Role(row.role),
        status=AccountStatus(row.status),
        email=row.email,
        oauth_provider=row.oauth_provider,
        oauth_subject=row.oauth_subject,
        display_name=row.display_name,
        photo_ref=row.photo_ref,
        created_at=row.created_at,
        last_login=row.last_login,
    )


def _row_to_session(row) -> Session:
    return Session(
        account_id=row.account_id,
        token=row.token,
        issued_at=datetime.fromisoformat(row.issued_at),
        expires_at=datetime.fromisoformat(row.expires_at),
        superseded_by=row.superseded_by,
    )
