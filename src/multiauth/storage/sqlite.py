"""SQLite persistence for accounts, identity bindings, codes, merge requests, and roles."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path

import aiosqlite

from multiauth.errors import DuplicateIdentifierError, UserNotFoundError
from multiauth.methods import get_method
from multiauth.models.identity import Account, AuthMethod, IdentityBinding, MfaSettings
from multiauth.models.merge import (
    AccountMergeRequest,
    FieldConflict,
    MergeResolution,
    MergeStatus,
)
from multiauth.models.verification import CodePurpose, VerificationCode
from multiauth.storage.base import AccountMutator, IdentityRepository

_SCHEMA = """
-- Canonical accounts
CREATE TABLE IF NOT EXISTS accounts (
    id TEXT PRIMARY KEY,
    primary_auth_method TEXT NOT NULL,
    first_name TEXT,
    last_name TEXT,
    avatar_url TEXT,
    password_hash TEXT,
    mfa_settings JSON,
    oauth_metadata JSON,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- One row per (account, method). Methods sharing a field (both phone messengers)
-- also share ownership of the identifier; that check runs in _insert_identities.
CREATE TABLE IF NOT EXISTS account_identities (
    account_id TEXT NOT NULL REFERENCES accounts(id),
    method TEXT NOT NULL,
    field TEXT NOT NULL,
    identifier TEXT NOT NULL,
    verified INTEGER NOT NULL DEFAULT 0,
    position INTEGER NOT NULL,
    bound_at TEXT NOT NULL,
    PRIMARY KEY (account_id, method),
    UNIQUE (method, identifier)
);
CREATE INDEX IF NOT EXISTS idx_identities_field
    ON account_identities (field, identifier);

-- Verification codes (never deleted, expire in place)
CREATE TABLE IF NOT EXISTS verification_codes (
    id TEXT PRIMARY KEY,
    code TEXT NOT NULL,
    identifier TEXT NOT NULL,
    auth_method TEXT NOT NULL,
    purpose TEXT NOT NULL,
    contact TEXT,
    metadata JSON,
    is_used INTEGER NOT NULL DEFAULT 0,
    expires_at TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_codes_recent
    ON verification_codes (identifier, auth_method, created_at);

-- Account merge requests
CREATE TABLE IF NOT EXISTS merge_requests (
    id TEXT PRIMARY KEY,
    primary_user_id TEXT NOT NULL REFERENCES accounts(id),
    secondary_user_id TEXT NOT NULL,
    auth_method TEXT NOT NULL,
    identifier TEXT NOT NULL,
    conflicts JSON NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    resolution JSON,
    expires_at TEXT NOT NULL,
    resolved_at TEXT,
    created_at TEXT NOT NULL
);

-- Roles and assignments (local RBAC directory)
CREATE TABLE IF NOT EXISTS roles (
    id TEXT PRIMARY KEY,
    name TEXT UNIQUE NOT NULL,
    is_system INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS role_assignments (
    account_id TEXT NOT NULL REFERENCES accounts(id),
    role_id TEXT NOT NULL REFERENCES roles(id),
    assigned_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (account_id, role_id)
);
"""


def _ts(value: datetime | None) -> str | None:
    # Fixed-width UTC text so lexical comparison in SQL matches time order
    if value is None:
        return None
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class StorageEngine(IdentityRepository):
    """Async SQLite storage for the multi-auth engine.

    All writes go through ``_transaction`` so multi-statement units commit or
    roll back together on the shared connection.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open connection and create schema."""
        self._db = await aiosqlite.connect(str(self.db_path))
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA foreign_keys = ON")
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("StorageEngine not initialized — call initialize() first")
        return self._db

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        async with self._write_lock:
            try:
                yield self.db
            except BaseException:
                await self.db.rollback()
                raise
            else:
                await self.db.commit()

    # ----- Accounts -----

    async def create_account(self, account: Account) -> Account:
        async with self._transaction() as db:
            await db.execute(
                """INSERT INTO accounts
                   (id, primary_auth_method, first_name, last_name, avatar_url, password_hash,
                    mfa_settings, oauth_metadata, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    account.id,
                    account.primary_auth_method.value,
                    account.first_name,
                    account.last_name,
                    account.avatar_url,
                    account.password_hash,
                    self._dump_mfa(account.mfa_settings),
                    json.dumps(account.oauth_metadata),
                    _ts(account.created_at),
                    _ts(account.updated_at),
                ),
            )
            await self._insert_identities(db, account)
        return account

    async def update_account(self, account_id: str, mutate: AccountMutator) -> Account | None:
        async with self._transaction() as db:
            account = await self.get_account(account_id)
            if account is None:
                return None
            if mutate(account) is False:
                return account
            await self._update_account(db, account)
        return account

    async def _update_account(self, db: aiosqlite.Connection, account: Account) -> None:
        await db.execute(
            """UPDATE accounts
               SET primary_auth_method = ?,
                   first_name = ?,
                   last_name = ?,
                   avatar_url = ?,
                   password_hash = ?,
                   mfa_settings = ?,
                   oauth_metadata = ?,
                   updated_at = ?
               WHERE id = ?""",
            (
                account.primary_auth_method.value,
                account.first_name,
                account.last_name,
                account.avatar_url,
                account.password_hash,
                self._dump_mfa(account.mfa_settings),
                json.dumps(account.oauth_metadata),
                _ts(account.updated_at),
                account.id,
            ),
        )
        await db.execute("DELETE FROM account_identities WHERE account_id = ?", (account.id,))
        await self._insert_identities(db, account)

    async def _insert_identities(self, db: aiosqlite.Connection, account: Account) -> None:
        for position, binding in enumerate(account.identities):
            field = get_method(binding.method).field
            # Runs after this transaction's first write, so no other writer interleaves
            cursor = await db.execute(
                """SELECT 1 FROM account_identities
                   WHERE field = ? AND identifier = ? AND account_id != ?""",
                (field, binding.identifier, account.id),
            )
            if await cursor.fetchone():
                raise DuplicateIdentifierError(binding.method.value, binding.identifier)
            try:
                await db.execute(
                    """INSERT INTO account_identities
                       (account_id, method, field, identifier, verified, position, bound_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?)""",
                    (
                        account.id,
                        binding.method.value,
                        field,
                        binding.identifier,
                        int(binding.verified),
                        position,
                        _ts(binding.bound_at),
                    ),
                )
            except aiosqlite.IntegrityError as exc:
                raise DuplicateIdentifierError(binding.method.value, binding.identifier) from exc

    async def get_account(self, account_id: str) -> Account | None:
        cursor = await self.db.execute("SELECT * FROM accounts WHERE id = ?", (account_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        cursor = await self.db.execute(
            "SELECT * FROM account_identities WHERE account_id = ? ORDER BY position",
            (account_id,),
        )
        identity_rows = await cursor.fetchall()
        return self._row_to_account(dict(row), [dict(r) for r in identity_rows])

    async def find_account_by_identity(
        self, methods: list[AuthMethod], identifier: str
    ) -> Account | None:
        if not methods:
            return None
        placeholders = ", ".join("?" for _ in methods)
        cursor = await self.db.execute(
            f"""SELECT account_id FROM account_identities
                WHERE identifier = ? AND method IN ({placeholders})
                ORDER BY bound_at LIMIT 1""",
            [identifier, *(m.value for m in methods)],
        )
        row = await cursor.fetchone()
        return await self.get_account(row["account_id"]) if row else None

    async def count_accounts(self) -> int:
        cursor = await self.db.execute("SELECT COUNT(*) FROM accounts")
        row = await cursor.fetchone()
        return row[0]

    @staticmethod
    def _dump_mfa(settings: MfaSettings | None) -> str | None:
        return settings.model_dump_json() if settings else None

    @staticmethod
    def _row_to_account(row: dict, identity_rows: list[dict]) -> Account:
        return Account(
            id=row["id"],
            primary_auth_method=AuthMethod(row["primary_auth_method"]),
            identities=[
                IdentityBinding(
                    method=AuthMethod(r["method"]),
                    identifier=r["identifier"],
                    verified=bool(r["verified"]),
                    bound_at=_dt(r["bound_at"]),
                )
                for r in identity_rows
            ],
            first_name=row["first_name"],
            last_name=row["last_name"],
            avatar_url=row["avatar_url"],
            password_hash=row["password_hash"],
            mfa_settings=(
                MfaSettings.model_validate_json(row["mfa_settings"])
                if row["mfa_settings"]
                else None
            ),
            oauth_metadata=json.loads(row["oauth_metadata"]) if row["oauth_metadata"] else {},
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    # ----- Verification codes -----

    async def insert_code_if_allowed(
        self, code: VerificationCode, *, window_start: datetime, limit: int
    ) -> bool:
        # Count and insert in one statement; the window check cannot be raced
        async with self._transaction() as db:
            cursor = await db.execute(
                """INSERT INTO verification_codes
                   (id, code, identifier, auth_method, purpose, contact, metadata,
                    is_used, expires_at, created_at)
                   SELECT ?, ?, ?, ?, ?, ?, ?, 0, ?, ?
                   WHERE (
                       SELECT COUNT(*) FROM verification_codes
                       WHERE identifier = ? AND auth_method = ? AND created_at > ?
                   ) < ?""",
                (
                    code.id,
                    code.code,
                    code.identifier,
                    code.auth_method.value,
                    code.purpose.value,
                    code.contact,
                    json.dumps(code.metadata),
                    _ts(code.expires_at),
                    _ts(code.created_at),
                    code.identifier,
                    code.auth_method.value,
                    _ts(window_start),
                    limit,
                ),
            )
            return cursor.rowcount == 1

    async def count_recent_codes(
        self, identifier: str, auth_method: AuthMethod, since: datetime
    ) -> int:
        cursor = await self.db.execute(
            """SELECT COUNT(*) FROM verification_codes
               WHERE identifier = ? AND auth_method = ? AND created_at > ?""",
            (identifier, auth_method.value, _ts(since)),
        )
        row = await cursor.fetchone()
        return row[0]

    async def find_unused_code(
        self, code: str, identifier: str, auth_method: AuthMethod, purpose: CodePurpose
    ) -> VerificationCode | None:
        cursor = await self.db.execute(
            """SELECT * FROM verification_codes
               WHERE code = ? AND identifier = ? AND auth_method = ? AND purpose = ?
                 AND is_used = 0
               ORDER BY created_at DESC LIMIT 1""",
            (code, identifier, auth_method.value, purpose.value),
        )
        row = await cursor.fetchone()
        if not row:
            return None
        row = dict(row)
        return VerificationCode(
            id=row["id"],
            code=row["code"],
            identifier=row["identifier"],
            auth_method=AuthMethod(row["auth_method"]),
            purpose=CodePurpose(row["purpose"]),
            contact=row["contact"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            is_used=bool(row["is_used"]),
            expires_at=_dt(row["expires_at"]),
            created_at=_dt(row["created_at"]),
        )

    async def mark_code_used(self, code_id: str) -> bool:
        async with self._transaction() as db:
            cursor = await db.execute(
                "UPDATE verification_codes SET is_used = 1 WHERE id = ? AND is_used = 0",
                (code_id,),
            )
            return cursor.rowcount == 1

    # ----- Merge requests -----

    async def create_merge_request(self, request: AccountMergeRequest) -> AccountMergeRequest:
        async with self._transaction() as db:
            await db.execute(
                """INSERT INTO merge_requests
                   (id, primary_user_id, secondary_user_id, auth_method, identifier,
                    conflicts, status, resolution, expires_at, resolved_at, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    request.id,
                    request.primary_user_id,
                    request.secondary_user_id,
                    request.auth_method.value,
                    request.identifier,
                    json.dumps({k: v.model_dump() for k, v in request.conflicts.items()}),
                    request.status.value,
                    request.resolution.model_dump_json() if request.resolution else None,
                    _ts(request.expires_at),
                    _ts(request.resolved_at),
                    _ts(request.created_at),
                ),
            )
        return request

    async def get_merge_request(self, request_id: str) -> AccountMergeRequest | None:
        cursor = await self.db.execute("SELECT * FROM merge_requests WHERE id = ?", (request_id,))
        row = await cursor.fetchone()
        return self._row_to_merge_request(dict(row)) if row else None

    async def list_merge_requests(
        self, *, status: MergeStatus | None = None, primary_user_id: str | None = None
    ) -> list[AccountMergeRequest]:
        query = "SELECT * FROM merge_requests WHERE 1=1"
        params: list = []
        if status:
            query += " AND status = ?"
            params.append(status.value)
        if primary_user_id:
            query += " AND primary_user_id = ?"
            params.append(primary_user_id)
        query += " ORDER BY created_at"
        cursor = await self.db.execute(query, params)
        rows = await cursor.fetchall()
        return [self._row_to_merge_request(dict(row)) for row in rows]

    async def transition_merge_request(
        self,
        request_id: str,
        *,
        from_status: MergeStatus,
        to_status: MergeStatus,
        resolution: MergeResolution | None = None,
        resolved_at: datetime | None = None,
    ) -> bool:
        async with self._transaction() as db:
            cursor = await db.execute(
                """UPDATE merge_requests
                   SET status = ?, resolution = ?, resolved_at = ?
                   WHERE id = ? AND status = ?""",
                (
                    to_status.value,
                    resolution.model_dump_json() if resolution else None,
                    _ts(resolved_at),
                    request_id,
                    from_status.value,
                ),
            )
            return cursor.rowcount == 1

    async def complete_merge(
        self,
        request_id: str,
        account_id: str,
        mutate: AccountMutator,
        *,
        resolution: MergeResolution,
        resolved_at: datetime,
    ) -> Account | None:
        async with self._transaction() as db:
            cursor = await db.execute(
                """UPDATE merge_requests
                   SET status = ?, resolution = ?, resolved_at = ?
                   WHERE id = ? AND status = ?""",
                (
                    MergeStatus.RESOLVED.value,
                    resolution.model_dump_json(),
                    _ts(resolved_at),
                    request_id,
                    MergeStatus.PENDING.value,
                ),
            )
            if cursor.rowcount != 1:
                return None
            account = await self.get_account(account_id)
            if account is None:
                raise UserNotFoundError(f"User not found: {account_id}")
            mutate(account)
            await self._update_account(db, account)
        return account

    async def expire_merge_requests(self, now: datetime) -> int:
        async with self._transaction() as db:
            cursor = await db.execute(
                "UPDATE merge_requests SET status = ? WHERE status = ? AND expires_at < ?",
                (MergeStatus.EXPIRED.value, MergeStatus.PENDING.value, _ts(now)),
            )
            return cursor.rowcount

    @staticmethod
    def _row_to_merge_request(row: dict) -> AccountMergeRequest:
        return AccountMergeRequest(
            id=row["id"],
            primary_user_id=row["primary_user_id"],
            secondary_user_id=row["secondary_user_id"],
            auth_method=AuthMethod(row["auth_method"]),
            identifier=row["identifier"],
            conflicts={
                field: FieldConflict.model_validate(pair)
                for field, pair in json.loads(row["conflicts"]).items()
            },
            status=MergeStatus(row["status"]),
            resolution=(
                MergeResolution.model_validate_json(row["resolution"])
                if row["resolution"]
                else None
            ),
            expires_at=_dt(row["expires_at"]),
            resolved_at=_dt(row["resolved_at"]),
            created_at=_dt(row["created_at"]),
        )

    # ----- Roles -----

    async def ensure_role(self, *, role_id: str, name: str, is_system: bool = False) -> None:
        async with self._transaction() as db:
            await db.execute(
                "INSERT OR IGNORE INTO roles (id, name, is_system) VALUES (?, ?, ?)",
                (role_id, name, int(is_system)),
            )

    async def get_role_by_name(self, name: str) -> dict | None:
        cursor = await self.db.execute("SELECT * FROM roles WHERE name = ?", (name,))
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def assign_role(self, account_id: str, role_id: str) -> None:
        async with self._transaction() as db:
            await db.execute(
                "INSERT OR IGNORE INTO role_assignments (account_id, role_id) VALUES (?, ?)",
                (account_id, role_id),
            )

    async def list_account_roles(self, account_id: str) -> list[dict]:
        cursor = await self.db.execute(
            """SELECT roles.* FROM roles
               JOIN role_assignments ON role_assignments.role_id = roles.id
               WHERE role_assignments.account_id = ?
               ORDER BY roles.name""",
            (account_id,),
        )
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]
