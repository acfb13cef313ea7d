"""Database repository for accounts, tenants, invitations and the audit trail."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Tuple

from psycopg import errors as pg_errors
from psycopg.rows import tuple_row
from psycopg.types.json import Json
from psycopg_pool import ConnectionPool

from .domain.account import Account, IdentityProvider, Role, SubscriptionStatus, Tenant
from .domain.contracts import AuditEntry, CreateAccountInput
from .domain.errors import ConflictError, NotFoundError, QuotaExceededError
from .domain.invitation import Invitation, InvitationDetails, InvitationStatus

# Provider -> column; a closed mapping, so interpolating it into SQL is safe.
_PROVIDER_COLUMNS: dict[IdentityProvider, str] = {
    IdentityProvider.google: "google_id",
    IdentityProvider.microsoft: "microsoft_id",
}

_ACCOUNT_COLUMNS = """
    account_id, email, role, tenant_id, created_at, first_name, last_name,
    avatar_url, password_hash, google_id, microsoft_id, active, email_verified,
    last_login_at, token_generation
"""

_PROFILE_COLUMNS = ("first_name", "last_name", "avatar_url")

_TENANT_COLUMNS = """
    tenant_id, name, slug, seats_purchased, seats_used, subscription_status, created_at
"""

_INVITATION_COLUMNS = """
    invitation_id, email, tenant_id, invited_by, role, token, status,
    expires_at, created_at, accepted_at
"""


@dataclass(slots=True)
class AuditLogRecord:
    """Row projection for items in audit_log."""

    audit_id: int
    actor_id: str | None
    tenant_id: str | None
    action: str
    entity_type: str | None
    entity_id: str | None
    old_values: dict[str, Any] | None
    new_values: dict[str, Any] | None
    metadata: dict[str, Any]
    ip_address: str | None
    user_agent: str | None
    created_at: datetime


class AccessRepository:
    """Postgres-backed persistence for the access subsystem.

    Check-then-act sequences that guard quotas and uniqueness run inside a
    single transaction: invitation inserts hold the tenant row lock, and seat
    consumption is a conditional ``UPDATE`` that only succeeds while a seat
    is free.
    """

    def __init__(self, pool: ConnectionPool) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool

    # -- accounts ---------------------------------------------------------

    def get_account(self, account_id: str) -> Account | None:
        return self._fetch_account("account_id = %s", (account_id,))

    def get_account_by_email(self, email: str) -> Account | None:
        return self._fetch_account("lower(email) = lower(%s)", (email,))

    def get_account_by_external_id(
        self, provider: IdentityProvider, external_id: str
    ) -> Account | None:
        column = _PROVIDER_COLUMNS[provider]
        return self._fetch_account(f"{column} = %s", (external_id,))

    def active_account_in_tenant(self, email: str, tenant_id: str) -> bool:
        """Return ``True`` when an active account with ``email`` belongs to the tenant."""
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    SELECT 1 FROM accounts
                    WHERE lower(email) = lower(%s) AND tenant_id = %s AND active
                    """,
                    (email, tenant_id),
                )
                return cur.fetchone() is not None

    def create_account(
        self,
        payload: CreateAccountInput,
        *,
        invitation_id: str | None = None,
        now: datetime | None = None,
    ) -> Account:
        """Insert an account, consuming a tenant seat and an invitation atomically.

        Raises ``QuotaExceededError`` when the tenant has no free seat,
        ``NotFoundError`` when the invitation is no longer pending, and
        ``ConflictError`` when the email or an external id is already taken.
        """
        now = now or datetime.now(timezone.utc)
        account_id = str(uuid.uuid4())
        external = {
            column: payload.external_ids.get(provider)
            for provider, column in _PROVIDER_COLUMNS.items()
        }
        try:
            with self._pool.connection() as conn:
                with conn.transaction():
                    with conn.cursor(row_factory=tuple_row) as cur:
                        if payload.tenant_id:
                            cur.execute(
                                """
                                UPDATE tenants
                                SET seats_used = seats_used + 1, updated_at = %s
                                WHERE tenant_id = %s AND seats_used < seats_purchased
                                RETURNING tenant_id
                                """,
                                (now, payload.tenant_id),
                            )
                            if cur.fetchone() is None:
                                raise QuotaExceededError("no seats available")

                        cur.execute(
                            f"""
                            INSERT INTO accounts (
                                account_id, email, role, tenant_id, first_name, last_name,
                                avatar_url, password_hash, google_id, microsoft_id,
                                email_verified, last_login_at, created_at, updated_at
                            )
                            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                            RETURNING {_ACCOUNT_COLUMNS}
                            """,
                            (
                                account_id,
                                payload.email,
                                payload.role.value,
                                payload.tenant_id,
                                payload.first_name,
                                payload.last_name,
                                payload.avatar_url,
                                payload.password_hash,
                                external["google_id"],
                                external["microsoft_id"],
                                payload.email_verified,
                                payload.last_login_at,
                                now,
                                now,
                            ),
                        )
                        record = cur.fetchone()

                        if invitation_id:
                            cur.execute(
                                """
                                UPDATE invitations
                                SET status = 'accepted', accepted_at = %s
                                WHERE invitation_id = %s AND status = 'pending' AND expires_at > %s
                                RETURNING invitation_id
                                """,
                                (now, invitation_id, now),
                            )
                            if cur.fetchone() is None:
                                raise NotFoundError("invitation not found")
        except pg_errors.UniqueViolation as exc:
            raise ConflictError("account already exists") from exc
        return self._map_account(record)

    def link_external_identity(
        self, account_id: str, provider: IdentityProvider, external_id: str
    ) -> Account:
        """Attach ``external_id`` to the account and stamp its last login."""
        column = _PROVIDER_COLUMNS[provider]
        try:
            row = self._fetch_one(
                f"""
                UPDATE accounts
                SET {column} = %s, last_login_at = NOW(), updated_at = NOW()
                WHERE account_id = %s
                RETURNING {_ACCOUNT_COLUMNS}
                """,
                (external_id, account_id),
                commit=True,
            )
        except pg_errors.UniqueViolation as exc:
            raise ConflictError("external identity already linked") from exc
        if row is None:
            raise NotFoundError("account not found")
        return self._map_account(row)

    def touch_last_login(self, account_id: str) -> None:
        self._execute(
            "UPDATE accounts SET last_login_at = NOW() WHERE account_id = %s",
            (account_id,),
        )

    def set_account_active(self, account_id: str, active: bool) -> Account | None:
        """Toggle activation; deactivating also bumps the token generation."""
        row = self._fetch_one(
            f"""
            UPDATE accounts
            SET active = %s,
                token_generation = token_generation + CASE WHEN %s THEN 0 ELSE 1 END,
                updated_at = NOW()
            WHERE account_id = %s
            RETURNING {_ACCOUNT_COLUMNS}
            """,
            (active, active, account_id),
            commit=True,
        )
        return self._map_account(row) if row else None

    def set_account_role(self, account_id: str, role: Role) -> Account | None:
        row = self._fetch_one(
            f"""
            UPDATE accounts SET role = %s, updated_at = NOW()
            WHERE account_id = %s
            RETURNING {_ACCOUNT_COLUMNS}
            """,
            (role.value, account_id),
            commit=True,
        )
        return self._map_account(row) if row else None

    def update_account_profile(self, account_id: str, changes: dict[str, Any]) -> Account | None:
        """Apply name/avatar changes; keys outside the profile columns are rejected."""
        unknown = set(changes) - set(_PROFILE_COLUMNS)
        if unknown:
            raise ValueError(f"not profile columns: {sorted(unknown)}")
        columns = [column for column in _PROFILE_COLUMNS if column in changes]
        assignments = ", ".join(f"{column} = %s" for column in columns)
        row = self._fetch_one(
            f"""
            UPDATE accounts SET {assignments}, updated_at = NOW()
            WHERE account_id = %s
            RETURNING {_ACCOUNT_COLUMNS}
            """,
            (*(changes[column] for column in columns), account_id),
            commit=True,
        )
        return self._map_account(row) if row else None

    def bump_token_generation(self, account_id: str) -> int | None:
        row = self._fetch_one(
            """
            UPDATE accounts SET token_generation = token_generation + 1, updated_at = NOW()
            WHERE account_id = %s
            RETURNING token_generation
            """,
            (account_id,),
            commit=True,
        )
        return row[0] if row else None

    def list_accounts(
        self,
        *,
        tenant_id: str | None,
        search: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Account]:
        clauses: list[str] = []
        params: list[Any] = []
        if tenant_id:
            clauses.append("tenant_id = %s")
            params.append(tenant_id)
        if search:
            clauses.append("(email ILIKE %s OR first_name ILIKE %s OR last_name ILIKE %s)")
            params.extend([f"%{search}%"] * 3)
        where_sql = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([max(1, min(limit, 100)), max(0, offset)])
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    SELECT {_ACCOUNT_COLUMNS} FROM accounts
                    {where_sql}
                    ORDER BY created_at DESC
                    LIMIT %s OFFSET %s
                    """,
                    params,
                )
                return [self._map_account(row) for row in cur.fetchall()]

    # -- tenants ----------------------------------------------------------

    def create_tenant(
        self,
        *,
        name: str,
        slug: str,
        seats_purchased: int,
        subscription_status: SubscriptionStatus,
        created_by: str | None,
    ) -> Tenant:
        try:
            row = self._fetch_one(
                f"""
                INSERT INTO tenants (tenant_id, name, slug, seats_purchased, subscription_status, created_by)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING {_TENANT_COLUMNS}
                """,
                (str(uuid.uuid4()), name, slug, seats_purchased, subscription_status.value, created_by),
                commit=True,
            )
        except pg_errors.UniqueViolation as exc:
            raise ConflictError("tenant slug already taken") from exc
        return self._map_tenant(row)

    def get_tenant(self, tenant_id: str) -> Tenant | None:
        row = self._fetch_one(
            f"SELECT {_TENANT_COLUMNS} FROM tenants WHERE tenant_id = %s", (tenant_id,)
        )
        return self._map_tenant(row) if row else None

    def get_tenant_by_slug(self, slug: str) -> Tenant | None:
        row = self._fetch_one(f"SELECT {_TENANT_COLUMNS} FROM tenants WHERE slug = %s", (slug,))
        return self._map_tenant(row) if row else None

    def list_tenants(self, *, limit: int = 20, offset: int = 0) -> list[Tenant]:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    SELECT {_TENANT_COLUMNS} FROM tenants
                    ORDER BY created_at DESC
                    LIMIT %s OFFSET %s
                    """,
                    (max(1, min(limit, 100)), max(0, offset)),
                )
                return [self._map_tenant(row) for row in cur.fetchall()]

    def rename_tenant(self, tenant_id: str, name: str) -> Tenant | None:
        row = self._fetch_one(
            f"""
            UPDATE tenants SET name = %s, updated_at = NOW()
            WHERE tenant_id = %s
            RETURNING {_TENANT_COLUMNS}
            """,
            (name, tenant_id),
            commit=True,
        )
        return self._map_tenant(row) if row else None

    def update_seats(
        self,
        tenant_id: str,
        seats_purchased: int,
        subscription_status: SubscriptionStatus | None,
    ) -> Tenant | None:
        """Set the purchased seats unless that would drop below consumption.

        Returns ``None`` when the tenant is missing or the guard rejects the update.
        """
        row = self._fetch_one(
            f"""
            UPDATE tenants
            SET seats_purchased = %s,
                subscription_status = COALESCE(%s, subscription_status),
                updated_at = NOW()
            WHERE tenant_id = %s AND seats_used <= %s
            RETURNING {_TENANT_COLUMNS}
            """,
            (
                seats_purchased,
                subscription_status.value if subscription_status else None,
                tenant_id,
                seats_purchased,
            ),
            commit=True,
        )
        return self._map_tenant(row) if row else None

    def delete_tenant(self, tenant_id: str) -> bool:
        """Delete the tenant; accounts and invitations go with it."""
        row = self._fetch_one(
            "DELETE FROM tenants WHERE tenant_id = %s RETURNING tenant_id",
            (tenant_id,),
            commit=True,
        )
        return row is not None

    # -- invitations ------------------------------------------------------

    def insert_invitation(
        self,
        *,
        email: str,
        tenant_id: str,
        invited_by: str,
        role: Role,
        token: str,
        expires_at: datetime,
        now: datetime,
    ) -> Invitation | None:
        """Conditionally insert an invitation while holding the tenant row lock.

        Returns ``None`` if, at write time, the tenant has no free seat, an
        active account already uses the email in the tenant, or an open
        invitation exists for the pair.
        """
        with self._pool.connection() as conn:
            with conn.transaction():
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute(
                        """
                        SELECT seats_used, seats_purchased FROM tenants
                        WHERE tenant_id = %s
                        FOR UPDATE
                        """,
                        (tenant_id,),
                    )
                    seats = cur.fetchone()
                    if seats is None or seats[0] >= seats[1]:
                        return None
                    cur.execute(
                        f"""
                        INSERT INTO invitations (
                            invitation_id, email, tenant_id, invited_by, role, token,
                            status, expires_at, created_at
                        )
                        SELECT %s, %s, %s, %s, %s, %s, 'pending', %s, %s
                        WHERE NOT EXISTS (
                            SELECT 1 FROM invitations
                            WHERE tenant_id = %s AND email = %s
                              AND status = 'pending' AND expires_at > %s
                        )
                        AND NOT EXISTS (
                            SELECT 1 FROM accounts
                            WHERE lower(email) = lower(%s) AND tenant_id = %s AND active
                        )
                        RETURNING {_INVITATION_COLUMNS}
                        """,
                        (
                            str(uuid.uuid4()),
                            email,
                            tenant_id,
                            invited_by,
                            role.value,
                            token,
                            expires_at,
                            now,
                            tenant_id,
                            email,
                            now,
                            email,
                            tenant_id,
                        ),
                    )
                    row = cur.fetchone()
        return self._map_invitation(row) if row else None

    def find_open_invitation(self, email: str, tenant_id: str, now: datetime) -> Invitation | None:
        row = self._fetch_one(
            f"""
            SELECT {_INVITATION_COLUMNS} FROM invitations
            WHERE email = %s AND tenant_id = %s AND status = 'pending' AND expires_at > %s
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (email, tenant_id, now),
        )
        return self._map_invitation(row) if row else None

    def latest_open_invitation_for_email(self, email: str, now: datetime) -> Invitation | None:
        """Return the most recently created open invitation across all tenants."""
        row = self._fetch_one(
            f"""
            SELECT {_INVITATION_COLUMNS} FROM invitations
            WHERE email = %s AND status = 'pending' AND expires_at > %s
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (email, now),
        )
        return self._map_invitation(row) if row else None

    def get_invitation(self, invitation_id: str) -> Invitation | None:
        row = self._fetch_one(
            f"SELECT {_INVITATION_COLUMNS} FROM invitations WHERE invitation_id = %s",
            (invitation_id,),
        )
        return self._map_invitation(row) if row else None

    def get_invitation_details(self, token: str) -> InvitationDetails | None:
        """Return the invitation for ``token`` with tenant and inviter names."""
        columns = ", ".join(f"i.{col.strip()}" for col in _INVITATION_COLUMNS.split(","))
        row = self._fetch_one(
            f"""
            SELECT {columns}, t.name, a.first_name, a.last_name, a.email
            FROM invitations i
            JOIN tenants t ON t.tenant_id = i.tenant_id
            JOIN accounts a ON a.account_id = i.invited_by
            WHERE i.token = %s
            """,
            (token,),
        )
        if row is None:
            return None
        invitation = self._map_invitation(row[:10])
        inviter_name = f"{row[11] or ''} {row[12] or ''}".strip() or row[13]
        return InvitationDetails(invitation=invitation, tenant_name=row[10], inviter_name=inviter_name)

    def list_invitations(self, tenant_id: str) -> list[Invitation]:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    SELECT {_INVITATION_COLUMNS} FROM invitations
                    WHERE tenant_id = %s
                    ORDER BY created_at DESC
                    """,
                    (tenant_id,),
                )
                return [self._map_invitation(row) for row in cur.fetchall()]

    def revoke_invitation(self, invitation_id: str) -> Invitation | None:
        """Move a pending invitation to ``revoked``; ``None`` if it was not pending."""
        row = self._fetch_one(
            f"""
            UPDATE invitations SET status = 'revoked'
            WHERE invitation_id = %s AND status = 'pending'
            RETURNING {_INVITATION_COLUMNS}
            """,
            (invitation_id,),
            commit=True,
        )
        return self._map_invitation(row) if row else None

    def accept_invitation(self, invitation_id: str, now: datetime) -> Invitation | None:
        """Move an open invitation to ``accepted``; ``None`` if it was not open."""
        row = self._fetch_one(
            f"""
            UPDATE invitations SET status = 'accepted', accepted_at = %s
            WHERE invitation_id = %s AND status = 'pending' AND expires_at > %s
            RETURNING {_INVITATION_COLUMNS}
            """,
            (now, invitation_id, now),
            commit=True,
        )
        return self._map_invitation(row) if row else None

    # -- audit ------------------------------------------------------------

    def write_audit_event(self, entry: AuditEntry) -> None:
        """Append an audit trail entry."""
        self._execute(
            """
            INSERT INTO audit_log (
                actor_id, tenant_id, action, entity_type, entity_id,
                old_values, new_values, metadata, ip_address, user_agent
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                entry.actor_id,
                entry.tenant_id,
                entry.action.value,
                entry.entity_type,
                entry.entity_id,
                Json(entry.old_values) if entry.old_values is not None else None,
                Json(entry.new_values) if entry.new_values is not None else None,
                Json(entry.metadata or {}),
                entry.origin.ip_address,
                entry.origin.user_agent,
            ),
        )

    def list_audit_events(
        self,
        *,
        tenant_id: str | None,
        actor_id: str | None = None,
        action: str | None = None,
        entity_type: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: Tuple[datetime, int] | None = None,
    ) -> tuple[list[AuditLogRecord], Optional[Tuple[datetime, int]]]:
        """Return audit entries, newest first, with optional filters and keyset pagination."""
        limit = max(1, min(limit, 100))
        clauses: list[str] = []
        params: list[Any] = []

        if tenant_id:
            clauses.append("tenant_id = %s")
            params.append(tenant_id)
        if actor_id:
            clauses.append("actor_id = %s")
            params.append(actor_id)
        if action:
            clauses.append("action = %s")
            params.append(action)
        if entity_type:
            clauses.append("entity_type = %s")
            params.append(entity_type)
        if created_after:
            clauses.append("created_at >= %s")
            params.append(created_after)
        if created_before:
            clauses.append("created_at <= %s")
            params.append(created_before)
        if cursor:
            clauses.append("(created_at, audit_id) < (%s, %s)")
            params.extend(cursor)

        where_sql = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        query = f"""
            SELECT audit_id, actor_id, tenant_id, action, entity_type, entity_id,
                   old_values, new_values, metadata, ip_address, user_agent, created_at
            FROM audit_log
            {where_sql}
            ORDER BY created_at DESC, audit_id DESC
            LIMIT %s
        """
        params.append(limit)

        records: list[AuditLogRecord] = []
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, params)
                for row in cur.fetchall():
                    records.append(
                        AuditLogRecord(
                            audit_id=row[0],
                            actor_id=str(row[1]) if row[1] else None,
                            tenant_id=str(row[2]) if row[2] else None,
                            action=row[3],
                            entity_type=row[4],
                            entity_id=row[5],
                            old_values=row[6],
                            new_values=row[7],
                            metadata=row[8] or {},
                            ip_address=row[9],
                            user_agent=row[10],
                            created_at=row[11],
                        )
                    )

        next_cursor: Tuple[datetime, int] | None = None
        if len(records) == limit:
            last = records[-1]
            next_cursor = (last.created_at, last.audit_id)
        return records, next_cursor

    # -- helpers ----------------------------------------------------------

    def _fetch_account(self, where_sql: str, params: tuple) -> Account | None:
        row = self._fetch_one(f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE {where_sql}", params)
        return self._map_account(row) if row else None

    def _fetch_one(self, query: str, params: tuple, *, commit: bool = False) -> tuple | None:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, params)
                row = cur.fetchone()
            if commit:
                conn.commit()
        return row

    def _execute(self, query: str, params: tuple) -> None:
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
            conn.commit()

    def _map_account(self, row: tuple) -> Account:
        """Convert a raw database tuple into the domain ``Account`` dataclass."""
        external_ids: dict[IdentityProvider, str] = {}
        if row[9]:
            external_ids[IdentityProvider.google] = row[9]
        if row[10]:
            external_ids[IdentityProvider.microsoft] = row[10]
        return Account(
            account_id=str(row[0]),
            email=row[1],
            role=Role(row[2]),
            tenant_id=str(row[3]) if row[3] else None,
            created_at=row[4],
            first_name=row[5] or "",
            last_name=row[6] or "",
            avatar_url=row[7],
            password_hash=row[8],
            external_ids=external_ids,
            active=row[11],
            email_verified=row[12],
            last_login_at=row[13],
            token_generation=row[14],
        )

    def _map_tenant(self, row: tuple) -> Tenant:
        return Tenant(
            tenant_id=str(row[0]),
            name=row[1],
            slug=row[2],
            seats_purchased=row[3],
            seats_used=row[4],
            subscription_status=SubscriptionStatus(row[5]),
            created_at=row[6],
        )

    def _map_invitation(self, row: tuple) -> Invitation:
        return Invitation(
            invitation_id=str(row[0]),
            email=row[1],
            tenant_id=str(row[2]),
            invited_by=str(row[3]),
            role=Role(row[4]),
            token=row[5],
            status=InvitationStatus(row[6]),
            expires_at=row[7],
            created_at=row[8],
            accepted_at=row[9],
        )
