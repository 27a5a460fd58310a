from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from teamgate.logging import get_logger
from teamgate.storage.errors import ConstraintViolation
from teamgate.storage.models import (
    ActivityEntry,
    Invitation,
    Membership,
    Team,
    TeamRole,
    User,
)


_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT,
        role TEXT NOT NULL DEFAULT 'user',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS team (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        slug TEXT NOT NULL UNIQUE,
        owner_id TEXT NOT NULL REFERENCES app_user(id),
        description TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS team_member (
        id TEXT PRIMARY KEY,
        team_id TEXT NOT NULL REFERENCES team(id) ON DELETE CASCADE,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        role TEXT NOT NULL CHECK (role IN ('member', 'admin', 'owner')),
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        joined_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        invited_by TEXT REFERENCES app_user(id)
    )
    """,
    # At most one active membership per (team, user)
    """
    CREATE UNIQUE INDEX IF NOT EXISTS team_member_active_uniq
        ON team_member (team_id, user_id) WHERE is_active
    """,
    """
    CREATE TABLE IF NOT EXISTS team_invitation (
        id TEXT PRIMARY KEY,
        team_id TEXT NOT NULL REFERENCES team(id) ON DELETE CASCADE,
        email TEXT NOT NULL,
        invited_by TEXT NOT NULL REFERENCES app_user(id),
        token TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        is_used BOOLEAN NOT NULL DEFAULT FALSE,
        accepted_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS activity_log (
        id TEXT PRIMARY KEY,
        action TEXT NOT NULL,
        description TEXT NOT NULL,
        user_id TEXT,
        team_id TEXT,
        metadata JSONB,
        ip_address TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


class PostgresStore:
    """Postgres-backed store for users, teams, memberships and invitations."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    # row mappers
    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=row["id"],
            email=row["email"],
            name=row.get("name"),
            role=row.get("role") or "user",
            is_active=bool(row.get("is_active", True)),
            created_at=row["created_at"],
        )

    @staticmethod
    def _team_from_row(row: Dict[str, Any]) -> Team:
        return Team(
            id=row["id"],
            name=row["name"],
            slug=row["slug"],
            owner_id=row["owner_id"],
            description=row.get("description"),
            is_active=bool(row.get("is_active", True)),
            created_at=row["created_at"],
        )

    @staticmethod
    def _membership_from_row(row: Dict[str, Any]) -> Membership:
        return Membership(
            id=row["id"],
            team_id=row["team_id"],
            user_id=row["user_id"],
            role=TeamRole(row["role"]),
            is_active=bool(row["is_active"]),
            joined_at=row["joined_at"],
            invited_by=row.get("invited_by"),
        )

    @staticmethod
    def _invitation_from_row(row: Dict[str, Any]) -> Invitation:
        return Invitation(
            id=row["id"],
            team_id=row["team_id"],
            email=row["email"],
            invited_by=row["invited_by"],
            token=row["token"],
            expires_at=row["expires_at"],
            is_used=bool(row["is_used"]),
            accepted_at=row.get("accepted_at"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _activity_from_row(row: Dict[str, Any]) -> ActivityEntry:
        metadata = row.get("metadata")
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return ActivityEntry(
            id=row["id"],
            action=row["action"],
            description=row["description"],
            user_id=row.get("user_id"),
            team_id=row.get("team_id"),
            metadata=metadata,
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            created_at=row["created_at"],
        )

    # users
    def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        role: str = "user",
        is_active: bool = True,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, role, is_active)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, email, name, role, is_active),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s WHERE id = %s RETURNING *",
                (is_active, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                        SET password_hash = EXCLUDED.password_hash,
                            password_algo = EXCLUDED.password_algo,
                            updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # teams
    def create_team(
        self,
        name: str,
        slug: str,
        owner_id: str,
        description: Optional[str] = None,
    ) -> Tuple[Team, Membership]:
        """Insert the team and its owner membership in one transaction."""
        team_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                with conn.transaction():
                    team_row = conn.execute(
                        """
                        INSERT INTO team (id, name, slug, owner_id, description)
                        VALUES (%s, %s, %s, %s, %s)
                        RETURNING *
                        """,
                        (team_id, name, slug, owner_id, description),
                    ).fetchone()
                    member_row = self._insert_membership(
                        conn, team_id, owner_id, TeamRole.OWNER, None, None
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation("team slug already taken", {"field": "slug"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("owner does not exist", {"user_id": owner_id})
        return self._team_from_row(team_row), self._membership_from_row(member_row)

    def get_team(self, team_id: str) -> Optional[Team]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM team WHERE id = %s AND is_active", (team_id,)
            ).fetchone()
        return self._team_from_row(row) if row else None

    def get_team_by_slug(self, slug: str) -> Optional[Team]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM team WHERE slug = %s", (slug,)).fetchone()
        return self._team_from_row(row) if row else None

    def update_team(
        self,
        team_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Optional[Team]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE team
                   SET name = COALESCE(%s, name),
                       description = COALESCE(%s, description)
                 WHERE id = %s AND is_active
                RETURNING *
                """,
                (name, description, team_id),
            ).fetchone()
        return self._team_from_row(row) if row else None

    def deactivate_team(self, team_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE team SET is_active = FALSE WHERE id = %s AND is_active RETURNING id",
                (team_id,),
            ).fetchone()
        return row is not None

    def list_teams_for_user(self, user_id: str) -> List[Team]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT t.* FROM team t
                JOIN team_member m ON m.team_id = t.id
                WHERE m.user_id = %s AND m.is_active AND t.is_active
                ORDER BY t.created_at
                """,
                (user_id,),
            ).fetchall()
        return [self._team_from_row(row) for row in rows]

    # memberships
    @staticmethod
    def _insert_membership(
        conn,
        team_id: str,
        user_id: str,
        role: TeamRole,
        invited_by: Optional[str],
        joined_at: Optional[datetime],
    ) -> Optional[Dict[str, Any]]:
        return conn.execute(
            """
            INSERT INTO team_member (id, team_id, user_id, role, is_active, joined_at, invited_by)
            VALUES (%s, %s, %s, %s, TRUE, COALESCE(%s, now()), %s)
            ON CONFLICT (team_id, user_id) WHERE is_active DO NOTHING
            RETURNING *
            """,
            (str(uuid.uuid4()), team_id, user_id, TeamRole(role).value, joined_at, invited_by),
        ).fetchone()

    def _insert_or_fetch_membership(
        self,
        conn,
        team_id: str,
        user_id: str,
        role: TeamRole,
        invited_by: Optional[str],
        joined_at: Optional[datetime],
    ) -> Tuple[Dict[str, Any], bool]:
        """Insert an active membership or read the active row that blocked it.

        A deactivation landing between the two statements leaves nothing to
        read; the insert is then retried once.
        """
        for _ in range(2):
            row = self._insert_membership(conn, team_id, user_id, role, invited_by, joined_at)
            if row:
                return row, True
            row = conn.execute(
                "SELECT * FROM team_member WHERE team_id = %s AND user_id = %s AND is_active",
                (team_id, user_id),
            ).fetchone()
            if row:
                return row, False
        raise ConstraintViolation(
            "membership changed concurrently", {"team_id": team_id, "user_id": user_id}
        )

    def get_active_membership(self, team_id: str, user_id: str) -> Optional[Membership]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM team_member WHERE team_id = %s AND user_id = %s AND is_active",
                (team_id, user_id),
            ).fetchone()
        return self._membership_from_row(row) if row else None

    def add_membership(
        self,
        team_id: str,
        user_id: str,
        role: TeamRole = TeamRole.MEMBER,
        invited_by: Optional[str] = None,
        *,
        joined_at: Optional[datetime] = None,
    ) -> Tuple[Membership, bool]:
        try:
            with self._connect() as conn:
                row, created = self._insert_or_fetch_membership(
                    conn, team_id, user_id, role, invited_by, joined_at
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "team or user does not exist", {"team_id": team_id, "user_id": user_id}
            )
        return self._membership_from_row(row), created

    def deactivate_membership(self, team_id: str, user_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE team_member SET is_active = FALSE
                 WHERE team_id = %s AND user_id = %s AND is_active AND role <> 'owner'
                RETURNING id
                """,
                (team_id, user_id),
            ).fetchone()
        return row is not None

    def list_memberships(self, team_id: str, *, active_only: bool = True) -> List[Membership]:
        query = "SELECT * FROM team_member WHERE team_id = %s"
        if active_only:
            query += " AND is_active"
        query += " ORDER BY joined_at"
        with self._connect() as conn:
            rows = conn.execute(query, (team_id,)).fetchall()
        return [self._membership_from_row(row) for row in rows]

    # invitations
    def find_open_invitation(
        self, team_id: str, email: str, now: datetime
    ) -> Optional[Invitation]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM team_invitation
                WHERE team_id = %s AND email = %s AND NOT is_used AND expires_at > %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (team_id, email, now),
            ).fetchone()
        return self._invitation_from_row(row) if row else None

    def create_invitation(
        self,
        team_id: str,
        email: str,
        invited_by: str,
        token: str,
        expires_at: datetime,
    ) -> Invitation:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO team_invitation (id, team_id, email, invited_by, token, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), team_id, email, invited_by, token, expires_at),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("invitation token collision", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("team does not exist", {"team_id": team_id})
        return self._invitation_from_row(row)

    def get_invitation_by_token(self, token: str) -> Optional[Invitation]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM team_invitation WHERE token = %s", (token,)
            ).fetchone()
        return self._invitation_from_row(row) if row else None

    def accept_invitation(
        self, token: str, email: str, user_id: str, now: datetime
    ) -> Optional[Tuple[Invitation, Membership]]:
        """Conditionally consume the invitation and insert the membership.

        The UPDATE only matches an unused, unexpired row for this email, so
        of several concurrent callers exactly one gets a row back. Both writes
        share one transaction.
        """
        try:
            with self._connect() as conn:
                with conn.transaction():
                    inv_row = conn.execute(
                        """
                        UPDATE team_invitation
                           SET is_used = TRUE, accepted_at = %s
                         WHERE token = %s AND email = %s
                           AND is_used = FALSE AND expires_at > %s
                        RETURNING *
                        """,
                        (now, token, email, now),
                    ).fetchone()
                    if not inv_row:
                        return None
                    member_row, _ = self._insert_or_fetch_membership(
                        conn,
                        inv_row["team_id"],
                        user_id,
                        TeamRole.MEMBER,
                        inv_row["invited_by"],
                        now,
                    )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return self._invitation_from_row(inv_row), self._membership_from_row(member_row)

    # activity
    def record_activity(self, entry: ActivityEntry) -> ActivityEntry:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO activity_log
                    (id, action, description, user_id, team_id, metadata, ip_address, user_agent, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.action,
                    entry.description,
                    entry.user_id,
                    entry.team_id,
                    json.dumps(entry.metadata) if entry.metadata else None,
                    entry.ip_address,
                    entry.user_agent,
                    entry.created_at,
                ),
            )
        return entry

    def list_activity(
        self, *, team_id: Optional[str] = None, limit: int = 100
    ) -> List[ActivityEntry]:
        query = "SELECT * FROM activity_log"
        params: list[Any] = []
        if team_id is not None:
            query += " WHERE team_id = %s"
            params.append(team_id)
        query += " ORDER BY created_at DESC LIMIT %s"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._activity_from_row(row) for row in rows]


__all__ = ["PostgresStore"]
