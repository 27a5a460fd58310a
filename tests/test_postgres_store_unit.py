from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from teamgate.storage.errors import ConstraintViolation
from teamgate.storage.models import ActivityEntry, TeamRole
from teamgate.storage.postgres import PostgresStore

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows):
        self.rows = rows

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    """Records SQL and replays scripted results (row lists or exceptions)."""

    def __init__(self, results):
        self.results = list(results)
        self.statements = []
        self.transactions = 0

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        result = self.results.pop(0) if self.results else []
        if isinstance(result, Exception):
            raise result
        return FakeCursor(result)

    @contextmanager
    def transaction(self):
        self.transactions += 1
        yield


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


def _store(*results):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.conn = FakeConnection(results)
    store.pool = FakePool(store.conn)
    store.logger = None
    return store


def _invitation_row(**overrides):
    row = {
        "id": "inv-1",
        "team_id": "team-1",
        "email": "bob@example.com",
        "invited_by": "alice",
        "token": "t" * 40,
        "expires_at": NOW + timedelta(days=7),
        "is_used": True,
        "accepted_at": NOW,
        "created_at": NOW,
    }
    row.update(overrides)
    return row


def _membership_row(**overrides):
    row = {
        "id": "m-1",
        "team_id": "team-1",
        "user_id": "bob",
        "role": "member",
        "is_active": True,
        "joined_at": NOW,
        "invited_by": "alice",
    }
    row.update(overrides)
    return row


class TestAcceptInvitation:
    def test_no_matching_row_returns_none(self):
        store = _store([])

        assert store.accept_invitation("t" * 40, "bob@example.com", "bob", NOW) is None

        sql, params = store.conn.statements[0]
        assert sql.startswith("UPDATE team_invitation")
        assert "is_used = FALSE AND expires_at > %s" in sql
        assert params == (NOW, "t" * 40, "bob@example.com", NOW)
        assert len(store.conn.statements) == 1

    def test_success_inserts_membership_in_same_transaction(self):
        store = _store([_invitation_row()], [_membership_row()])

        invitation, membership = store.accept_invitation("t" * 40, "bob@example.com", "bob", NOW)

        assert store.conn.transactions == 1
        assert invitation.is_used
        assert membership.role == TeamRole.MEMBER
        assert membership.invited_by == "alice"
        insert_sql, insert_params = store.conn.statements[1]
        assert insert_sql.startswith("INSERT INTO team_member")
        assert "ON CONFLICT (team_id, user_id) WHERE is_active DO NOTHING" in insert_sql
        assert insert_params[1:] == ("team-1", "bob", "member", NOW, "alice")

    def test_existing_membership_is_returned(self):
        existing = _membership_row(id="m-0", joined_at=NOW - timedelta(days=1))
        store = _store([_invitation_row()], [], [existing])

        _, membership = store.accept_invitation("t" * 40, "bob@example.com", "bob", NOW)

        assert membership.id == "m-0"

    def test_membership_vanishing_twice_raises_inside_transaction(self):
        store = _store([_invitation_row()], [], [], [], [])

        with pytest.raises(ConstraintViolation):
            store.accept_invitation("t" * 40, "bob@example.com", "bob", NOW)

        assert store.conn.transactions == 1

    def test_missing_user_is_constraint_violation(self):
        store = _store([_invitation_row()], errors.ForeignKeyViolation("fk"))

        with pytest.raises(ConstraintViolation):
            store.accept_invitation("t" * 40, "bob@example.com", "bob", NOW)


class TestMemberships:
    def test_deactivate_never_touches_owner(self):
        store = _store([])

        assert store.deactivate_membership("team-1", "alice") is False

        sql, params = store.conn.statements[0]
        assert "role <> 'owner'" in sql
        assert params == ("team-1", "alice")

    def test_deactivate_returns_true_on_update(self):
        store = _store([{"id": "m-1"}])

        assert store.deactivate_membership("team-1", "bob") is True

    def test_add_membership_conflict_returns_existing(self):
        store = _store([], [_membership_row()])

        membership, created = store.add_membership("team-1", "bob")

        assert created is False
        assert membership.id == "m-1"

    def test_add_membership_retries_after_concurrent_deactivation(self):
        store = _store([], [], [_membership_row(id="m-2")])

        membership, created = store.add_membership("team-1", "bob")

        assert created is True
        assert membership.id == "m-2"
        kinds = [sql.split()[0] for sql, _ in store.conn.statements]
        assert kinds == ["INSERT", "SELECT", "INSERT"]

    def test_add_membership_gives_up_after_retry(self):
        store = _store([], [], [], [])

        with pytest.raises(ConstraintViolation) as excinfo:
            store.add_membership("team-1", "bob")

        assert excinfo.value.detail == {"team_id": "team-1", "user_id": "bob"}
        assert len(store.conn.statements) == 4

    def test_list_memberships_filters_active(self):
        store = _store([_membership_row()], [])

        store.list_memberships("team-1")
        store.list_memberships("team-1", active_only=False)

        active_sql, _ = store.conn.statements[0]
        all_sql, _ = store.conn.statements[1]
        assert "AND is_active" in active_sql
        assert "is_active" not in all_sql


class TestConstraintMapping:
    def test_duplicate_email(self):
        store = _store(errors.UniqueViolation("duplicate key"))

        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_user("alice@example.com")
        assert excinfo.value.detail == {"field": "email"}

    def test_invitation_token_collision(self):
        store = _store(errors.UniqueViolation("duplicate key"))

        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_invitation("team-1", "bob@example.com", "alice", "t" * 40, NOW)
        assert excinfo.value.detail == {"field": "token"}

    def test_invitation_for_missing_team(self):
        store = _store(errors.ForeignKeyViolation("fk"))

        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_invitation("missing", "bob@example.com", "alice", "t" * 40, NOW)
        assert excinfo.value.detail == {"team_id": "missing"}


def test_activity_metadata_is_serialized():
    store = _store([])
    entry = ActivityEntry(
        id="a-1",
        action="team_updated",
        description="Team updated",
        metadata={"name": "Core"},
        created_at=NOW,
    )

    store.record_activity(entry)

    _, params = store.conn.statements[0]
    assert params[5] == '{"name": "Core"}'


class TestTeams:
    def test_deactivate_team_only_matches_active(self):
        store = _store([{"id": "team-1"}], [])

        assert store.deactivate_team("team-1") is True
        assert store.deactivate_team("team-1") is False

        sql, params = store.conn.statements[0]
        assert sql == "UPDATE team SET is_active = FALSE WHERE id = %s AND is_active RETURNING id"
        assert params == ("team-1",)

    def test_get_team_skips_inactive(self):
        store = _store([])

        assert store.get_team("team-1") is None
        assert "AND is_active" in store.conn.statements[0][0]


class TestActivityListing:
    def _row(self, **overrides):
        row = {
            "id": "a-1",
            "action": "team_created",
            "description": "Team created",
            "user_id": "alice",
            "team_id": "team-1",
            "metadata": '{"name": "Core"}',
            "ip_address": None,
            "user_agent": None,
            "created_at": NOW,
        }
        row.update(overrides)
        return row

    def test_filtered_by_team(self):
        store = _store([self._row()])

        entries = store.list_activity(team_id="team-1", limit=10)

        sql, params = store.conn.statements[0]
        assert sql == (
            "SELECT * FROM activity_log WHERE team_id = %s ORDER BY created_at DESC LIMIT %s"
        )
        assert params == ["team-1", 10]
        assert entries[0].metadata == {"name": "Core"}

    def test_unfiltered_uses_default_limit(self):
        store = _store([])

        assert store.list_activity() == []

        sql, params = store.conn.statements[0]
        assert "WHERE" not in sql
        assert params == [100]
