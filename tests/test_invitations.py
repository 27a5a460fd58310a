"""Tests for invitation creation, acceptance and the single-winner guarantee."""

import threading
from datetime import timedelta

import pytest

from teamgate.service.errors import (
    InvitationAlreadyUsed,
    InvitationExpired,
    InvitationNotFound,
)
from teamgate.service.invitations import (
    INVITATION_TOKEN_LENGTH,
    InvitationService,
    generate_invitation_token,
)
from teamgate.storage.errors import ConstraintViolation
from teamgate.storage.models import TeamRole


class TestInvite:
    def test_token_is_forty_alphanumeric_chars(self, invitations, team, alice):
        invitation = invitations.invite(team.id, "bob@example.com", alice.id)

        assert len(invitation.token) == INVITATION_TOKEN_LENGTH == 40
        assert invitation.token.isalnum()

    def test_expiry_defaults_to_seven_days(self, invitations, team, alice, clock):
        invitation = invitations.invite(team.id, "bob@example.com", alice.id)

        assert invitation.expires_at == clock() + timedelta(days=7)
        assert not invitation.is_used

    def test_open_invitation_is_reused(self, invitations, team, alice):
        first = invitations.invite(team.id, "bob@example.com", alice.id)
        second = invitations.invite(team.id, "  Bob@Example.COM ", alice.id)

        assert second.token == first.token
        assert second.id == first.id

    def test_expired_invitation_is_replaced(self, invitations, team, alice, clock):
        first = invitations.invite(team.id, "bob@example.com", alice.id)
        clock.advance(days=7)

        second = invitations.invite(team.id, "bob@example.com", alice.id)

        assert second.token != first.token

    def test_used_invitation_is_replaced(self, invitations, team, alice, bob):
        first = invitations.invite(team.id, bob.email, alice.id)
        assert invitations.accept(first.token, bob)

        second = invitations.invite(team.id, bob.email, alice.id)

        assert second.token != first.token

    def test_configurable_ttl(self, store, team, alice, clock):
        service = InvitationService(store, ttl=timedelta(days=1), clock=clock)

        invitation = service.invite(team.id, "bob@example.com", alice.id)

        assert invitation.expires_at == clock() + timedelta(days=1)

    def test_token_collision_is_retried(self, store, team, alice, clock):
        taken = generate_invitation_token()
        store.create_invitation(team.id, "carol@example.com", alice.id, taken, clock() + timedelta(days=1))
        fresh = generate_invitation_token()
        tokens = iter([taken, fresh])
        service = InvitationService(store, clock=clock, token_factory=lambda: next(tokens))

        invitation = service.invite(team.id, "bob@example.com", alice.id)

        assert invitation.token == fresh

    def test_unknown_team_is_a_constraint_violation(self, invitations, alice):
        with pytest.raises(ConstraintViolation):
            invitations.invite("missing-team", "bob@example.com", alice.id)


class TestAccept:
    def test_accept_adds_membership(self, invitations, memberships, store, team, alice, bob, clock):
        invitation = invitations.invite(team.id, bob.email, alice.id)
        clock.advance(hours=1)

        assert invitations.accept(invitation.token, bob) is True

        membership = memberships.get_membership(team.id, bob.id)
        assert membership.role == TeamRole.MEMBER
        assert membership.invited_by == alice.id
        stored = store.get_invitation_by_token(invitation.token)
        assert stored.is_used
        assert stored.accepted_at == clock()

    def test_other_email_is_rejected(self, invitations, memberships, store, team, alice, bob):
        invitation = invitations.invite(team.id, "carol@example.com", alice.id)

        assert invitations.accept(invitation.token, bob) is False
        with pytest.raises(InvitationNotFound):
            invitations.redeem(invitation.token, bob)
        assert not memberships.is_member(team.id, bob.id)
        assert not store.get_invitation_by_token(invitation.token).is_used

    def test_email_match_ignores_case(self, invitations, memberships, store, team, alice):
        carol = store.create_user("carol@example.com")
        invitation = invitations.invite(team.id, "CAROL@example.com", alice.id)

        assert invitations.accept(invitation.token, carol)
        assert memberships.is_member(team.id, carol.id)

    def test_expired_invitation_is_rejected(self, invitations, memberships, team, alice, bob, clock):
        invitation = invitations.invite(team.id, bob.email, alice.id)
        clock.advance(days=7)

        assert invitations.accept(invitation.token, bob) is False
        with pytest.raises(InvitationExpired):
            invitations.redeem(invitation.token, bob)
        assert not memberships.is_member(team.id, bob.id)

    def test_second_accept_is_rejected(self, invitations, team, alice, bob):
        invitation = invitations.invite(team.id, bob.email, alice.id)
        assert invitations.accept(invitation.token, bob)

        assert invitations.accept(invitation.token, bob) is False
        with pytest.raises(InvitationAlreadyUsed):
            invitations.redeem(invitation.token, bob)

    def test_unknown_token(self, invitations, bob):
        with pytest.raises(InvitationNotFound):
            invitations.redeem("x" * 40, bob)

    def test_concurrent_accepts_have_one_winner(self, invitations, store, team, alice, bob):
        invitation = invitations.invite(team.id, bob.email, alice.id)
        workers = 8
        barrier = threading.Barrier(workers)
        results = []
        results_lock = threading.Lock()

        def attempt():
            barrier.wait()
            outcome = invitations.accept(invitation.token, bob)
            with results_lock:
                results.append(outcome)

        threads = [threading.Thread(target=attempt) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 1
        assert results.count(False) == workers - 1
        active = [m for m in store.list_memberships(team.id) if m.user_id == bob.id]
        assert len(active) == 1
