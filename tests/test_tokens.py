"""
Ecotrack - Token Issuer Tests

Covers issuance, refresh rotation, reuse detection, revocation,
expiry boundaries, purging and storage failures.

Run with: pytest tests/test_tokens.py -v
"""

from datetime import timedelta
from uuid import uuid4

import pytest
from jose import jwt
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

import ecotrack.auth.store as store_module
from ecotrack.auth.models import AuthMethod, RefreshToken, RevocationReason
from ecotrack.auth.password import token_fingerprint
from ecotrack.auth.store import TokenStore, UserStore
from ecotrack.auth.tokens import DeviceInfo
from ecotrack.errors import UpstreamUnavailableError
from tests.conftest import START_TIME


def _record(service, refresh_token: str) -> RefreshToken:
    store: TokenStore = service.issuer._store
    return store.find_refresh_token(token_fingerprint(refresh_token, "test-pepper"))


# =============================================================================
# ISSUANCE TESTS
# =============================================================================

class TestIssueTokens:

    def test_issue_returns_pair(self, service, alice):
        tokens = service.issuer.issue_tokens(alice)

        assert tokens.access_token.count(".") == 2
        assert len(tokens.refresh_token) == 64
        assert tokens.expires_in == 86400
        assert tokens.token_type == "bearer"

    def test_access_token_claims(self, service, alice):
        tokens = service.issuer.issue_tokens(alice)
        claims = jwt.get_unverified_claims(tokens.access_token)
        header = jwt.get_unverified_header(tokens.access_token)

        assert header["alg"] == "RS256"
        assert header["kid"] == "test-key"
        assert claims["sub"] == str(alice.id)
        assert claims["email"] == alice.email
        assert claims["iss"] == "ecotrack-api"
        assert claims["aud"] == "ecotrack-mobile"
        assert claims["exp"] - claims["iat"] == 86400
        assert claims["amr"] == "password"
        assert claims["jti"]

    def test_refresh_token_stored_hashed(self, service, alice):
        tokens = service.issuer.issue_tokens(
            alice, DeviceInfo(user_agent="pytest", ip_address="10.0.0.1", device_id="device-a")
        )
        record = _record(service, tokens.refresh_token)

        assert record is not None
        assert record.token_hash != tokens.refresh_token
        assert tokens.refresh_token not in record.lookup_digest
        assert record.expires_at == START_TIME + timedelta(days=7)
        assert record.device_id == "device-a"
        assert record.user_agent == "pytest"
        assert record.is_revoked is False

    def test_refresh_tokens_are_unique(self, service, alice):
        first = service.issuer.issue_tokens(alice)
        second = service.issuer.issue_tokens(alice)

        assert first.refresh_token != second.refresh_token

    def test_storage_failure_returns_no_tokens(self, service, alice, monkeypatch):
        """A failed write surfaces as an error, never as a partial pair."""
        def broken_add(record):
            raise UpstreamUnavailableError()

        monkeypatch.setattr(service.issuer._store, "add_refresh_token", broken_add)

        with pytest.raises(UpstreamUnavailableError):
            service.issuer.issue_tokens(alice)


# =============================================================================
# ROTATION TESTS
# =============================================================================

class TestRefreshRotation:

    def test_refresh_returns_new_pair(self, service, alice):
        tokens = service.issuer.issue_tokens(alice)
        rotated = service.issuer.refresh(tokens.refresh_token)

        assert rotated is not None
        assert rotated.refresh_token != tokens.refresh_token
        assert jwt.get_unverified_claims(rotated.access_token)["amr"] == "refresh"

    def test_old_token_rejected_after_rotation(self, service, alice):
        tokens = service.issuer.issue_tokens(alice)

        assert service.issuer.refresh(tokens.refresh_token) is not None
        assert service.issuer.refresh(tokens.refresh_token) is None

    def test_old_record_marked_replaced(self, service, alice):
        tokens = service.issuer.issue_tokens(alice)
        service.issuer.refresh(tokens.refresh_token)
        record = _record(service, tokens.refresh_token)

        assert record.is_revoked is True
        assert record.revoked_reason == RevocationReason.REPLACED
        assert record.last_used_at == START_TIME

    def test_rotation_keeps_device_metadata(self, service, alice):
        tokens = service.issuer.issue_tokens(alice, DeviceInfo(device_id="device-a"))
        rotated = service.issuer.refresh(tokens.refresh_token)
        record = _record(service, rotated.refresh_token)

        assert record.device_id == "device-a"
        assert record.auth_method == AuthMethod.REFRESH

    def test_reuse_revokes_all_sessions(self, service, alice):
        """Replaying a rotated token kills the whole family."""
        tokens = service.issuer.issue_tokens(alice)
        other_device = service.issuer.issue_tokens(alice)
        rotated = service.issuer.refresh(tokens.refresh_token)

        assert service.issuer.refresh(tokens.refresh_token) is None
        assert service.issuer.refresh(rotated.refresh_token) is None
        assert service.issuer.refresh(other_device.refresh_token) is None
        assert _record(service, rotated.refresh_token).revoked_reason == RevocationReason.SECURITY

    def test_unknown_token_rejected(self, service, alice):
        assert service.issuer.refresh("0" * 64) is None
        assert service.issuer.refresh("") is None

    def test_lost_race_fails_closed(self, service, alice):
        """If the conditional revoke matches no row, nothing is issued."""
        tokens = service.issuer.issue_tokens(alice)
        record = _record(service, tokens.refresh_token)
        store = service.issuer._store

        store.revoke_refresh_token(record.id, RevocationReason.LOGOUT, START_TIME)
        new_record = RefreshToken(
            user_id=alice.id,
            lookup_digest="f" * 64,
            token_hash="x",
            expires_at=START_TIME + timedelta(days=7),
        )

        assert store.rotate_refresh_token(record.id, new_record, START_TIME) is False
        assert store.find_refresh_token("f" * 64) is None

    def test_inactive_user_cannot_refresh(self, service, inactive_user):
        tokens = service.issuer.issue_tokens(inactive_user)

        assert service.issuer.refresh(tokens.refresh_token) is None


# =============================================================================
# EXPIRY BOUNDARY TESTS
# =============================================================================

class TestRefreshExpiry:

    def test_valid_one_second_before_expiry(self, service, alice, clock):
        tokens = service.issuer.issue_tokens(alice)
        clock.advance(days=7, seconds=-1)

        assert service.issuer.refresh(tokens.refresh_token) is not None

    def test_invalid_at_expiry(self, service, alice, clock):
        tokens = service.issuer.issue_tokens(alice)
        clock.advance(days=7)

        assert service.issuer.refresh(tokens.refresh_token) is None

    def test_record_validity_is_strict(self, clock):
        record = RefreshToken(
            user_id=uuid4(),
            lookup_digest="a" * 64,
            token_hash="x",
            expires_at=START_TIME,
        )

        assert record.is_valid(START_TIME) is False
        assert record.is_valid(START_TIME - timedelta(seconds=1)) is True


# =============================================================================
# REVOCATION TESTS
# =============================================================================

class TestRevocation:

    def test_revoke_single_token(self, service, alice):
        tokens = service.issuer.issue_tokens(alice)

        assert service.issuer.revoke(tokens.refresh_token) is True
        assert service.issuer.refresh(tokens.refresh_token) is None
        assert _record(service, tokens.refresh_token).revoked_reason == RevocationReason.LOGOUT

    def test_revoke_twice_reports_false(self, service, alice):
        tokens = service.issuer.issue_tokens(alice)
        service.issuer.revoke(tokens.refresh_token)

        assert service.issuer.revoke(tokens.refresh_token) is False

    def test_revoke_checks_owner(self, service, alice, inactive_user):
        tokens = service.issuer.issue_tokens(alice)

        assert service.issuer.revoke(tokens.refresh_token, user_id=inactive_user.id) is False
        assert service.issuer.refresh(tokens.refresh_token) is not None

    def test_revoke_all(self, service, alice):
        first = service.issuer.issue_tokens(alice)
        second = service.issuer.issue_tokens(alice)

        assert service.issuer.revoke_all(alice.id) == 2
        assert service.issuer.refresh(first.refresh_token) is None
        assert service.issuer.refresh(second.refresh_token) is None


# =============================================================================
# PURGE TESTS
# =============================================================================

class TestPurge:

    def test_purge_removes_expired_and_old_revoked(self, service, alice, clock):
        expired = service.issuer.issue_tokens(alice)
        clock.advance(days=8)
        revoked = service.issuer.issue_tokens(alice)
        service.issuer.revoke(revoked.refresh_token)
        live = service.issuer.issue_tokens(alice)

        assert service.issuer.purge() == 1
        assert _record(service, expired.refresh_token) is None
        assert _record(service, revoked.refresh_token) is not None
        assert _record(service, live.refresh_token) is not None


# =============================================================================
# STORAGE FAILURE TESTS
# =============================================================================

class FlakySessionFactory:
    """Session factory whose first ``failures`` sessions raise OperationalError."""

    def __init__(self, session_factory, failures: int) -> None:
        self._session_factory = session_factory
        self.failures = failures
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise OperationalError("SELECT", {}, Exception("database is locked"))
        return self._session_factory()


class TestStorageFailures:

    @pytest.fixture(autouse=True)
    def no_backoff(self, monkeypatch):
        monkeypatch.setattr(store_module, "READ_RETRY_BACKOFF_SECONDS", 0)

    def test_refresh_reports_unavailable_when_reads_fail(self, service, alice, test_engine):
        tokens = service.issuer.issue_tokens(alice)
        with test_engine.begin() as conn:
            conn.execute(text("DROP TABLE refresh_tokens"))

        with pytest.raises(UpstreamUnavailableError):
            service.refresh_session(tokens.refresh_token)

    def test_login_lookup_reports_unavailable(self, service, alice, test_engine):
        with test_engine.begin() as conn:
            conn.execute(text("DROP TABLE users"))

        with pytest.raises(UpstreamUnavailableError):
            service.login(alice.email, "Str0ng!Pass")

    def test_transient_read_failure_is_retried(self, session_factory):
        flaky = FlakySessionFactory(session_factory, failures=2)
        store = TokenStore(flaky, read_retries=2)

        assert store.find_refresh_token("a" * 64) is None
        assert flaky.calls == 3

    def test_read_gives_up_after_retries(self, session_factory):
        flaky = FlakySessionFactory(session_factory, failures=3)
        store = UserStore(flaky, read_retries=2)

        with pytest.raises(UpstreamUnavailableError):
            store.get_by_email("alice@example.com")
        assert flaky.calls == 3

    def test_write_failure_reports_unavailable(self, service, alice, test_engine):
        service.issuer.issue_tokens(alice)
        with test_engine.begin() as conn:
            conn.execute(text("DROP TABLE refresh_tokens"))

        with pytest.raises(UpstreamUnavailableError):
            service.issuer.revoke_all(alice.id)
