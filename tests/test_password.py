"""
Ecotrack - Credential Hashing Tests

Run with: pytest tests/test_password.py -v
"""

import bcrypt
import pytest

from ecotrack.auth.password import (
    burn_verify,
    hash_password,
    hash_token,
    needs_rehash,
    token_fingerprint,
    validate_password_strength,
    verify_password,
    verify_token,
)


# =============================================================================
# PASSWORD HASHING TESTS
# =============================================================================

class TestPasswordHashing:
    """Unit tests for bcrypt password utilities."""

    def test_hash_password_creates_bcrypt_hash(self):
        """Password hashing creates a cost-12 bcrypt hash."""
        hashed = hash_password("Str0ng!Pass")

        assert hashed.startswith("$2b$12$")
        assert len(hashed) == 60

    def test_verify_password_round_trip(self):
        hashed = hash_password("Str0ng!Pass")

        assert verify_password("Str0ng!Pass", hashed) is True

    def test_verify_password_incorrect(self):
        hashed = hash_password("Str0ng!Pass")

        assert verify_password("Str0ng!Pasz", hashed) is False
        assert verify_password("", hashed) is False

    def test_different_hashes_for_same_password(self):
        """Same password generates different hashes (salted)."""
        hash1 = hash_password("Str0ng!Pass")
        hash2 = hash_password("Str0ng!Pass")

        assert hash1 != hash2
        assert verify_password("Str0ng!Pass", hash1) is True
        assert verify_password("Str0ng!Pass", hash2) is True

    def test_verify_malformed_hash_returns_false(self):
        """Verification never raises, even on garbage input."""
        assert verify_password("Str0ng!Pass", "not-a-hash") is False
        assert verify_password("Str0ng!Pass", "") is False
        assert verify_password("Str0ng!Pass", None) is False

    def test_passwords_sharing_72_byte_prefix_do_not_match(self):
        """Nothing past the bcrypt input limit is silently dropped."""
        prefix = "Aa1!" + "x" * 68
        hashed = hash_password(prefix)

        assert verify_password(prefix + "DIFFERENT", hashed) is False
        assert verify_password(prefix, hashed) is True

    def test_hash_password_refuses_overlong_input(self):
        with pytest.raises(ValueError):
            hash_password("Aa1!" + "x" * 68 + "OTHER")

    def test_needs_rehash_old_work_factor(self):
        old_hash = bcrypt.hashpw(b"password", bcrypt.gensalt(rounds=10)).decode()

        assert needs_rehash(old_hash) is True

    def test_needs_rehash_current_factor(self):
        assert needs_rehash(hash_password("password")) is False

    def test_needs_rehash_invalid_hash(self):
        assert needs_rehash("plaintext") is True

    def test_burn_verify_does_not_raise(self):
        burn_verify()


# =============================================================================
# TOKEN HASHING TESTS
# =============================================================================

class TestTokenHashing:

    def test_hash_token_uses_lighter_work_factor(self):
        hashed = hash_token("a" * 64)

        assert hashed.startswith("$2b$10$")
        assert verify_token("a" * 64, hashed) is True
        assert verify_token("b" * 64, hashed) is False

    def test_fingerprint_is_deterministic(self):
        assert token_fingerprint("abc", "pepper") == token_fingerprint("abc", "pepper")
        assert len(token_fingerprint("abc", "pepper")) == 64

    def test_fingerprint_depends_on_pepper(self):
        assert token_fingerprint("abc", "pepper-1") != token_fingerprint("abc", "pepper-2")


# =============================================================================
# PASSWORD POLICY TESTS
# =============================================================================

class TestPasswordPolicy:

    def test_strong_password_passes(self):
        assert validate_password_strength("Str0ng!Pass") == []

    def test_each_rule_reported(self):
        errors = validate_password_strength("abc")

        assert "Password must be at least 8 characters long" in errors
        assert "Password must contain at least one uppercase letter" in errors
        assert "Password must contain at least one number" in errors
        assert "Password must contain at least one special character" in errors
        assert "Password must contain at least one lowercase letter" not in errors

    def test_overlong_password_rejected(self):
        errors = validate_password_strength("Aa1!" + "x" * 69)

        assert errors == ["Password must be at most 72 bytes long"]

    def test_limit_counts_bytes_not_characters(self):
        assert validate_password_strength("Aa1!" + "\u20ac" * 22 + "ab") == []
        assert "Password must be at most 72 bytes long" in validate_password_strength("Aa1!" + "\u20ac" * 23)

    def test_missing_special_character(self):
        assert validate_password_strength("Str0ngPass") == [
            "Password must contain at least one special character"
        ]
