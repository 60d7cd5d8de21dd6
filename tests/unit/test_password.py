"""
Unit tests for password hashing and the strength policy.
"""

import pytest

from anchorpipe.core.auth.password import (
    hash_password,
    password_policy_errors,
    verify_password,
)


@pytest.mark.unit
class TestPasswordHashing:
    """Test bcrypt hashing through passlib."""

    def test_hash_and_verify(self) -> None:
        hashed = hash_password("Sup3r-secret!")

        assert hashed != "Sup3r-secret!"
        assert hashed.startswith("$2b$")
        assert verify_password("Sup3r-secret!", hashed)
        assert not verify_password("wrong-password", hashed)

    def test_hashes_are_salted(self) -> None:
        assert hash_password("Sup3r-secret!") != hash_password("Sup3r-secret!")

    def test_malformed_hash(self) -> None:
        """Test that an unrecognised hash verifies as False."""
        assert not verify_password("Sup3r-secret!", "not-a-hash")


@pytest.mark.unit
class TestPasswordPolicy:
    """Test password strength rules."""

    def test_strong_password(self) -> None:
        assert password_policy_errors("Sup3r-secret!") == []

    @pytest.mark.parametrize(
        "password,message",
        [
            ("Sh0rt!", "Password must be at least 8 characters"),
            ("Aa1!" * 33, "Password must be at most 128 characters"),
            ("lower-case-1", "Password must contain an uppercase letter"),
            ("UPPER-CASE-1", "Password must contain a lowercase letter"),
            ("No-Digits-Here", "Password must contain a number"),
            ("NoSpecial123", "Password must contain a special character"),
        ],
    )
    def test_violations(self, password: str, message: str) -> None:
        assert password_policy_errors(password) == [message]

    def test_multiple_violations(self) -> None:
        errors = password_policy_errors("abc")

        assert "Password must be at least 8 characters" in errors
        assert "Password must contain a number" in errors
        assert len(errors) == 4
