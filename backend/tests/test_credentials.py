"""
Tests for password hashing and the signed token service.
"""
from datetime import timedelta

import jwt
import pytest

from credentials import Claims, TokenService
from documents import utc_now
from errors import (
    ConfigurationError,
    InvalidCredentials,
    InvalidSignature,
    MalformedToken,
    TokenExpired,
)

from conftest import TEST_SECRET


class TestPasswordHasher:
    def test_hash_is_salted_and_verifiable(self, hasher):
        first = hasher.hash("secret123")
        second = hasher.hash("secret123")

        assert first != second
        assert first.startswith("$2")
        assert hasher.verify("secret123", first)
        assert hasher.verify("secret123", second)

    def test_wrong_password_does_not_verify(self, hasher):
        hashed = hasher.hash("secret123")

        assert not hasher.verify("secret124", hashed)

    def test_garbage_hash_does_not_verify(self, hasher):
        assert not hasher.verify("secret123", "not-a-bcrypt-hash")
        assert not hasher.verify("secret123", None)

    def test_check_fails_identically_for_unknown_user_and_wrong_password(self, hasher):
        user = {"password": hasher.hash("secret123")}

        with pytest.raises(InvalidCredentials) as unknown:
            hasher.check(None, "secret123")
        with pytest.raises(InvalidCredentials) as wrong:
            hasher.check(user, "nope-nope")

        assert unknown.value.message == wrong.value.message
        assert hasher.check(user, "secret123") is user


class TestTokenIssue:
    def test_empty_secret_is_a_configuration_error(self, users):
        with pytest.raises(ConfigurationError):
            TokenService("", users)

    def test_access_and_refresh_use_distinct_algorithms(self, token_service):
        access, refresh = token_service.issue_tokens("jane@example.com", "Jane", "Doe", "abc123")

        assert jwt.get_unverified_header(access)["alg"] == "HS256"
        assert jwt.get_unverified_header(refresh)["alg"] == "HS384"

    def test_expiry_windows(self, token_service):
        before = int(utc_now().timestamp())
        access, refresh = token_service.issue_tokens("jane@example.com", "Jane", "Doe", "abc123")

        access_claims = jwt.decode(access, TEST_SECRET, algorithms=["HS256"])
        refresh_claims = jwt.decode(refresh, TEST_SECRET, algorithms=["HS384"])

        assert access_claims["exp"] - before == pytest.approx(24 * 3600, abs=5)
        assert refresh_claims["exp"] - before == pytest.approx(168 * 3600, abs=5)
        assert refresh_claims["uid"] == "abc123"


class TestTokenValidation:
    def test_round_trip_returns_claims(self, token_service):
        access, _ = token_service.issue_tokens("jane@example.com", "Jane", "Doe", "abc123")

        claims = token_service.validate_token(access)

        assert isinstance(claims, Claims)
        assert claims.email == "jane@example.com"
        assert claims.first_name == "Jane"
        assert claims.last_name == "Doe"
        assert claims.uid == "abc123"

    def test_expired_token_with_valid_signature_is_rejected(self, token_service):
        payload = {
            "email": "jane@example.com",
            "first_name": "Jane",
            "last_name": "Doe",
            "uid": "abc123",
            "exp": int((utc_now() - timedelta(minutes=1)).timestamp()),
        }
        token = jwt.encode(payload, TEST_SECRET, algorithm="HS256")

        with pytest.raises(TokenExpired):
            token_service.validate_token(token)

    def test_token_signed_with_another_secret_is_rejected(self, users, token_service):
        other = TokenService(TEST_SECRET[::-1], users)
        access, _ = other.issue_tokens("jane@example.com", "Jane", "Doe", "abc123")

        with pytest.raises(InvalidSignature):
            token_service.validate_token(access)

    def test_refresh_token_is_not_accepted_as_access_token(self, token_service):
        _, refresh = token_service.issue_tokens("jane@example.com", "Jane", "Doe", "abc123")

        with pytest.raises(InvalidSignature):
            token_service.validate_token(refresh)

    def test_garbage_is_malformed(self, token_service):
        with pytest.raises(MalformedToken):
            token_service.validate_token("definitely-not-a-token")

    def test_missing_identity_claims_are_malformed(self, token_service):
        token = jwt.encode(
            {"exp": int((utc_now() + timedelta(hours=1)).timestamp())},
            TEST_SECRET,
            algorithm="HS256",
        )

        with pytest.raises(MalformedToken):
            token_service.validate_token(token)


class TestPersistTokens:
    def test_updates_existing_user_record(self, token_service, make_user, users):
        user = make_user()

        token_service.persist_tokens(user["user_id"], "access", "refresh")

        stored = users.find_one({"_id": user["_id"]})
        assert stored["token"] == "access"
        assert stored["refresh_token"] == "refresh"
        assert stored["updated_at"] is not None

    def test_upserts_when_no_record_exists(self, token_service, users):
        token_service.persist_tokens("ffffffffffffffffffffffff", "access", "refresh")

        stored = users.find_one({"user_id": "ffffffffffffffffffffffff"})
        assert stored["token"] == "access"
        assert users.count_documents({}) == 1
