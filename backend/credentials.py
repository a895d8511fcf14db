import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, Optional, Tuple

import bcrypt
import jwt
import pymongo
from pymongo.errors import PyMongoError

from documents import utc_now
from errors import (
    ConfigurationError,
    InvalidCredentials,
    InvalidSignature,
    MalformedToken,
    PersistenceFailure,
    TokenExpired,
)

DEFAULT_BCRYPT_ROUNDS = 14
# bcrypt ignores everything after the first 72 bytes of a password.
MAX_PASSWORD_BYTES = 72


class PasswordHasher:
    """Salted bcrypt hashing for account passwords."""

    def __init__(self, rounds: int = DEFAULT_BCRYPT_ROUNDS):
        self.rounds = rounds

    def hash(self, password: str) -> str:
        hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(self.rounds))
        return hashed.decode("utf-8")

    def verify(self, password: str, hashed: Optional[str]) -> bool:
        if not password or not hashed:
            return False
        if isinstance(hashed, str):
            hashed = hashed.encode("utf-8")
        try:
            return bcrypt.checkpw(password.encode("utf-8"), hashed)
        except ValueError:
            # Stored value is not a bcrypt hash or the password is too long.
            return False

    def check(self, user_document: Optional[Dict], password: str) -> Dict:
        """Return the user when the password matches, otherwise fail the same way
        for an unknown account and a wrong password."""
        if not user_document or not self.verify(password, user_document.get("password")):
            raise InvalidCredentials()
        return user_document


@dataclass(frozen=True)
class Claims:
    email: str
    first_name: str
    last_name: str
    uid: str
    expires_at: int

    @classmethod
    def from_payload(cls, payload) -> "Claims":
        if not isinstance(payload, dict):
            raise MalformedToken()

        expires_at = payload.get("exp")
        if isinstance(expires_at, bool) or not isinstance(expires_at, int):
            raise MalformedToken()

        values = {}
        for field in ("email", "first_name", "last_name", "uid"):
            value = payload.get(field)
            if not isinstance(value, str):
                raise MalformedToken()
            values[field] = value
        if not values["uid"]:
            raise MalformedToken()

        return cls(expires_at=expires_at, **values)


class TokenService:
    """Issues and validates the signed access/refresh token pair.

    The signing secret is handed in once at construction. Tokens are not
    revoked when a newer pair is issued; they stay valid until they expire.
    """

    ACCESS_ALGORITHM = "HS256"
    REFRESH_ALGORITHM = "HS384"

    def __init__(
        self,
        secret: str,
        users,
        access_ttl: timedelta = timedelta(hours=24),
        refresh_ttl: timedelta = timedelta(hours=168),
        timeout: float = 100,
        logger: Optional[logging.Logger] = None,
    ):
        if not secret or not isinstance(secret, str):
            raise ConfigurationError("SECRET_KEY must be set to sign tokens.")
        self._secret = secret
        self.users = users
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)

    def _sign(self, claims: Dict, algorithm: str) -> str:
        try:
            return jwt.encode(claims, self._secret, algorithm=algorithm)
        except (jwt.PyJWTError, TypeError, ValueError) as exc:
            raise ConfigurationError(f"Unable to sign token: {exc}") from exc

    def issue_tokens(
        self, email: str, first_name: str, last_name: str, uid: str
    ) -> Tuple[str, str]:
        now = utc_now()
        access_claims = {
            "email": email,
            "first_name": first_name,
            "last_name": last_name,
            "uid": uid,
            "exp": int((now + self.access_ttl).timestamp()),
        }
        refresh_claims = {
            "uid": uid,
            "exp": int((now + self.refresh_ttl).timestamp()),
        }
        access_token = self._sign(access_claims, self.ACCESS_ALGORITHM)
        refresh_token = self._sign(refresh_claims, self.REFRESH_ALGORITHM)
        return access_token, refresh_token

    def validate_token(self, token: str) -> Claims:
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self.ACCESS_ALGORITHM],
                options={"verify_exp": False},
            )
        except (jwt.InvalidSignatureError, jwt.InvalidAlgorithmError):
            raise InvalidSignature()
        except jwt.InvalidTokenError:
            raise MalformedToken()

        claims = Claims.from_payload(payload)
        # Signed but past its deadline is still rejected.
        if claims.expires_at < int(utc_now().timestamp()):
            raise TokenExpired()
        return claims

    def persist_tokens(self, user_id: str, access_token: str, refresh_token: str):
        update = {
            "token": access_token,
            "refresh_token": refresh_token,
            "updated_at": utc_now(),
        }
        try:
            with pymongo.timeout(self.timeout):
                self.users.update_one({"user_id": user_id}, {"$set": update}, upsert=True)
        except PyMongoError as exc:
            self.logger.error("Unable to store tokens for user %s: %s", user_id, exc)
            raise PersistenceFailure()
