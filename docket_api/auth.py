"""
Authentication Module with JWT Support
======================================

Bearer-token verification for the docket API.

Verification Flow:
1. Check the signature against the active signing key, then against the
   configured fallback keys (in order) if the signature did not match
2. Reject tokens past ``exp`` and tokens older than the absolute age ceiling
3. Resolve the subject (``sub``, or the legacy ``userId`` / ``id`` claims)
4. Require the presented token to equal the credential currently stored for
   that user; anything else means it was revoked

Fallback keys exist only to bridge a signing-key migration. Once every
deployment signs with JWT_SECRET_KEY the fallback list should be emptied.
"""

import hmac
import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

import jwt
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import Settings, get_settings
from .db.models import User
from .errors import ExpiredCredential, InvalidCredential, RevokedCredential
from .token_store import CredentialStore

logger = logging.getLogger(__name__)

# Claims that have carried the user id over the life of the API, most recent first
SUBJECT_CLAIMS = ("sub", "userId", "id")

# Allowance for clock skew between issuer and verifier
NBF_SKEW_SECONDS = 10


# =============================================================================
# PASSWORD HASHING
# =============================================================================

# bcrypt truncates passwords at 72 bytes; enforce to avoid 500s.
MAX_PASSWORD_BYTES = 72

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def is_password_too_long(password: str) -> bool:
    """Return True if password exceeds bcrypt 72-byte limit."""
    return len(password.encode("utf-8")) > MAX_PASSWORD_BYTES


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against a hash"""
    if is_password_too_long(plain_password):
        logger.warning("Auth failed: password exceeds bcrypt 72-byte limit")
        return False
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError as e:
        logger.warning(f"Auth failed: invalid password format ({e})")
        return False


def get_password_hash(password: str) -> str:
    """Hash a password"""
    if is_password_too_long(password):
        raise ValueError("Password exceeds bcrypt 72-byte limit")
    return pwd_context.hash(password)


def authenticate_user(db: Session, username: str, password: str) -> Optional[User]:
    """Return the user if ``password`` matches their stored bcrypt hash."""
    user = db.execute(select(User).where(User.username == username)).scalar_one_or_none()
    if not user:
        logger.warning(f"Auth failed: username {username} not found")
        return None

    if not user.password_hash:
        logger.warning(f"Auth failed: user {user.id} has no password set")
        return None

    if not verify_password(password, user.password_hash):
        logger.warning(f"Auth failed: invalid password for user {user.id}")
        return None

    return user


# =============================================================================
# JWT TOKEN HANDLING
# =============================================================================

def create_api_token(
    user_id: int,
    username: Optional[str] = None,
    settings: Optional[Settings] = None,
    expires_delta: Optional[timedelta] = None,
    now: Optional[float] = None,
) -> str:
    """
    Create a signed API token for ``user_id``.

    The token only authenticates once it has also been stored as the user's
    active credential (see CredentialStore.store_credential). Expiry defaults
    to the absolute age ceiling, since verification rejects older tokens anyway.
    """
    settings = settings or get_settings()
    issued = int(now if now is not None else time.time())
    lifetime = expires_delta or timedelta(seconds=settings.jwt_max_token_age_seconds)

    payload = {
        "sub": str(user_id),
        "userId": user_id,
        "type": "api_access",
        "iat": issued,
        "nbf": issued - NBF_SKEW_SECONDS,
        "exp": issued + int(lifetime.total_seconds()),
        "jti": secrets.token_hex(16),
        "iss": settings.jwt_issuer,
    }
    if username:
        payload["username"] = username

    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def extract_bearer_token(authorization: Optional[str]) -> str:
    """Pull the raw token out of an ``Authorization: Bearer <token>`` header"""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise InvalidCredential("Unauthorized - No token provided")

    token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise InvalidCredential("Unauthorized - No token provided")
    return token


@dataclass
class VerifiedToken:
    """Result of a successful verification"""
    subject: str
    issued_at: datetime
    claims: Dict[str, Any] = field(default_factory=dict)

    @property
    def user_id(self) -> int:
        return int(self.subject)

    @property
    def username(self) -> Optional[str]:
        return self.claims.get("username")


class TokenVerifier:
    """
    Validates bearer tokens: signature, freshness, and revocation.

    ``keys`` is the ordered list of accepted signing keys, active key first.
    """

    def __init__(
        self,
        keys: Sequence[str],
        credential_store: CredentialStore,
        max_age_seconds: int,
        algorithm: str = "HS256",
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ):
        self.keys: List[str] = [k for k in keys if k and k.strip()]
        self.credential_store = credential_store
        self.max_age_seconds = max_age_seconds
        self.algorithm = algorithm
        self.leeway_seconds = leeway_seconds
        self.clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, credential_store: CredentialStore) -> "TokenVerifier":
        return cls(
            keys=settings.verification_keys,
            credential_store=credential_store,
            max_age_seconds=settings.jwt_max_token_age_seconds,
            algorithm=settings.jwt_algorithm,
            leeway_seconds=settings.jwt_leeway_seconds,
        )

    def verify(self, token: str) -> VerifiedToken:
        """
        Verify ``token``.

        Raises:
            InvalidCredential: malformed, or not signed by any accepted key
            ExpiredCredential: past ``exp`` or older than the age ceiling
            RevokedCredential: no longer the user's stored credential, or the
                store could not be consulted
        """
        claims = self._decode(token)

        issued_at = claims["iat"]
        if self.clock() - issued_at > self.max_age_seconds:
            raise ExpiredCredential("Unauthorized - Token too old, please request a new one")

        subject = self._subject(claims)
        self._check_not_revoked(int(subject), token)

        return VerifiedToken(
            subject=subject,
            issued_at=datetime.fromtimestamp(issued_at, tz=timezone.utc),
            claims=claims,
        )

    def _decode(self, token: str) -> Dict[str, Any]:
        if not self.keys:
            logger.error("No signing keys configured; rejecting token")
            raise InvalidCredential()

        for index, key in enumerate(self.keys):
            try:
                claims = jwt.decode(
                    token,
                    key,
                    algorithms=[self.algorithm],
                    leeway=self.leeway_seconds,
                    # Older tokens carry an audience nobody checks
                    options={"require": ["iat"], "verify_aud": False},
                )
            except jwt.ExpiredSignatureError:
                # exp is only checked once the signature matched
                raise ExpiredCredential()
            except jwt.InvalidSignatureError:
                continue
            except jwt.InvalidTokenError as e:
                logger.warning(f"Rejected token: {e}")
                raise InvalidCredential()

            if index > 0:
                logger.warning(
                    f"Token accepted with fallback signing key #{index}; "
                    "reissue it under JWT_SECRET_KEY"
                )
            return claims

        logger.warning("Rejected token: signature matches no configured key")
        raise InvalidCredential()

    @staticmethod
    def _subject(claims: Dict[str, Any]) -> str:
        for name in SUBJECT_CLAIMS:
            value = claims.get(name)
            if value is None or isinstance(value, bool):
                continue
            subject = str(value).strip()
            # isdigit() alone admits digits int() rejects, e.g. superscripts
            if subject.isascii() and subject.isdigit():
                return subject
            break
        raise InvalidCredential("Unauthorized - Token has no valid subject")

    def _check_not_revoked(self, user_id: int, token: str) -> None:
        try:
            stored = self.credential_store.get_active_credential(user_id)
        except Exception as e:
            # Fail closed: an unreachable store never lets a token through
            logger.error(f"Revocation check failed for user {user_id}: {e}")
            raise RevokedCredential("Unable to confirm credential status") from e

        if not stored or not stored.strip():
            logger.warning(f"Rejected token: user {user_id} holds no active credential")
            raise RevokedCredential()

        if not hmac.compare_digest(stored.encode("utf-8"), token.encode("utf-8")):
            logger.warning(f"Rejected token: superseded credential for user {user_id}")
            raise RevokedCredential()


# =============================================================================
# AUTH CONTEXT
# =============================================================================

@dataclass
class AuthContext:
    """Authorization context for a request"""
    user_id: int
    username: Optional[str]
    token: VerifiedToken
