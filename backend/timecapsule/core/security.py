from __future__ import annotations

from functools import lru_cache

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from jose import jwt, JWTError

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from timecapsule.core.config import Settings, settings
from timecapsule.core.errors import Unauthorized


class PassphraseVerifier:
    """
    Salted, deliberately slow one-way digest for capsule passphrases.

    Argon2 embeds the salt and parameters in the encoded digest and compares
    in constant time. Both calls are CPU heavy; async callers must push them
    to a worker thread.
    """

    def __init__(
        self,
        time_cost: int = 2,
        memory_cost: int = 102400,
        parallelism: int = 8,
        hash_len: int = 32,
        salt_len: int = 16,
    ):
        self._ph = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            hash_len=hash_len,
            salt_len=salt_len,
        )

    @classmethod
    def from_settings(cls, cfg: Settings) -> "PassphraseVerifier":
        return cls(
            time_cost=cfg.passphrase_time_cost,
            memory_cost=cfg.passphrase_memory_cost,
            parallelism=cfg.passphrase_parallelism,
            hash_len=cfg.passphrase_hash_len,
            salt_len=cfg.passphrase_salt_len,
        )

    def hash(self, secret: str) -> str:
        return self._ph.hash(secret)

    def verify(self, secret: str, digest: str | None) -> bool:
        if not secret or not digest:
            return False
        try:
            return self._ph.verify(digest, secret)
        except VerifyMismatchError:
            return False
        except (VerificationError, InvalidHashError):
            # Corrupt or foreign digest never matches
            return False


@lru_cache
def get_passphrase_verifier() -> PassphraseVerifier:
    return PassphraseVerifier.from_settings(settings)


def decode_access_token(token: str, cfg: Settings = settings) -> dict | None:
    options = {"verify_aud": cfg.JWT_AUDIENCE is not None}
    try:
        return jwt.decode(
            token,
            cfg.JWT_SECRET,
            algorithms=[cfg.JWT_ALGORITHM],
            audience=cfg.JWT_AUDIENCE,
            issuer=cfg.JWT_ISSUER,
            options=options,
        )
    except JWTError:
        return None


_security = HTTPBearer(auto_error=False)


async def get_current_owner(
    credentials: HTTPAuthorizationCredentials | None = Depends(_security),
) -> str:
    """
    Dependency: resolve the opaque owner id from a bearer token.
    Expects: Authorization: Bearer <token>
    Returns: the token subject
    Raises: Unauthorized if the token is missing, invalid or has no subject
    """
    if credentials is None or not credentials.credentials:
        if not settings.is_production and settings.DEV_FAKE_OWNER_ID:
            return settings.DEV_FAKE_OWNER_ID
        raise Unauthorized("Authorization header missing or invalid")

    payload = decode_access_token(credentials.credentials)
    if not payload or not payload.get("sub"):
        raise Unauthorized("Invalid authentication credentials")

    return str(payload["sub"])
