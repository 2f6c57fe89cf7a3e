from __future__ import annotations

import logging
from typing import Any, Protocol

import jwt

from .errors import AuthExpired, AuthInvalid
from .util import normalize_user_id


class IdentityProvider(Protocol):
    def verify(self, credential: Any) -> str:
        """Return the user id for a credential or raise ``AuthDenied``."""
        ...


class JwtIdentityProvider:
    """Verifies bearer tokens signed with a shared secret.

    Tokens are minted by the account service. The user id is read from the
    ``userId`` claim, falling back to ``sub``.
    """

    def __init__(
        self,
        secret: str,
        *,
        algorithm: str = "HS256",
        audience: str | None = None,
        leeway_s: float = 0.0,
    ) -> None:
        if not secret:
            raise ValueError("jwt secret must not be empty")
        self.log = logging.getLogger("rmsgd.identity")
        self._secret = secret
        self._algorithm = algorithm
        self._audience = audience
        self._leeway_s = leeway_s

    def verify(self, credential: Any) -> str:
        if isinstance(credential, (bytes, bytearray)):
            try:
                credential = bytes(credential).decode("ascii")
            except UnicodeDecodeError as e:
                raise AuthInvalid() from e

        if not isinstance(credential, str) or not credential.strip():
            raise AuthInvalid("authentication required")

        token = credential.strip()
        if token.lower().startswith("bearer "):
            token = token[7:].strip()

        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                audience=self._audience,
                leeway=self._leeway_s,
                options={"verify_aud": self._audience is not None},
            )
        except jwt.ExpiredSignatureError as e:
            raise AuthExpired() from e
        except jwt.PyJWTError as e:
            self.log.debug("Token rejected: %s", e)
            raise AuthInvalid() from e

        user_id = normalize_user_id(claims.get("userId") or claims.get("sub"))
        if user_id is None:
            raise AuthInvalid("token has no user id")
        return user_id
