import asyncio
import time
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from constants import JWT_SECRET, JWT_ALGORITHM, JWT_EXPIRE_SECONDS, HANDSHAKE_TIMEOUT_SECONDS
from errors import AuthenticationError, PersistenceError
from logging_config import get_logger
from schemas.messages import Identity

logger = get_logger(__name__)


def generate_token(user_id: str, secret: str = JWT_SECRET, expires_in: int = JWT_EXPIRE_SECONDS) -> str:
    """Issue a bearer token with the same ``{"id": ...}`` claim the auth service signs."""
    now = int(time.time())
    payload = {"id": str(user_id), "iat": now, "exp": now + expires_in}
    return jwt.encode(payload, secret, algorithm=JWT_ALGORITHM)


class IdentityVerifier:
    """Turns an opaque bearer credential into an Identity.

    A bad signature, an expired token, a missing ``id`` claim and a user that
    is not in the directory all fail the same way.
    """

    def __init__(self, users, secret: str = JWT_SECRET, algorithm: str = JWT_ALGORITHM, timeout: float = HANDSHAKE_TIMEOUT_SECONDS):
        self.users = users
        self.secret = secret
        self.algorithm = algorithm
        self.timeout = timeout

    def decode(self, credential: Optional[str]) -> str:
        if not credential:
            raise AuthenticationError()
        try:
            claims = jwt.decode(credential, self.secret, algorithms=[self.algorithm])
        except jwt.InvalidTokenError as e:
            logger.debug(f"Rejected credential: {e}")
            raise AuthenticationError() from e
        user_id = claims.get("id")
        if not user_id:
            raise AuthenticationError()
        return str(user_id)

    async def verify(self, credential: Optional[str]) -> Identity:
        user_id = self.decode(credential)
        try:
            user = await asyncio.wait_for(self.users.get_user(user_id), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.warning(f"Identity lookup for {user_id} timed out after {self.timeout}s")
            raise AuthenticationError() from e
        except PersistenceError as e:
            logger.warning(f"Identity lookup for {user_id} failed: {e}")
            raise AuthenticationError() from e
        if user is None:
            logger.debug(f"Credential for unknown user {user_id}")
            raise AuthenticationError()
        return user


bearer_scheme = HTTPBearer(auto_error=False)


async def current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Identity:
    """FastAPI dependency for the REST routes: 401 unless the bearer token verifies."""
    verifier: IdentityVerifier = request.app.state.verifier
    try:
        return await verifier.verify(credentials.credentials if credentials else None)
    except AuthenticationError:
        raise HTTPException(status_code=401, detail="Not authorized")
