"""Bearer-token identity resolution.

Every request outside the exempt routes must carry ``Authorization: Bearer
<token>``; the token is exchanged for a user id with the identity service on
each request (no caching, no retries).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

import structlog

from backend import BackendClient, BackendError
from errors import UnauthenticatedError

logger = structlog.get_logger()

EXEMPT_PATHS = frozenset({"/health", "/", "/docs", "/redoc", "/openapi.json"})
EXEMPT_PREFIXES = ("/v1/transactions/agent",)


@dataclass(frozen=True)
class Identity:
    user_id: str
    token: str


class IdentityProvider(ABC):
    @abstractmethod
    async def get_user_id(self, token: str) -> Optional[str]:
        """Return the user the token was issued for, or None."""
        pass


class SupabaseIdentityProvider(IdentityProvider):
    def __init__(self, client: BackendClient):
        self.client = client

    async def get_user_id(self, token: str) -> Optional[str]:
        try:
            user = await self.client.get_user(token)
        except BackendError as e:
            logger.info("Token verification rejected", status_code=e.status_code, code=e.code)
            return None
        if not isinstance(user, dict):
            logger.info("Token verification returned no user object")
            return None
        return user.get("id") or None


class InMemoryIdentityProvider(IdentityProvider):
    def __init__(self, tokens: Optional[Dict[str, str]] = None):
        self.tokens: Dict[str, str] = dict(tokens or {})

    def register(self, token: str, user_id: str) -> None:
        self.tokens[token] = user_id

    async def get_user_id(self, token: str) -> Optional[str]:
        return self.tokens.get(token)


def parse_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


class IdentityResolver:
    def __init__(self, provider: IdentityProvider):
        self.provider = provider

    @staticmethod
    def is_exempt(method: str, path: str) -> bool:
        if method == "OPTIONS" or path in EXEMPT_PATHS:
            return True
        return any(path == prefix or path.startswith(prefix + "/") for prefix in EXEMPT_PREFIXES)

    async def resolve(self, authorization: Optional[str]) -> Identity:
        token = parse_bearer(authorization)
        if token is None:
            raise UnauthenticatedError()

        user_id = await self.provider.get_user_id(token)
        if not user_id:
            raise UnauthenticatedError()
        return Identity(user_id=user_id, token=token)


_identity_provider: IdentityProvider = InMemoryIdentityProvider()


def configure_identity(provider: IdentityProvider) -> None:
    global _identity_provider
    _identity_provider = provider


def get_identity_provider() -> IdentityProvider:
    return _identity_provider


def get_identity_resolver() -> IdentityResolver:
    return IdentityResolver(_identity_provider)
