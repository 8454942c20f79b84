from __future__ import annotations

import time
from typing import Optional, Protocol, runtime_checkable

from pydantic import BaseModel

from .errors import CredentialError


# Refresh a little before the upstream would start rejecting the token
EXPIRY_SKEW_SECONDS = 60


class OAuthCredentials(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    # Epoch seconds; None means the token does not expire
    expiry: Optional[float] = None

    def expired(self, now: Optional[float] = None) -> bool:
        if self.expiry is None:
            return False
        return (now if now is not None else time.time()) >= self.expiry - EXPIRY_SKEW_SECONDS


@runtime_checkable
class TokenProvider(Protocol):
    """Supplies bearer tokens. Storage and refresh scheduling live behind it."""

    async def get_token(self) -> Optional[OAuthCredentials]:
        ...

    async def refresh(self, refresh_token: str) -> OAuthCredentials:
        ...


class StaticTokenProvider:
    def __init__(self, access_token: str, expiry: Optional[float] = None) -> None:
        self._creds = OAuthCredentials(access_token=access_token, expiry=expiry)

    async def get_token(self) -> Optional[OAuthCredentials]:
        return self._creds

    async def refresh(self, refresh_token: str) -> OAuthCredentials:
        raise CredentialError("static token cannot be refreshed")


async def ensure_fresh_token(provider: TokenProvider) -> str:
    """Return a usable access token, refreshing it through the provider when expired."""
    creds = await provider.get_token()
    if creds is None:
        raise CredentialError("no credentials available")
    if creds.expired():
        if not creds.refresh_token:
            raise CredentialError("access token expired and no refresh token is available")
        creds = await provider.refresh(creds.refresh_token)
    if not creds.access_token:
        raise CredentialError("credential provider returned an empty access token")
    return creds.access_token
