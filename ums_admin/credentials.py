"""Bearer token providers.

Providers are asked for the token on every request or reconnect; nothing
here caches it, so a token refreshed by another part of the host is picked
up by the next attempt.
"""

from __future__ import annotations

import os
from typing import Protocol


class TokenProvider(Protocol):
    def get_token(self) -> str:
        ...


class StaticTokenProvider:
    def __init__(self, token: str = "") -> None:
        self.token = token

    def get_token(self) -> str:
        return self.token


class EnvTokenProvider:
    """Read the token from an environment variable at call time."""

    def __init__(self, name: str = "UMS_ADMIN_TOKEN", *, fallback: str = "") -> None:
        self.name = name
        self.fallback = fallback

    def get_token(self) -> str:
        value = os.environ.get(self.name, "").strip()
        return value or self.fallback


def auth_headers(provider: TokenProvider | None) -> dict[str, str]:
    if provider is None:
        return {}
    token = provider.get_token()
    if not token:
        return {}
    return {"Authorization": f"Bearer {token}"}
