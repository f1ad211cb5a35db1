"""Access control for the admin API and masking of stored secrets."""
from __future__ import annotations

import os
import secrets
from typing import Iterable, Optional, Tuple

from fastapi import HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .database import MASKED_VALUE

API_TOKENS_ENV = "BIZCARDS_API_TOKENS"


def _split_tokens(raw: Iterable[str]) -> Tuple[str, ...]:
    return tuple(token.strip() for token in raw if token.strip())


class AdminTokenGuard:
    """FastAPI dependency admitting requests that carry one of the admin tokens.

    Used as a router-level dependency, so every ``/api`` route is covered while
    ``/health`` and the uploaded photo files stay public.
    """

    def __init__(self, tokens: Iterable[str]) -> None:
        self._tokens = _split_tokens(tokens)
        if not self._tokens:
            raise ValueError(f"{API_TOKENS_ENV} must contain at least one admin token")
        self._bearer = HTTPBearer(auto_error=False)

    def accepts(self, candidate: str) -> bool:
        # Every token is compared; no early exit.
        matches = [secrets.compare_digest(candidate, token) for token in self._tokens]
        return any(matches)

    async def __call__(self, request: Request) -> None:
        credentials: Optional[HTTPAuthorizationCredentials] = await self._bearer(request)
        if credentials is None or credentials.scheme.lower() != "bearer":
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Admin API token required",
                headers={"WWW-Authenticate": "Bearer"},
            )
        if not self.accepts(credentials.credentials):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin API token not recognised")


def load_tokens_from_env() -> Tuple[str, ...]:
    return _split_tokens(os.getenv(API_TOKENS_ENV, "").split(","))


def guard_from_env() -> Optional[AdminTokenGuard]:
    """Build the guard from ``BIZCARDS_API_TOKENS``; ``None`` leaves the API open."""

    tokens = load_tokens_from_env()
    return AdminTokenGuard(tokens) if tokens else None


def mask_secret(value: Optional[str]) -> Optional[str]:
    return MASKED_VALUE if value else value


__all__ = [
    "AdminTokenGuard",
    "API_TOKENS_ENV",
    "load_tokens_from_env",
    "guard_from_env",
    "mask_secret",
    "MASKED_VALUE",
]
