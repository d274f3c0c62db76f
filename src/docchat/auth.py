"""Caller authentication for the chat endpoint."""
from __future__ import annotations

import hmac
from typing import Iterable

from fastapi import Request

from .config import AUTH_REQUIRED, CHAT_API_KEYS
from .errors import AuthError


class Authenticator:
    """Bearer API-key check. Runs before any pipeline component is touched."""

    def __init__(self, api_keys: Iterable[str] = CHAT_API_KEYS, required: bool = AUTH_REQUIRED):
        self.api_keys = tuple(key for key in api_keys if key)
        self.required = bool(required)

    def _matches(self, token: str) -> bool:
        # compare_digest only accepts ASCII str; header values may carry latin-1 bytes.
        supplied = token.encode("utf-8")
        return any(hmac.compare_digest(supplied, key.encode("utf-8")) for key in self.api_keys)

    def __call__(self, request: Request) -> str | None:
        if not self.required:
            return None
        header = request.headers.get("authorization", "")
        scheme, _, token = header.partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token or not self._matches(token):
            raise AuthError("Unauthorized")
        return token
