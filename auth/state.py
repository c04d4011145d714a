"""
auth/state.py -- One-time OAuth state tokens.

A state token binds the redirect to the provider and the provider's callback
back to server-chosen metadata (StateData): which platform started the flow,
whether it is a login or a link, who is linking, and which provider the flow
was started for. It is the CSRF defence for the authorization code flow.

Invariants:
  - Tokens are secrets.token_urlsafe(32): 256 bits from the OS CSPRNG.
  - consume() looks up and deletes under the same lock, so a token can be
    redeemed at most once even under concurrent callbacks.
  - Expired entries are "not found" even before sweep() removes them.
  - The only negative signal is None. Expired, already-consumed and forged
    tokens are indistinguishable to the caller.

Usage:
    store = StateStore(ttl_seconds=600)
    token = store.generate(StateData(platform="web", mode="login"))
    data = store.consume(token)   # StateData on first call
    store.consume(token)          # None afterwards
    store.sweep()                 # call periodically to bound memory

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import secrets
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from auth.models import StateData


@dataclass(frozen=True)
class _Entry:
    data: StateData
    expires_at: float


class StateStore:
    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, _Entry] = {}

    def generate(self, data: StateData) -> str:
        """Store data under a fresh random token and return the token."""
        token = secrets.token_urlsafe(32)
        entry = _Entry(data=data, expires_at=self._clock() + self.ttl)
        with self._lock:
            self._entries[token] = entry
        return token

    def consume(self, token: str) -> StateData | None:
        """Redeem a token. Returns its data exactly once, None otherwise."""
        if not token:
            return None
        with self._lock:
            entry = self._entries.pop(token, None)
        if entry is None or self._clock() > entry.expires_at:
            return None
        return entry.data

    def sweep(self) -> int:
        """Delete expired, unconsumed entries. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [token for token, entry in self._entries.items() if now > entry.expires_at]
            for token in expired:
                del self._entries[token]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
