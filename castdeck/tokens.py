"""Session tokens handed to operators after a successful password login."""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass

from .json_store import JsonDocument

TOKEN_BYTES = 32


@dataclass(frozen=True, slots=True)
class Token:
    value: str
    persistent: bool


class TokenRegistry:
    """Ephemeral (memory-only) and persistent (disk-backed) token sets.

    ``issue`` and ``revoke`` never suspend: callers on the event loop can rely
    on a verified login turning into a registered token in one step.
    """

    def __init__(
        self,
        document: JsonDocument,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self._document = document
        self._logger = logger or logging.getLogger("castdeck.auth")
        self._ephemeral: set[str] = set()
        self._persistent: set[str] = {
            key for key in document.keys() if document.get(key)
        }

    def __len__(self) -> int:
        return len(self._ephemeral) + len(self._persistent)

    def _generate(self) -> str:
        while True:
            candidate = secrets.token_urlsafe(TOKEN_BYTES)
            if candidate not in self._ephemeral and candidate not in self._persistent:
                return candidate

    def issue(self, persistent: bool = False) -> Token:
        value = self._generate()
        if persistent:
            self._document.replace(self._persistent_payload(self._persistent | {value}))
            self._persistent.add(value)
        else:
            self._ephemeral.add(value)
        self._logger.info(
            "Issued %s token (%d active)",
            "persistent" if persistent else "ephemeral",
            len(self),
        )
        return Token(value, bool(persistent))

    def validate(self, token: str) -> bool:
        if not isinstance(token, str) or not token:
            return False
        return token in self._ephemeral or token in self._persistent

    def revoke(self, token: str) -> bool:
        """Forget ``token``; returns False when it was not registered.

        Persistent tokens are removed from disk before memory so a failed
        write (``PersistenceError``) leaves the token registered everywhere.
        """

        if token in self._ephemeral:
            self._ephemeral.discard(token)
            self._logger.info("Revoked ephemeral token")
            return True
        if token in self._persistent:
            remaining = self._persistent - {token}
            self._document.replace(self._persistent_payload(remaining))
            self._persistent = remaining
            self._logger.info("Revoked persistent token")
            return True
        return False

    @staticmethod
    def _persistent_payload(values: set[str]) -> dict[str, bool]:
        return {value: True for value in sorted(values)}


__all__ = ["Token", "TokenRegistry", "TOKEN_BYTES"]
