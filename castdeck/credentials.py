"""Operator password storage and verification."""

from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import sys

import bcrypt

from .config import get_cfg, state_path
from .json_store import JsonDocument, PersistenceError

DEFAULT_BCRYPT_ROUNDS = 10
PASSWORD_HASH_KEY = "password_hash"
PLAINTEXT_PASSWORD_KEY = "password"
# bcrypt only looks at this many bytes of input
BCRYPT_MAX_PASSWORD_BYTES = 72


class AuthError(Exception):
    """Raised when submitted credentials are rejected."""


def _password_bytes(password: str) -> bytes:
    return password.encode("utf-8")[:BCRYPT_MAX_PASSWORD_BYTES]


class CredentialStore:
    """Holds the bcrypt hash of the operator password.

    The hash lives in the device config document next to the streaming
    settings; only the ``password_hash`` key is touched here.
    """

    def __init__(
        self,
        document: JsonDocument,
        *,
        rounds: int = DEFAULT_BCRYPT_ROUNDS,
        logger: logging.Logger | None = None,
    ) -> None:
        self._document = document
        self._rounds = rounds
        self._logger = logger or logging.getLogger("castdeck.auth")

    @property
    def has_password(self) -> bool:
        return bool(self._document.get(PASSWORD_HASH_KEY))

    def set_password(self, password: str) -> None:
        if not isinstance(password, str) or not password:
            raise AuthError("password must be a non-empty string")
        hashed = bcrypt.hashpw(_password_bytes(password), bcrypt.gensalt(self._rounds))
        self._document.update(
            {PASSWORD_HASH_KEY: hashed.decode("utf-8")},
            remove=(PLAINTEXT_PASSWORD_KEY,),
        )
        self._logger.info("Operator password updated")

    def migrate_plaintext(self) -> bool:
        """Hash a bootstrap plaintext ``password`` left in the config document."""

        plaintext = self._document.get(PLAINTEXT_PASSWORD_KEY)
        if not plaintext:
            return False
        self.set_password(str(plaintext))
        self._logger.info("Replaced plaintext bootstrap password with a bcrypt hash")
        return True

    def check(self, candidate: str) -> None:
        stored = self._document.get(PASSWORD_HASH_KEY)
        if not isinstance(candidate, str) or not stored:
            raise AuthError("Invalid password")
        try:
            matched = bcrypt.checkpw(_password_bytes(candidate), str(stored).encode("utf-8"))
        except ValueError:
            self._logger.error("Stored password hash is malformed")
            matched = False
        if not matched:
            raise AuthError("Invalid password")

    async def verify(self, candidate: str) -> bool:
        try:
            await asyncio.to_thread(self.check, candidate)
        except AuthError:
            return False
        return True


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Set the castdeck operator password.")
    parser.add_argument(
        "--password-stdin",
        action="store_true",
        help="Read the new password from stdin instead of prompting.",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    cfg = get_cfg()
    document = JsonDocument.load(state_path(cfg, "config_file"))
    rounds = int(cfg.get("auth", {}).get("bcrypt_rounds") or DEFAULT_BCRYPT_ROUNDS)

    if args.password_stdin:
        password = sys.stdin.readline().rstrip("\n")
    else:
        password = getpass.getpass("New password: ")
        if getpass.getpass("Repeat password: ") != password:
            print("Passwords do not match", file=sys.stderr)
            return 1

    try:
        CredentialStore(document, rounds=rounds).set_password(password)
    except (AuthError, PersistenceError) as exc:
        print(str(exc), file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
