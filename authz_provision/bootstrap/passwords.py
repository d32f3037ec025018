"""Password hashing for bootstrap accounts."""

from __future__ import annotations

from typing import Any, Protocol

import bcrypt


class PasswordHasher(Protocol):
    def hash(self, user: Any, plaintext: str) -> str: ...


class BcryptPasswordHasher:
    """Hashes passwords with bcrypt. The user is accepted for per-user hashers but unused."""

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds

    def hash(self, user: Any, plaintext: str) -> str:
        salt = bcrypt.gensalt(rounds=self.rounds)
        return bcrypt.hashpw(plaintext.encode("utf-8"), salt).decode("utf-8")

    @staticmethod
    def verify(plaintext: str, hashed: str) -> bool:
        return bcrypt.checkpw(plaintext.encode("utf-8"), hashed.encode("utf-8"))
