"""Actor identity providers.

An actor provider is any zero-argument callable returning the current
user id, or None when nobody is signed in.
"""

from __future__ import annotations

import os
from typing import Callable, TypeAlias

ActorProvider: TypeAlias = Callable[[], "str | None"]


class EnvIdentity:
    """Read the actor id from an environment variable on every call."""

    def __init__(self, var: str = "RIDECONNECT_USER") -> None:
        self.var = var

    def __call__(self) -> str | None:
        value = os.environ.get(self.var, "").strip()
        return value or None


class StaticIdentity:
    """Fixed actor id; ``None`` models a signed-out rider."""

    def __init__(self, user_id: str | None) -> None:
        self.user_id = user_id

    def __call__(self) -> str | None:
        return self.user_id

    def sign_out(self) -> None:
        self.user_id = None
