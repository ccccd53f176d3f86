"""Upstream key pool for keyrelay.

Holds the upstream credentials and hands one out per request. Selection is
uniform random with replacement: every call is independent, there is no
session affinity and no exclusion of keys that recently failed or were rate
limited. Spreading requests evenly across accounts needs no per-key state, so
the pool is never mutated after construction and is safe to share across
concurrent requests without locking.
"""

from __future__ import annotations

import random
from typing import Iterable, Optional

from keyrelay.errors import EmptyPool
from keyrelay.utils.logger import get_logger, mask_secret

logger = get_logger(__name__)


def split_keys(raw: Optional[str]) -> list[str]:
    """Split a comma-separated credential string.

    Entries are trimmed and empty entries dropped; order is preserved.

    Example::

        split_keys(" a, b ,,c ")   # ["a", "b", "c"]
    """
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]


class KeyPool:
    """Immutable pool of upstream credentials.

    Args:
        keys: Credentials in configured order. Duplicates are kept (a key
              listed twice is simply selected twice as often).
        rng:  Random source; tests pass a seeded ``random.Random``.
    """

    def __init__(
        self,
        keys: Iterable[str],
        rng: Optional[random.Random] = None,
    ) -> None:
        self._keys: tuple[str, ...] = tuple(keys)
        self._rng = rng or random.SystemRandom()

    @classmethod
    def load(cls, raw: Optional[str], rng: Optional[random.Random] = None) -> "KeyPool":
        """Build a pool from a comma-separated string (see :func:`split_keys`)."""
        return cls(split_keys(raw), rng=rng)

    @property
    def keys(self) -> tuple[str, ...]:
        return self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def __bool__(self) -> bool:
        return bool(self._keys)

    def __repr__(self) -> str:
        # Never render the keys themselves.
        return f"KeyPool(size={len(self._keys)})"

    def select(self) -> str:
        """Pick one key uniformly at random.

        Raises:
            EmptyPool: The pool has no keys. Callers surface this as a
                       configuration failure and do not retry.
        """
        if not self._keys:
            raise EmptyPool()
        index = self._rng.randrange(len(self._keys))
        key = self._keys[index]
        logger.debug(
            "upstream_key_selected",
            slot=index + 1,
            pool_size=len(self._keys),
            key_length=len(key),
            key_prefix=mask_secret(key),
        )
        return key

    def describe(self) -> list[str]:
        """Masked rendering of every key, for the startup configuration report."""
        return [mask_secret(k) for k in self._keys]
