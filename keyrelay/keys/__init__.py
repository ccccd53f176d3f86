"""Upstream credential pool.

Public API:
  - KeyPool      — immutable set of upstream keys with uniform random selection
  - split_keys() — parse a comma-separated credential string
"""

from __future__ import annotations

from keyrelay.keys.pool import KeyPool, split_keys

__all__ = ["KeyPool", "split_keys"]
