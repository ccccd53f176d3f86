"""Request identifier generation for keyrelay.

Each inbound request gets a 26-character ULID (Crockford Base32, time-ordered).
The same value is bound to the structured log context and returned to the
client in the ``X-KeyRelay-Request-ID`` response header.

Uses the ``python-ulid`` library; ULIDs are never hand-rolled here.
"""

from __future__ import annotations

from ulid import ULID


def generate_request_id() -> str:
    """Generate a new request id as a 26-character uppercase ULID string.

    Example::

        request_id = generate_request_id()
        # "01KJ0JRVHYA7KX32VPN5ZSCTMV"
        assert len(request_id) == 26
    """
    return str(ULID())
