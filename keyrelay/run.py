"""Programmatic uvicorn entry point for keyrelay.

Reads host and port from the loaded config (127.0.0.1:8787 by default) and
starts uvicorn with bounded concurrency:

  --limit-concurrency 100  Max 100 concurrent connections; HTTP 503 when exceeded
  --backlog 50             OS connection queue depth
  --timeout-keep-alive 5   Idle keep-alive connections are closed after 5s

Usage:
    python -m keyrelay.run     # reads .keyrelay/config.yaml or KEYRELAY_* env vars
    keyrelay                   # via pyproject.toml [project.scripts]
"""

from __future__ import annotations

import uvicorn

from keyrelay.config import load_config
from keyrelay.constants import POOL_MAX_CONNECTIONS

# Matches the outbound connection pool so every accepted request can get an
# upstream connection.
UVICORN_LIMIT_CONCURRENCY: int = POOL_MAX_CONNECTIONS

UVICORN_BACKLOG: int = 50

UVICORN_TIMEOUT_KEEP_ALIVE: int = 5


def main() -> None:
    """Start the keyrelay server.

    Raises:
        SystemExit: Propagated from load_config() on config parse errors.
    """
    config = load_config()

    uvicorn.run(
        "keyrelay.main:app",
        host=config.proxy.host,
        port=config.proxy.port,
        limit_concurrency=UVICORN_LIMIT_CONCURRENCY,
        backlog=UVICORN_BACKLOG,
        timeout_keep_alive=UVICORN_TIMEOUT_KEEP_ALIVE,
    )


if __name__ == "__main__":
    main()
