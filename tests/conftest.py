"""Root test configuration for keyrelay.

Every KEYRELAY_* variable is removed and the working directory moved to a temp
dir for each test, so neither the developer's environment nor a local
``.keyrelay/config.yaml`` leaks into config loading.
"""

import os

import pytest

from keyrelay.utils.logger import clear_request_id


@pytest.fixture(autouse=True)
def isolate_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    for name in list(os.environ):
        if name.startswith("KEYRELAY_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.chdir(tmp_path)


@pytest.fixture(autouse=True)
def reset_request_id() -> None:
    """Request ids are bound in a contextvar; never let one bleed into the next test."""
    clear_request_id()
    yield
    clear_request_id()
