"""
Pytest config.

Local imports like `import analyst` and `import main` rely on the repo root
being on sys.path. When invoking a global `pytest` entrypoint without an
editable install that doesn't happen reliably during collection, so we pin it.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, List, Tuple

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()

_ENV_PREFIXES = ("CHAT_", "ANALYTICS_", "LLM_")


@pytest.fixture(autouse=True)
def _isolate_env_and_server(monkeypatch: pytest.MonkeyPatch):
    """
    Config is read from env; make every test start from the defaults and with no
    cached session store in the HTTP app.
    """
    import os

    for k in list(os.environ):
        if k.startswith(_ENV_PREFIXES):
            monkeypatch.delenv(k, raising=False)

    from analyst.api.server import set_session_store

    set_session_store(None)
    yield
    set_session_store(None)


class ScriptedBackend:
    """
    Model backend double: each `open()` replays the next scripted step.

    A step is a list of stream events; an exception instance in the list is
    raised at that point of the stream.
    """

    def __init__(self, script: List[List[Any]]) -> None:
        self.script = list(script)
        self.requests: List[Tuple[str, Any]] = []
        self.commits = 0
        self.abandons = 0
        self.forgotten: List[str] = []

    async def open(self, handle: str, message: Any):
        self.requests.append((handle, message))
        step = self.script.pop(0) if self.script else []
        for item in step:
            if isinstance(item, BaseException):
                raise item
            yield item

    def commit(self, handle: str) -> None:
        self.commits += 1

    def abandon(self, handle: str) -> None:
        self.abandons += 1

    def forget(self, handle: str) -> None:
        self.forgotten.append(handle)


@pytest.fixture
def scripted_backend():
    return ScriptedBackend
