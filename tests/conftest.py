from __future__ import annotations

from pathlib import Path

import pytest

from mdtick.documents import DocumentWorkspace
from mdtick.server import CheckboxServer
from mdtick.session import CheckboxSession

SHOPPING_LIST = "# Shopping\n\n- [ ] buy milk\n- [x] bread\n- plain item\n"


@pytest.fixture
def session() -> CheckboxSession:
    return CheckboxSession(token="0123456789abcdef0123456789abcdef")


@pytest.fixture
def workspace() -> DocumentWorkspace:
    return DocumentWorkspace()


@pytest.fixture
def write_markdown(tmp_path: Path):
    def _write(name: str, text: str = SHOPPING_LIST) -> Path:
        path = tmp_path / name
        path.write_bytes(text.encode("utf-8"))
        return path

    return _write


@pytest.fixture
def server(session: CheckboxSession, workspace: DocumentWorkspace):
    endpoint = CheckboxServer(session, workspace)
    endpoint.start()
    try:
        yield endpoint
    finally:
        endpoint.dispose()
