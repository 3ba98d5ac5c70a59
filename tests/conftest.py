from pathlib import Path

import pytest


@pytest.fixture
def sandbox_home(tmp_path, monkeypatch) -> Path:
    monkeypatch.setattr(Path, "home", classmethod(lambda cls: tmp_path))
    return tmp_path
