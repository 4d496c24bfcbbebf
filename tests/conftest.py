from pathlib import Path

import pytest

from memkeep.memory.store import MemoryStore


@pytest.fixture(autouse=True)
def _isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MEMKEEP_HOME", str(tmp_path / "home"))


@pytest.fixture
def store(tmp_path: Path):
    memory_store = MemoryStore(tmp_path / "memories.db")
    yield memory_store
    memory_store.close()
