import pytest

from pipegraph import ArtifactStore

from . import steps


@pytest.fixture
def store(tmp_path, monkeypatch):
    store = ArtifactStore(tmp_path / "artifacts")
    monkeypatch.setattr(steps, "STORE", store)
    steps.FETCHES.clear()
    return store
