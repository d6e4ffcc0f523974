import pytest

from tests.fakes import FakeEmbedder


@pytest.fixture
def fake_embedder():
    return FakeEmbedder()


@pytest.fixture
def project(tmp_path):
    root = tmp_path / "project"
    root.mkdir()
    return root
