from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]


@pytest.fixture(autouse=True)
def _repo_root_cwd(monkeypatch):
    # Tests refer to examples/ relative to the repository root.
    monkeypatch.chdir(REPO_ROOT)
