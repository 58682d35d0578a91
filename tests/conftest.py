import sys
from pathlib import Path

import pytest

# Project root and the fixtures folder on the import path
ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))
sys.path.insert(0, str(Path(__file__).parent / "fixtures"))

DECLARATIONS = Path(__file__).parent / "fixtures" / "declarations"


@pytest.fixture
def declarations_dir() -> Path:
    return DECLARATIONS


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    monkeypatch.delenv("RESGRAPH_MAX_WORKERS", raising=False)
    monkeypatch.delenv("RESGRAPH_STATE_FILE", raising=False)
