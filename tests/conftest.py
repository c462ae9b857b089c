import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


@pytest.fixture(autouse=True)
def _no_remote_services(monkeypatch):
    """Keep tests offline: no model keys, no Redis, no analytics service."""
    for name in (
        "OPENAI_API_KEY",
        "REDIS_URL",
        "COMPOSER_CONTEXT_BASE_URL",
        "COMPOSER_MODEL_PROVIDER",
        "COMPOSER_FORCE_MODEL_PROVIDER",
        "COMPOSER_ENABLE_LOCAL_PROVIDER",
    ):
        monkeypatch.delenv(name, raising=False)
