import os
import sys

import pytest

# Ensure project root is on sys.path for `import irrigation`
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
PROJECT_ROOT = os.path.dirname(PROJECT_ROOT)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from irrigation.config import settings  # noqa: E402
from irrigation.database import init_db  # noqa: E402

ZONES = ["zone_1", "zone_2", "zone_3", "zone_4"]


@pytest.fixture
def db(tmp_path, monkeypatch):
    """Point the store at a throwaway SQLite file with the four default zones."""
    monkeypatch.setattr(settings, "database_path", tmp_path / "test.sqlite3")
    monkeypatch.setattr(settings, "zone_ids", list(ZONES))
    monkeypatch.setattr(
        settings,
        "zone_name_map",
        {zone: f"Zone {zone.rsplit('_', 1)[-1]}" for zone in ZONES},
    )
    init_db()
    return settings.database_path
