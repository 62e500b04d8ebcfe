import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.core.config import get_settings

# Run against a local SQLite file rather than Postgres on localhost. The
# scheduler reads DATABASE_URL like any other deployment would.
test_db_path = ROOT / "test.db"
os.environ.setdefault("DATABASE_URL", f"sqlite:///{test_db_path}")
os.environ.setdefault("AUTH_ENABLED", "true")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")

# Clear any cached settings so subsequent imports pick up the test database
# configuration established above.
get_settings.cache_clear()
