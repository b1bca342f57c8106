import os
import tempfile
from pathlib import Path


_DB_FILE = Path(tempfile.mkdtemp(prefix="dispatch-ledger-")) / "test.db"

# Predictable config BEFORE importing the app
os.environ["DB_URL"] = f"sqlite:///{_DB_FILE}"
os.environ["ENV"] = "dev"
os.environ["AUTO_CREATE_SCHEMA"] = "true"
os.environ["ADMIN_TOKEN"] = "test-admin-token"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

from dispatch_ledger.database import engine  # noqa: E402
from dispatch_ledger.models import Base  # noqa: E402
from dispatch_ledger.pricing import fare_settings_store  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_schema():
    """Every test starts from empty tables and a cold fare settings cache."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    fare_settings_store.invalidate()
    yield
    fare_settings_store.invalidate()
