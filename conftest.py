import os
import shutil
from pathlib import Path

import pytest

TEST_DATA_DIR = Path("data-tests")

# character_tools.app builds a default app at import time
os.environ.setdefault("DATA_DIR", str(TEST_DATA_DIR))


@pytest.fixture(autouse=True)
def clean_test_data():
    """Wipe data-tests/ before every test."""
    if TEST_DATA_DIR.exists():
        shutil.rmtree(TEST_DATA_DIR)
    yield
    # leave data-tests around after tests for inspection; CI can ignore it
