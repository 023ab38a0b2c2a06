import os
import sys

import pytest

# Ensure project root is on sys.path so top-level packages (e.g., engine, release) are importable
PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)


def pytest_sessionstart(session):
    os.environ["CONVOY_TEST_MODE"] = "1"


@pytest.fixture
def settings(tmp_path):
    from config.settings import Settings

    return Settings(
        STATE_DIR=tmp_path / "runs",
        ARTIFACTS_DIR=tmp_path / "artifacts",
        MAX_PARALLELISM=4,
        RESOURCE_UNITS=16,
        DEFAULT_TASK_TIMEOUT=30,
        CANCEL_GRACE_SECONDS=2,
        ARTIFACT_BUCKET=None,
        NOTIFICATION_WEBHOOK_URL=None,
    )
