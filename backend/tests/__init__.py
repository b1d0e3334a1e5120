"""Test configuration."""

from pathlib import Path
import os

os.environ["ENVIRONMENT"] = "testing"

# Guardrail: never run tests against the development DB.
db_url = os.environ.get("DATABASE_URL", "")
if not db_url or "backend/vidscribe.db" in db_url.replace("\\", "/"):
    repo_root = Path(__file__).resolve().parents[2]
    test_root = repo_root / "scratch" / "tests"
    test_root.mkdir(parents=True, exist_ok=True)
    test_db = test_root / "vidscribe.test.db"
    os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{test_db.as_posix()}"
    os.environ.setdefault("MEDIA_STORAGE_PATH", str(test_root / "media"))

# Upstream retries back off instantly under test.
os.environ.setdefault("DOWNLOAD_RETRY_BASE_DELAY_SECONDS", "0")
os.environ.setdefault("STT_RETRY_BASE_DELAY_SECONDS", "0")
os.environ.setdefault("INTERNAL_API_KEY", "test-internal-key")
