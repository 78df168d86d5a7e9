"""Application configuration loaded from environment variables."""

import os
import tempfile
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Paths
DATA_DIR = Path(os.getenv("DATA_DIR", Path(__file__).parent.parent / "data"))
WORK_DIR = Path(os.getenv("WORK_DIR", Path(tempfile.gettempdir()) / "testweaver"))
ARTIFACTS_DIR = Path(os.getenv("ARTIFACTS_DIR", DATA_DIR / "artifacts"))
LOG_DIR = DATA_DIR / "logs"

# Protocol server
PROTOCOL_HOST = os.getenv("PROTOCOL_HOST", "127.0.0.1")
PROTOCOL_PORT = int(os.getenv("PROTOCOL_PORT", "8080"))
PROTOCOL_PATH = os.getenv("PROTOCOL_PATH", "/mcp")
PROTOCOL_URL = f"ws://{PROTOCOL_HOST}:{PROTOCOL_PORT}{PROTOCOL_PATH}"
HEALTH_URL = f"http://{PROTOCOL_HOST}:{PROTOCOL_PORT}/health"

# Scheduling
MAX_CONCURRENT_SESSIONS = int(os.getenv("MAX_CONCURRENT_SESSIONS", "5"))
AVERAGE_SESSION_MS = 30000  # seed for the wait-time estimate
SESSION_RETENTION_SECONDS = int(os.getenv("SESSION_RETENTION_SECONDS", "1800"))
CLEANUP_INTERVAL_SECONDS = int(os.getenv("CLEANUP_INTERVAL_SECONDS", "300"))
BATCH_DELAY_MS = 500

# Execution
DEFAULT_TIMEOUT_MS = int(os.getenv("DEFAULT_TIMEOUT_MS", "30000"))
TIMEOUT_GRACE_MS = int(os.getenv("TIMEOUT_GRACE_MS", "10000"))
EXPECT_TIMEOUT_MS = 5000
KEEP_WORKDIRS = os.getenv("KEEP_WORKDIRS", "false").lower() == "true"

# Live browser facade
BROWSER_HEADLESS = os.getenv("BROWSER_HEADLESS", "true").lower() == "true"
BROWSER_TIMEOUT = int(os.getenv("BROWSER_TIMEOUT", "30000"))


def ensure_dirs():
    """Create required data directories if they don't exist."""
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    WORK_DIR.mkdir(parents=True, exist_ok=True)
    ARTIFACTS_DIR.mkdir(parents=True, exist_ok=True)
    LOG_DIR.mkdir(parents=True, exist_ok=True)
