"""Configuration for the document generation worker."""
import os
import tempfile
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# Base paths
BASE_DIR = Path(__file__).resolve().parent.parent
LOGS_DIR = Path(os.getenv("LOGS_DIR", str(BASE_DIR / "logs")))
LOGS_DIR.mkdir(parents=True, exist_ok=True)

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
BETTERSTACK_SOURCE_TOKEN = os.getenv("BETTERSTACK_SOURCE_TOKEN")
BETTERSTACK_INGEST_HOST = os.getenv("BETTERSTACK_INGEST_HOST")

# Record store
DATABASE_URL = os.getenv("DATABASE_URL")

# Record system file API (template downloads)
RECORD_API_BASE_URL = os.getenv("RECORD_API_BASE_URL")
RECORD_API_TOKEN = os.getenv("RECORD_API_TOKEN")

# Generated document storage
OUTPUT_STORAGE_PATH = os.getenv("OUTPUT_STORAGE_PATH")

# Poller settings
POLL_INTERVAL = int(os.getenv("POLL_INTERVAL", "15"))  # seconds between polls while busy
POLL_IDLE_INTERVAL = int(os.getenv("POLL_IDLE_INTERVAL", "60"))  # seconds between polls while idle
BATCH_SIZE = int(os.getenv("BATCH_SIZE", "20"))
LOCK_TTL = int(os.getenv("LOCK_TTL", "120"))  # seconds a claim is honoured
MAX_ATTEMPTS = int(os.getenv("MAX_ATTEMPTS", "3"))
READINESS_FAILURE_THRESHOLD = int(os.getenv("READINESS_FAILURE_THRESHOLD", "3"))

# Conversion settings
CONVERSION_TIMEOUT = float(os.getenv("CONVERSION_TIMEOUT", "60"))
CONVERSION_WORKDIR = os.getenv("CONVERSION_WORKDIR", tempfile.gettempdir())
CONVERSION_MAX_CONCURRENT = int(os.getenv("CONVERSION_MAX_CONCURRENT", "8"))
SOFFICE_PATH = os.getenv("SOFFICE_PATH", "soffice")

# Template cache
TEMPLATE_CACHE_MAX_BYTES = int(os.getenv("TEMPLATE_CACHE_MAX_BYTES", str(500 * 1024 * 1024)))


def validate_config():
    """Validate required configuration."""
    errors = []

    if not DATABASE_URL:
        errors.append("DATABASE_URL is required")

    if not RECORD_API_BASE_URL:
        errors.append("RECORD_API_BASE_URL is required")

    if not OUTPUT_STORAGE_PATH:
        errors.append("OUTPUT_STORAGE_PATH is required")
    else:
        storage_path = Path(OUTPUT_STORAGE_PATH)
        if not storage_path.is_absolute():
            errors.append(f"OUTPUT_STORAGE_PATH must be absolute: {OUTPUT_STORAGE_PATH}")
        else:
            try:
                storage_path.mkdir(parents=True, exist_ok=True)
            except Exception as e:
                errors.append(f"Cannot create OUTPUT_STORAGE_PATH: {e}")

    if POLL_INTERVAL <= 0 or POLL_IDLE_INTERVAL <= 0:
        errors.append("POLL_INTERVAL and POLL_IDLE_INTERVAL must be positive")

    if BATCH_SIZE <= 0:
        errors.append(f"BATCH_SIZE must be positive: {BATCH_SIZE}")

    if LOCK_TTL <= 0:
        errors.append(f"LOCK_TTL must be positive: {LOCK_TTL}")

    if CONVERSION_MAX_CONCURRENT <= 0:
        errors.append(f"CONVERSION_MAX_CONCURRENT must be positive: {CONVERSION_MAX_CONCURRENT}")

    if errors:
        raise ValueError("Config errors:\n  " + "\n  ".join(errors))
