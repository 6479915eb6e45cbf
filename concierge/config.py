# concierge/config.py
import os

from dotenv import load_dotenv

# Load .env file if present
load_dotenv()

LOG_LEVEL = os.getenv("CONCIERGE_LOG_LEVEL", "INFO").upper()

# Local persistence: one JSON document per storage partition.
STORAGE_DIR = os.getenv("CONCIERGE_STORAGE_DIR", ".concierge_data")
BASE_STORAGE_KEY = os.getenv("CONCIERGE_STORAGE_KEY", "zeniva_trips_store_v1")

# Remote sync. An empty URL disables the push/pull bridge entirely.
SYNC_URL = os.getenv("CONCIERGE_SYNC_URL", "http://127.0.0.1:8000/api/user-data")
SYNC_DEBOUNCE_SECONDS = int(os.getenv("CONCIERGE_SYNC_DEBOUNCE_MS", "800")) / 1000.0
SYNC_TIMEOUT = float(os.getenv("CONCIERGE_SYNC_TIMEOUT", "10"))

PARTNER_API_URL = os.getenv(
    "CONCIERGE_PARTNER_API_URL", "http://127.0.0.1:8000/api/partners/hotelbeds"
)
PARTNER_TIMEOUT = float(os.getenv("CONCIERGE_PARTNER_TIMEOUT", "10"))

raw_origins = os.getenv("CONCIERGE_ALLOWED_ORIGINS") or "*"
ALLOWED_ORIGINS = [origin.strip() for origin in raw_origins.split(",") if origin.strip()] or ["*"]
