"""Configuration management."""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
# Try to load from standard locations
env_paths = [
    Path("/etc/livetrack/.env"),  # Production location
    Path(".env"),  # Current directory
    Path(__file__).parent.parent.parent / ".env",  # Project root
]
for env_path in env_paths:
    if env_path.exists():
        load_dotenv(env_path)
        break
else:
    # Fallback: try default load_dotenv() behavior
    load_dotenv()

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Smoothing filter (scalar Kalman, applied per axis)
PROCESS_NOISE = float(os.getenv("SMOOTHER_PROCESS_NOISE", "0.001"))
MEASUREMENT_NOISE = float(os.getenv("SMOOTHER_MEASUREMENT_NOISE", "0.01"))
INITIAL_ESTIMATE_ERROR = 1.0
MAX_SPEED_KMH = 120.0  # Anything faster is a filter blow-up from a bad fix
FALLBACK_ELAPSED_MS = 5000  # Used when a fix arrives without a timestamp

# Broadcast throttling (milliseconds)
BROADCAST_MIN_INTERVAL_MS = int(os.getenv("BROADCAST_MIN_INTERVAL_MS", "3000"))

# Ingest rate limiting per courier (token bucket)
INGEST_BUCKET_CAPACITY = int(os.getenv("INGEST_BUCKET_CAPACITY", "5"))
INGEST_REFILL_PER_SECOND = float(os.getenv("INGEST_REFILL_PER_SECOND", "1.0"))

# Stale courier eviction (seconds). 0 disables automatic eviction.
COURIER_STALE_TTL_SECONDS = int(os.getenv("COURIER_STALE_TTL_SECONDS", "0"))
STALE_SWEEP_INTERVAL = int(os.getenv("STALE_SWEEP_INTERVAL", "30"))

# Routing oracle (OSRM HTTP API)
OSRM_BASE_URL = os.getenv("OSRM_BASE_URL", "https://router.project-osrm.org").rstrip("/")
OSRM_PROFILE = os.getenv("OSRM_PROFILE", "driving")
OSRM_TIMEOUT = float(os.getenv("OSRM_TIMEOUT", "10"))  # seconds
OSRM_USER_AGENT = "livetrack/0.1"

# Public OSRM instances reject requests above this many waypoints
ROUTE_MAX_WAYPOINTS_PER_REQUEST = 25

# Cache key precision in decimal places (~1.1m at 5)
ROUTE_CACHE_PRECISION = 5

# Resolved route geometries kept in memory. 0 keeps everything.
ROUTE_CACHE_MAX_ENTRIES = int(os.getenv("ROUTE_CACHE_MAX_ENTRIES", "0"))

# Threads resolving route geometries concurrently (different clusters)
ROUTE_WORKERS = int(os.getenv("ROUTE_WORKERS", "4"))

# Marker animation between broadcasts
MARKER_INTERPOLATION_STEPS = 10
MARKER_INTERPOLATION_STEP_MS = 100

# Project information
PROJECT_NAME = "livetrack"
