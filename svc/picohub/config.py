from __future__ import annotations
import os

# Presence: seconds of silence before a device drops out of the live list
LIVE_TTL_SECONDS = float(os.getenv("PICO_LIVE_TTL_SECONDS", "30"))

# How often the background sweep evicts stale presence entries
SWEEP_INTERVAL_SECONDS = float(os.getenv("PICO_SWEEP_INTERVAL_SECONDS", "5"))

# Number of recent samples kept in RAM for the dashboard chart
LIVE_BUFFER_MAX = int(os.getenv("PICO_LIVE_BUFFER_MAX", "20"))

HOST = os.getenv("PICO_HOST", "0.0.0.0")
PORT = int(os.getenv("PICO_PORT", "3000"))

# Durable storage
# Get the svc directory (parent of the package directory where this file lives)
_SVC_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
DATA_DIR = os.getenv("PICO_DATA_DIR", "data")
DB_NAME = os.getenv("PICO_DB_NAME", "iot")
# PICO_DB_FILE wins over DATA_DIR/DB_NAME; setting it to "" is a startup error
DB_FILE = os.getenv("PICO_DB_FILE", os.path.join(_SVC_DIR, DATA_DIR, f"{DB_NAME}.db"))
DB_TIMEOUT_SECONDS = float(os.getenv("PICO_DB_TIMEOUT_SECONDS", "10"))

HISTORY_DEFAULT_LIMIT = 50
HISTORY_MAX_LIMIT = int(os.getenv("PICO_HISTORY_MAX_LIMIT", "500"))

# The cooling node registered at startup; empty string skips registration
DEFAULT_DEVICE_ID = os.getenv("PICO_DEFAULT_DEVICE_ID", "pico-temp-001")

CORS_ORIGINS = [o.strip() for o in os.getenv("PICO_CORS_ORIGINS", "*").split(",") if o.strip()]
