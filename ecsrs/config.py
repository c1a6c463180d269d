"""Runtime settings read from the environment."""
import os

TRACKING_CODE_PREFIX = os.getenv("TRACKING_CODE_PREFIX", "ECSRS").strip().upper()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Comma separated; "*" allows any origin
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "*").split(",")
    if origin.strip()
]

# Minimum number of reports in a grid cell before it counts as a hotspot
HOTSPOT_MIN_REPORTS = int(os.getenv("HOTSPOT_MIN_REPORTS", "3"))
