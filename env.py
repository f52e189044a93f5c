import os

# Settings below can be edited here or overridden through environment variables
OUTPUT_DIR = os.environ.get("OUTPUT_DIR", "recordings")  # Where captures are written
LOG_ROOT = os.environ.get("LOG_ROOT", "logs")  # Program log and per-capture logs
CHECK_INTERVAL = int(os.environ.get("CHECK_INTERVAL", "60"))  # seconds between liveness checks
REMUX_DEFAULT = os.environ.get("REMUX_DEFAULT", "false").lower() in ("1", "true", "yes")
PROBE_TIMEOUT = int(os.environ.get("PROBE_TIMEOUT", "15"))  # seconds per channel page fetch

# Optional Discord notification when a recording starts
DISCORD_WEBHOOK_URL = os.environ.get("DISCORD_WEBHOOK_URL", "")
