"""Environment configuration."""
import os

LOG_LEVEL = os.environ.get("SOILDOSE_LOG_LEVEL", "INFO")

# JSON file backing the formula/product/variable store; unset keeps it in memory.
STORE_PATH = os.environ.get("SOILDOSE_STORE_PATH") or None

SEED_PATH = os.environ.get("SOILDOSE_SEED_PATH") or os.path.join(
    os.path.dirname(__file__), "data", "seed_defaults.json"
)

AUTO_SEED = os.environ.get("SOILDOSE_AUTO_SEED", "true").strip().lower() in ("1", "true", "yes", "on")
