import sys
from pathlib import Path


# Ensure shipyard-api is on sys.path for tests that import modules directly.
SHIPYARD_API_DIR = Path(__file__).resolve().parents[1]
if str(SHIPYARD_API_DIR) not in sys.path:
    sys.path.insert(0, str(SHIPYARD_API_DIR))
