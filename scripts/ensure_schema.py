import sys
from pathlib import Path

# Allow running as `python scripts/ensure_schema.py` from repo root.
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from chitchat.db import create_store_engine  # noqa: E402
from chitchat.db_init import ensure_current  # noqa: E402
from chitchat.config import settings  # noqa: E402


if __name__ == "__main__":
    path = settings.database_file
    path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_store_engine(path)
    try:
        print(ensure_current(engine))
    finally:
        engine.dispose()
