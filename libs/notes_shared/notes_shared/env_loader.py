import logging
import os
from functools import lru_cache


logger = logging.getLogger("notes_shared.env")


@lru_cache(maxsize=1)
def ensure_loaded() -> None:
    """Load the central env file once, if one exists.

    Priority:
    1) NOTES_ENV_FILE path
    2) /etc/notes/notes.env
    3) .env (relative to CWD)
    Does not override environment variables already set.
    """
    candidates = [
        os.getenv("NOTES_ENV_FILE", ""),
        "/etc/notes/notes.env",
        ".env",
    ]
    for p in candidates:
        if p and os.path.isfile(p):
            _load_env_file(p)
            return


def _load_env_file(path: str) -> None:
    try:
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                k, v = line.split("=", 1)
                k = k.strip()
                if k.startswith("export "):
                    k = k[len("export "):].strip()
                v = v.strip().strip('"').strip("'")
                if k and k not in os.environ:
                    os.environ[k] = v
    except OSError as exc:
        logger.warning("Could not read env file %s: %s", path, exc)
