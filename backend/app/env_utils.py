"""Secret lookup for the Supabase service key and admin token.

Both may be mounted as files (``SUPABASE_SERVICE_ROLE_KEY_FILE``) when the
service runs under a secrets manager.
"""

from __future__ import annotations

from pathlib import Path
import logging
import os

logger = logging.getLogger("sugar.config")


def get_env(name: str, default: str = "") -> str:
    """Return ``$name``, falling back to the contents of ``$name_FILE``."""
    value = (os.getenv(name) or "").strip()
    if value:
        return value

    file_path = (os.getenv(f"{name}_FILE") or "").strip()
    if not file_path:
        return default

    try:
        secret = Path(file_path).read_text(encoding="utf-8").strip()
    except OSError:
        logger.warning("Could not read secret file for %s", name)
        return default
    return secret or default
