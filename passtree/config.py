"""
Configuration and fixed identifiers.

Constants that are part of the on-disk format live at module level.
Environment-level settings (where store files live, which schema script to
run at creation, log level) are loaded from environment variables or a .env
file in the working directory:

    DB_DIR=/home/alice/.passtree/
    DB_SUFFIX=.db
    DB_CREATION_SCRIPT=/path/to/schema.sql
    LOG_LEVEL=INFO

Import the ready-made instance anywhere:
    from passtree.config import settings
"""

import os
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings

# Reserved id of the root group; auto-assigned ids start after it
ROOT_GROUP_ID = 1
ROOT_GROUP_NAME = "root"

# Sealed once at creation, checked on every open. Exactly 32 bytes.
CHALLENGE = b"passtree-store-challenge-v1\x00\x00\x00\x00\x00"


class Settings(BaseSettings):
    # Store file path is <db_dir><username><db_suffix>, plain concatenation,
    # so db_dir normally ends with a path separator.
    db_dir: str = str(Path.home() / ".passtree") + os.sep
    db_suffix: str = ".db"

    # Optional schema script run by "create" instead of the built-in one
    db_creation_script: Optional[Path] = None

    log_level: str = "WARNING"

    model_config = {"env_file": ".env", "extra": "ignore"}

    def store_path(self, username: str) -> str:
        return f"{self.db_dir}{username}{self.db_suffix}"

    def read_creation_script(self) -> Optional[str]:
        """Text of the configured schema script, or None to use the default."""
        if self.db_creation_script is None:
            return None
        return self.db_creation_script.read_text(encoding="utf-8")


# Module-level singleton
settings = Settings()
