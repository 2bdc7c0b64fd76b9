from __future__ import annotations

import os
from pathlib import Path


class AppConfig:
    SECRET_KEY = os.environ.get("EWASTE_SECRET_KEY", "dev-secret-key")
    DATA_DIR = os.environ.get("EWASTE_DATA_DIR", str(Path("data").resolve()))
    DATABASE_PATH = os.environ.get(
        "EWASTE_DATABASE_PATH", str(Path(DATA_DIR) / "ewaste.db")
    )
    LOG_LEVEL = os.environ.get("EWASTE_LOG_LEVEL", "INFO")
    # "technicians" pushes NEW_REPAIR_REQUEST to technician sessions only,
    # "all" sends it to every connected session.
    NEW_REQUEST_SCOPE = os.environ.get("EWASTE_NEW_REQUEST_SCOPE", "technicians")
    SOCK_SERVER_OPTIONS = {"ping_interval": 25}
