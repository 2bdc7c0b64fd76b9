from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

from werkzeug.security import generate_password_hash

from ewaste_repairs.domain import Role, utcnow

logger = logging.getLogger(__name__)

BUSY_TIMEOUT_SECONDS = 10.0


def connect(db_path: str) -> sqlite3.Connection:
    # IMMEDIATE: writers wait on the busy timeout.
    connection = sqlite3.connect(
        db_path,
        timeout=BUSY_TIMEOUT_SECONDS,
        isolation_level="IMMEDIATE",
        check_same_thread=False,
    )
    connection.row_factory = sqlite3.Row
    connection.execute("PRAGMA foreign_keys = ON;")
    return connection


def init_db(db_path: str) -> None:
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    schema_path = Path(__file__).with_name("schema.sql")
    schema = schema_path.read_text(encoding="utf-8")

    with connect(str(path)) as connection:
        connection.executescript(schema)
        _seed_default_users(connection)
        connection.commit()
    logger.info("Database ready at %s", path)


def _seed_default_users(connection: sqlite3.Connection) -> None:
    now = utcnow().isoformat()
    defaults = [
        ("customer", Role.USER, "Demo Customer", "customer@example.com"),
        ("technician", Role.TECHNICIAN, "Demo Technician", "technician@example.com"),
        ("recycler", Role.RECYCLER, "Demo Recycler", "recycler@example.com"),
        ("educator", Role.EDUCATOR, "Demo Educator", "educator@example.com"),
        ("business", Role.BUSINESS, "Demo Business", "business@example.com"),
        ("admin", Role.ADMIN, "Administrator", "admin@example.com"),
    ]
    connection.executemany(
        "INSERT INTO users(username, password_hash, role, full_name, email, is_active, created_at) "
        "VALUES (?, ?, ?, ?, ?, 1, ?) "
        "ON CONFLICT(username) DO NOTHING",
        [
            (username, generate_password_hash(username), role.value, name, email, now)
            for (username, role, name, email) in defaults
        ],
    )

