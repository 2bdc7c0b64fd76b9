from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from decimal import Decimal
from typing import Iterable

from werkzeug.security import check_password_hash, generate_password_hash

from ewaste_repairs.db import connect, init_db
from ewaste_repairs.domain import (
    ImpactTotals,
    Notification,
    NotificationDraft,
    NotificationType,
    RepairRequest,
    RepairStatus,
    Role,
    User,
    utcnow,
)

logger = logging.getLogger(__name__)

# Columns a transition may write besides status/updated_at/started_at/completed_at.
TRANSITION_COLUMNS = frozenset(
    {
        "technician_id",
        "estimated_cost",
        "pickup_date",
        "pickup_address",
        "technician_phone",
        "technician_email",
        "pickup_notes",
    }
)


def parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def parse_decimal(value: str | None) -> Decimal | None:
    if value is None or value == "":
        return None
    return Decimal(value)


class SqliteStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    def bootstrap(self) -> None:
        init_db(self.db_path)

    # users

    def verify_password(self, username: str, password: str) -> bool:
        with connect(self.db_path) as connection:
            row = connection.execute(
                "SELECT password_hash FROM users WHERE username = ? AND is_active = 1",
                (username,),
            ).fetchone()
            if not row:
                return False
            return check_password_hash(row["password_hash"], password)

    def get_user(self, username: str) -> User | None:
        with connect(self.db_path) as connection:
            row = connection.execute(
                self._users_select_sql() + " WHERE username = ?",
                (username,),
            ).fetchone()
            return self._row_to_user(row) if row else None

    def get_user_by_id(self, user_id: int) -> User | None:
        with connect(self.db_path) as connection:
            row = connection.execute(
                self._users_select_sql() + " WHERE id = ?",
                (user_id,),
            ).fetchone()
            return self._row_to_user(row) if row else None

    def create_user(
        self,
        *,
        username: str,
        password: str,
        role: Role,
        full_name: str = "",
        email: str = "",
        is_active: bool = True,
    ) -> User:
        now = utcnow().isoformat()
        with connect(self.db_path) as connection:
            connection.execute(
                "INSERT INTO users(username, password_hash, role, full_name, email, is_active, created_at) "
                "VALUES(?, ?, ?, ?, ?, ?, ?)",
                (
                    username,
                    generate_password_hash(password),
                    role.value,
                    full_name,
                    email,
                    1 if is_active else 0,
                    now,
                ),
            )
            connection.commit()
        created = self.get_user(username)
        if not created:
            raise RuntimeError("Failed to create user")
        return created

    # repair requests

    def create_request(
        self,
        *,
        user_id: int,
        device_type: str,
        description: str,
        customer_address: str,
        notifications: Iterable[NotificationDraft] = (),
    ) -> RepairRequest:
        now = utcnow().isoformat()
        with connect(self.db_path) as connection:
            cursor = connection.execute(
                "INSERT INTO repair_requests("
                "user_id, technician_id, device_type, description, customer_address, "
                "status, created_at, updated_at"
                ") VALUES(?, NULL, ?, ?, ?, ?, ?, ?)",
                (
                    user_id,
                    device_type,
                    description,
                    customer_address,
                    RepairStatus.PENDING.value,
                    now,
                    now,
                ),
            )
            request_id = int(cursor.lastrowid)
            for draft in notifications:
                self._create_notification(connection, draft, created_at=now)
            connection.commit()

        created = self.get_request(request_id)
        if not created:
            raise RuntimeError("Failed to create repair request")
        return created

    def get_request(self, request_id: int) -> RepairRequest | None:
        with connect(self.db_path) as connection:
            row = connection.execute(
                self._requests_select_sql() + " WHERE id = ?",
                (request_id,),
            ).fetchone()
            return self._row_to_request(row) if row else None

    def list_requests(
        self,
        *,
        status: RepairStatus | None = None,
        user_id: int | None = None,
        technician_id: int | None = None,
    ) -> list[RepairRequest]:
        filters: list[str] = []
        params: list[object] = []
        if status is not None:
            filters.append("status = ?")
            params.append(status.value)
        if user_id is not None:
            filters.append("user_id = ?")
            params.append(user_id)
        if technician_id is not None:
            filters.append("technician_id = ?")
            params.append(technician_id)

        where_sql = f" WHERE {' AND '.join(filters)}" if filters else ""
        sql = self._requests_select_sql() + where_sql + " ORDER BY created_at DESC, id DESC"
        with connect(self.db_path) as connection:
            rows = connection.execute(sql, tuple(params)).fetchall()
            return [self._row_to_request(r) for r in rows]

    def transition_request(
        self,
        request_id: int,
        *,
        expected_status: RepairStatus,
        new_status: RepairStatus,
        changes: dict[str, object] | None = None,
        guard: dict[str, object] | None = None,
        notifications: Iterable[NotificationDraft] = (),
        impact: tuple[int, float, int, NotificationDraft] | None = None,
    ) -> RepairRequest | None:
        """Move a request from ``expected_status`` to ``new_status``.

        The update only applies while the row still holds ``expected_status``
        (and every ``guard`` column still holds its value); the notification
        rows and the optional impact increment are written in the same
        transaction. Returns ``None`` when another writer got there first, in
        which case nothing is written.
        """
        changes = dict(changes or {})
        guard = dict(guard or {})
        unknown = (set(changes) | set(guard)) - TRANSITION_COLUMNS
        if unknown:
            raise ValueError(f"Unsupported columns: {', '.join(sorted(unknown))}")

        now = utcnow().isoformat()
        assignments = ["status = ?", "updated_at = ?"]
        params: list[object] = [new_status.value, now]
        for column, value in sorted(changes.items()):
            assignments.append(f"{column} = ?")
            params.append(_to_db(value))
        if new_status == RepairStatus.IN_PROGRESS:
            assignments.append("started_at = COALESCE(started_at, ?)")
            params.append(now)
        if new_status == RepairStatus.COMPLETED:
            assignments.append("completed_at = COALESCE(completed_at, ?)")
            params.append(now)
        conditions = ["id = ?", "status = ?"]
        params.extend([request_id, expected_status.value])
        for column, value in sorted(guard.items()):
            if value is None:
                conditions.append(f"{column} IS NULL")
            else:
                conditions.append(f"{column} = ?")
                params.append(_to_db(value))

        with connect(self.db_path) as connection:
            cursor = connection.execute(
                f"UPDATE repair_requests SET {', '.join(assignments)} "
                f"WHERE {' AND '.join(conditions)}",
                tuple(params),
            )
            if cursor.rowcount != 1:
                connection.rollback()
                logger.debug(
                    "Repair request %s was not %s, transition to %s skipped",
                    request_id,
                    expected_status.value,
                    new_status.value,
                )
                return None

            for draft in notifications:
                self._create_notification(connection, draft, created_at=now)
            if impact is not None:
                user_id, carbon_saved, points, draft = impact
                self._increment_impact(
                    connection,
                    user_id=user_id,
                    carbon_saved=carbon_saved,
                    points=points,
                    updated_at=now,
                )
                self._create_notification(connection, draft, created_at=now)
            connection.commit()

        return self.get_request(request_id)

    # notifications

    def unread_notifications_count(self, user_id: int) -> int:
        with connect(self.db_path) as connection:
            row = connection.execute(
                "SELECT COUNT(*) AS c FROM notifications WHERE user_id = ? AND is_read = 0",
                (user_id,),
            ).fetchone()
            return int(row["c"]) if row else 0

    def list_notifications(self, user_id: int) -> list[Notification]:
        with connect(self.db_path) as connection:
            rows = connection.execute(
                "SELECT id, user_id, title, message, type, is_read, created_at "
                "FROM notifications "
                "WHERE user_id = ? "
                "ORDER BY id DESC",
                (user_id,),
            ).fetchall()
            return [
                Notification(
                    id=int(r["id"]),
                    user_id=int(r["user_id"]),
                    title=str(r["title"]),
                    message=str(r["message"]),
                    type=NotificationType(str(r["type"])),
                    read=bool(int(r["is_read"])),
                    created_at=datetime.fromisoformat(str(r["created_at"])),
                )
                for r in rows
            ]

    def mark_notification_read(self, user_id: int, notification_id: int) -> bool:
        with connect(self.db_path) as connection:
            cursor = connection.execute(
                "UPDATE notifications SET is_read = 1 WHERE id = ? AND user_id = ?",
                (notification_id, user_id),
            )
            connection.commit()
            return cursor.rowcount == 1

    # impact

    def add_impact(
        self,
        *,
        user_id: int,
        carbon_saved: float,
        points: int,
        notification: NotificationDraft | None = None,
    ) -> ImpactTotals:
        now = utcnow().isoformat()
        with connect(self.db_path) as connection:
            self._increment_impact(
                connection,
                user_id=user_id,
                carbon_saved=carbon_saved,
                points=points,
                updated_at=now,
            )
            if notification is not None:
                self._create_notification(connection, notification, created_at=now)
            connection.commit()
        return self.get_impact(user_id)

    def get_impact(self, user_id: int) -> ImpactTotals:
        with connect(self.db_path) as connection:
            row = connection.execute(
                "SELECT user_id, carbon_saved, points, updated_at "
                "FROM impact_totals WHERE user_id = ?",
                (user_id,),
            ).fetchone()
            if not row:
                return ImpactTotals(user_id=user_id, carbon_saved=0.0, points=0)
            return ImpactTotals(
                user_id=int(row["user_id"]),
                carbon_saved=float(row["carbon_saved"]),
                points=int(row["points"]),
                updated_at=parse_dt(str(row["updated_at"])),
            )

    # helpers

    def _users_select_sql(self) -> str:
        return (
            "SELECT id, username, password_hash, role, full_name, email, is_active "
            "FROM users"
        )

    def _row_to_user(self, row: sqlite3.Row) -> User:
        return User(
            id=int(row["id"]),
            username=str(row["username"]),
            password_hash=str(row["password_hash"]),
            role=Role(str(row["role"])),
            full_name=str(row["full_name"] or ""),
            email=str(row["email"] or ""),
            is_active=bool(int(row["is_active"])),
        )

    def _requests_select_sql(self) -> str:
        return (
            "SELECT "
            "id, user_id, technician_id, device_type, description, customer_address, "
            "status, estimated_cost, pickup_date, pickup_address, technician_phone, "
            "technician_email, pickup_notes, created_at, updated_at, started_at, completed_at "
            "FROM repair_requests"
        )

    def _row_to_request(self, row: sqlite3.Row) -> RepairRequest:
        return RepairRequest(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            technician_id=(
                int(row["technician_id"]) if row["technician_id"] is not None else None
            ),
            device_type=str(row["device_type"]),
            description=str(row["description"]),
            customer_address=str(row["customer_address"]),
            status=RepairStatus(str(row["status"])),
            estimated_cost=parse_decimal(row["estimated_cost"]),
            pickup_date=parse_dt(row["pickup_date"]),
            pickup_address=row["pickup_address"],
            technician_phone=row["technician_phone"],
            technician_email=row["technician_email"],
            pickup_notes=row["pickup_notes"],
            created_at=datetime.fromisoformat(str(row["created_at"])),
            updated_at=datetime.fromisoformat(str(row["updated_at"])),
            started_at=parse_dt(row["started_at"]),
            completed_at=parse_dt(row["completed_at"]),
        )

    def _create_notification(
        self,
        connection: sqlite3.Connection,
        draft: NotificationDraft,
        *,
        created_at: str,
    ) -> int:
        cursor = connection.execute(
            "INSERT INTO notifications(user_id, title, message, type, is_read, created_at) "
            "VALUES(?, ?, ?, ?, 0, ?)",
            (draft.user_id, draft.title, draft.message, draft.type.value, created_at),
        )
        return int(cursor.lastrowid)

    def _increment_impact(
        self,
        connection: sqlite3.Connection,
        *,
        user_id: int,
        carbon_saved: float,
        points: int,
        updated_at: str,
    ) -> None:
        connection.execute(
            "INSERT INTO impact_totals(user_id, carbon_saved, points, updated_at) "
            "VALUES(?, ?, ?, ?) "
            "ON CONFLICT(user_id) DO UPDATE SET "
            "carbon_saved = carbon_saved + excluded.carbon_saved, "
            "points = points + excluded.points, "
            "updated_at = excluded.updated_at",
            (user_id, carbon_saved, points, updated_at),
        )


def _to_db(value: object) -> object:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value
