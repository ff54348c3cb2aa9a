import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Iterator, List, Optional, Tuple
from uuid import uuid4

from plumbhub.models import (
    STATUSES_WITH_PROVIDER,
    Account,
    AssignmentRecord,
    Booking,
    BookingCreateRequest,
    BookingPatch,
    BookingStatus,
    Category,
    Provider,
    Role,
)

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = str(Path(__file__).resolve().parents[2] / "data" / "plumbhub.sqlite3")

DEFAULT_CATEGORIES = (
    ("Leak Repair", "Fix leaking pipes, taps and fittings", "droplets"),
    ("Installation", "Install new fixtures and appliances", "wrench"),
    ("Maintenance", "Routine inspection and servicing", "clipboard-check"),
    ("Emergency", "Urgent call-outs for bursts and floods", "alert-triangle"),
)

PROVIDER_UPDATABLE_FIELDS = {
    "specializations",
    "is_available",
    "is_verified",
    "experience_years",
    "rating",
    "license_number",
}


class EntityStoreError(ValueError):
    """Base class for user-visible entity-store errors."""


class EntityStoreValidationError(EntityStoreError):
    pass


class EntityStoreNotFoundError(EntityStoreError):
    pass


class EntityStoreConflictError(EntityStoreError):
    pass


class EntityStorePermissionError(EntityStoreError):
    pass


class EntityStoreFailure(EntityStoreError):
    """The underlying database failed a read or write."""


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes"}


@dataclass
class EntityStore:
    db_path: str
    seed_categories: Optional[bool] = None

    def __post_init__(self) -> None:
        self._lock = Lock()
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        if self.seed_categories is None:
            self.seed_categories = _env_flag("PLUMBHUB_SEED_CATEGORIES", True)
        self._init_db()
        if self.seed_categories:
            self._seed_if_needed()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._connect()
            try:
                with conn:
                    yield conn
            except sqlite3.Error as exc:
                logger.exception("Entity store operation failed")
                raise EntityStoreFailure("Entity store operation failed") from exc
            finally:
                conn.close()

    def _init_db(self) -> None:
        with self._session() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    email TEXT NOT NULL UNIQUE,
                    phone TEXT NOT NULL,
                    role TEXT NOT NULL,
                    address TEXT,
                    password_hash TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS providers (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL UNIQUE REFERENCES accounts(id),
                    specializations_json TEXT NOT NULL DEFAULT '[]',
                    is_available INTEGER NOT NULL DEFAULT 0,
                    is_verified INTEGER NOT NULL DEFAULT 0,
                    experience_years INTEGER NOT NULL DEFAULT 0,
                    rating INTEGER NOT NULL DEFAULT 0,
                    total_jobs INTEGER NOT NULL DEFAULT 0,
                    license_number TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS bookings (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL REFERENCES accounts(id),
                    category TEXT NOT NULL,
                    description TEXT NOT NULL,
                    address TEXT NOT NULL,
                    phone TEXT NOT NULL,
                    preferred_date TEXT,
                    preferred_time_slot TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    assigned_provider_id TEXT REFERENCES providers(id),
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS assignment_history (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    booking_id TEXT NOT NULL REFERENCES bookings(id),
                    provider_id TEXT NOT NULL,
                    assigned_at TEXT NOT NULL,
                    status TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS categories (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL UNIQUE,
                    description TEXT,
                    icon TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1
                )
                """
            )

    def _seed_if_needed(self) -> None:
        with self._session() as conn:
            existing = conn.execute("SELECT COUNT(*) AS total FROM categories").fetchone()
            if existing["total"]:
                return
            for name, description, icon in DEFAULT_CATEGORIES:
                conn.execute(
                    "INSERT INTO categories (id, name, description, icon, is_active) VALUES (?, ?, ?, ?, 1)",
                    (f"cat_{uuid4().hex[:8]}", name, description, icon),
                )

    # Accounts

    def _row_to_account(self, row: sqlite3.Row) -> Account:
        return Account(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            phone=row["phone"],
            role=Role(row["role"]),
            address=row["address"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def create_account(
        self,
        *,
        name: str,
        email: str,
        phone: str,
        role: Role,
        password_hash: str,
        address: Optional[str] = None,
    ) -> Account:
        normalized_email = email.strip().lower()
        if not name.strip():
            raise EntityStoreValidationError("Name is required")
        if not normalized_email or "@" not in normalized_email:
            raise EntityStoreValidationError("A valid email is required")
        if not phone.strip():
            raise EntityStoreValidationError("Phone is required")

        now = _utcnow()
        account_id = f"acct_{uuid4().hex[:10]}"
        with self._session() as conn:
            duplicate = conn.execute("SELECT id FROM accounts WHERE email = ?", (normalized_email,)).fetchone()
            if duplicate:
                raise EntityStoreConflictError("An account already exists with this email")
            conn.execute(
                """
                INSERT INTO accounts (id, name, email, phone, role, address, password_hash, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (account_id, name.strip(), normalized_email, phone.strip(), role.value, address, password_hash, now, now),
            )
            row = conn.execute("SELECT * FROM accounts WHERE id = ?", (account_id,)).fetchone()
        return self._row_to_account(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM accounts WHERE id = ?", (account_id,)).fetchone()
        return self._row_to_account(row) if row else None

    def get_credentials(self, email: str) -> Optional[Tuple[Account, str]]:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM accounts WHERE email = ?", (email.strip().lower(),)).fetchone()
        if not row:
            return None
        return self._row_to_account(row), str(row["password_hash"])

    def list_accounts(self, role: Optional[Role] = None) -> List[Account]:
        with self._session() as conn:
            if role is None:
                rows = conn.execute("SELECT * FROM accounts ORDER BY created_at").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM accounts WHERE role = ? ORDER BY created_at",
                    (role.value,),
                ).fetchall()
        return [self._row_to_account(row) for row in rows]

    # Providers

    def _row_to_provider(self, row: sqlite3.Row) -> Provider:
        try:
            specializations = json.loads(row["specializations_json"] or "[]")
        except json.JSONDecodeError:
            specializations = []
        if not isinstance(specializations, list):
            specializations = []
        return Provider(
            id=row["id"],
            account_id=row["account_id"],
            specializations=[str(item) for item in specializations],
            is_available=bool(row["is_available"]),
            is_verified=bool(row["is_verified"]),
            experience_years=int(row["experience_years"] or 0),
            rating=int(row["rating"] or 0),
            total_jobs=int(row["total_jobs"] or 0),
            license_number=row["license_number"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def create_provider(
        self,
        *,
        account_id: str,
        specializations: Optional[List[str]] = None,
        is_available: bool = False,
        is_verified: bool = False,
        experience_years: int = 0,
        rating: int = 0,
        license_number: Optional[str] = None,
    ) -> Provider:
        if rating < 0:
            raise EntityStoreValidationError("rating must not be negative")
        now = _utcnow()
        provider_id = f"prov_{uuid4().hex[:10]}"
        tags = sorted({tag.strip() for tag in (specializations or []) if tag and tag.strip()})
        with self._session() as conn:
            account = conn.execute("SELECT id FROM accounts WHERE id = ?", (account_id,)).fetchone()
            if not account:
                raise EntityStoreNotFoundError("Account not found")
            existing = conn.execute("SELECT id FROM providers WHERE account_id = ?", (account_id,)).fetchone()
            if existing:
                raise EntityStoreConflictError("Account already has a provider profile")
            conn.execute(
                """
                INSERT INTO providers (
                    id, account_id, specializations_json, is_available, is_verified,
                    experience_years, rating, total_jobs, license_number, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?)
                """,
                (
                    provider_id,
                    account_id,
                    json.dumps(tags),
                    1 if is_available else 0,
                    1 if is_verified else 0,
                    int(experience_years),
                    int(rating),
                    license_number,
                    now,
                    now,
                ),
            )
            row = conn.execute("SELECT * FROM providers WHERE id = ?", (provider_id,)).fetchone()
        return self._row_to_provider(row)

    def get_provider(self, provider_id: str) -> Optional[Provider]:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM providers WHERE id = ?", (provider_id,)).fetchone()
        return self._row_to_provider(row) if row else None

    def get_provider_by_account_id(self, account_id: str) -> Optional[Provider]:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM providers WHERE account_id = ?", (account_id,)).fetchone()
        return self._row_to_provider(row) if row else None

    def list_providers(self) -> List[Provider]:
        with self._session() as conn:
            rows = conn.execute("SELECT * FROM providers ORDER BY rowid").fetchall()
        return [self._row_to_provider(row) for row in rows]

    def get_providers_where(
        self,
        eligible: Optional[bool] = None,
        specialization: Optional[str] = None,
    ) -> List[Provider]:
        """Providers filtered by eligibility and specialization.

        Results come back in registration order, which the assignment policy
        relies on to break rating ties reproducibly.
        """
        query = "SELECT * FROM providers"
        if eligible is True:
            query += " WHERE is_available = 1 AND is_verified = 1"
        elif eligible is False:
            query += " WHERE NOT (is_available = 1 AND is_verified = 1)"
        query += " ORDER BY rowid"
        with self._session() as conn:
            rows = conn.execute(query).fetchall()
        providers = [self._row_to_provider(row) for row in rows]
        if specialization is not None:
            providers = [p for p in providers if specialization in p.specializations]
        return providers

    def update_provider(self, provider_id: str, **fields: Any) -> Optional[Provider]:
        unknown = set(fields) - PROVIDER_UPDATABLE_FIELDS
        if unknown:
            raise EntityStoreValidationError(f"Unknown provider fields: {', '.join(sorted(unknown))}")
        assignments: List[str] = []
        params: List[Any] = []
        for key, value in fields.items():
            if key == "specializations":
                tags = sorted({tag.strip() for tag in (value or []) if tag and tag.strip()})
                assignments.append("specializations_json = ?")
                params.append(json.dumps(tags))
            elif key in {"is_available", "is_verified"}:
                assignments.append(f"{key} = ?")
                params.append(1 if value else 0)
            elif key in {"experience_years", "rating"}:
                if value is None or int(value) < 0:
                    raise EntityStoreValidationError(f"{key} must not be negative")
                assignments.append(f"{key} = ?")
                params.append(int(value))
            else:
                assignments.append(f"{key} = ?")
                params.append(value)
        assignments.append("updated_at = ?")
        params.append(_utcnow())
        params.append(provider_id)

        with self._session() as conn:
            cursor = conn.execute(f"UPDATE providers SET {', '.join(assignments)} WHERE id = ?", tuple(params))
            if cursor.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM providers WHERE id = ?", (provider_id,)).fetchone()
        return self._row_to_provider(row)

    # Bookings

    def _load_booking(self, conn: sqlite3.Connection, booking_id: str) -> Optional[Booking]:
        row = conn.execute("SELECT * FROM bookings WHERE id = ?", (booking_id,)).fetchone()
        if not row:
            return None
        history_rows = conn.execute(
            "SELECT provider_id, assigned_at, status FROM assignment_history WHERE booking_id = ? ORDER BY seq",
            (booking_id,),
        ).fetchall()
        return Booking(
            id=row["id"],
            account_id=row["account_id"],
            category=row["category"],
            description=row["description"],
            address=row["address"],
            phone=row["phone"],
            preferred_date=row["preferred_date"],
            preferred_time_slot=row["preferred_time_slot"],
            status=BookingStatus(row["status"]),
            assigned_provider_id=row["assigned_provider_id"],
            assignment_history=[
                AssignmentRecord(
                    provider_id=item["provider_id"],
                    assigned_at=item["assigned_at"],
                    status=BookingStatus(item["status"]),
                )
                for item in history_rows
            ],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def create_booking(self, account_id: str, request: BookingCreateRequest) -> Booking:
        for field in ("category", "description", "address", "phone"):
            if not str(getattr(request, field) or "").strip():
                raise EntityStoreValidationError(f"{field} is required")
        now = _utcnow()
        booking_id = f"bk_{uuid4().hex[:10]}"
        with self._session() as conn:
            account = conn.execute("SELECT id FROM accounts WHERE id = ?", (account_id,)).fetchone()
            if not account:
                raise EntityStoreNotFoundError("Account not found")
            conn.execute(
                """
                INSERT INTO bookings (
                    id, account_id, category, description, address, phone,
                    preferred_date, preferred_time_slot, status, assigned_provider_id, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, ?, ?)
                """,
                (
                    booking_id,
                    account_id,
                    request.category.strip(),
                    request.description.strip(),
                    request.address.strip(),
                    request.phone.strip(),
                    request.preferred_date,
                    request.preferred_time_slot,
                    BookingStatus.PENDING.value,
                    now,
                    now,
                ),
            )
            booking = self._load_booking(conn, booking_id)
        assert booking is not None
        return booking

    def get_booking(self, booking_id: str) -> Optional[Booking]:
        with self._session() as conn:
            return self._load_booking(conn, booking_id)

    def update_booking(
        self,
        booking_id: str,
        patch: BookingPatch,
        expected_status: Optional[BookingStatus] = None,
        expected_provider_id: Optional[str] = None,
    ) -> Optional[Booking]:
        """Apply ``patch`` atomically and return the updated booking.

        Returns ``None`` when the booking does not exist. When
        ``expected_status`` or ``expected_provider_id`` is given and the stored
        value differs, raises ``EntityStoreConflictError`` without writing
        anything. Moving a booking into ``completed`` credits the assigned
        provider's ``total_jobs`` in the same transaction.
        """
        fields = patch.model_fields_set
        if "status" in fields and patch.status is None:
            raise EntityStoreValidationError("status cannot be cleared")
        if patch.status == BookingStatus.REJECTED:
            raise EntityStoreValidationError("rejected is not a storable booking status")

        with self._session() as conn:
            row = conn.execute("SELECT status, assigned_provider_id FROM bookings WHERE id = ?", (booking_id,)).fetchone()
            if not row:
                return None
            current_status = BookingStatus(row["status"])
            if expected_status is not None and current_status != expected_status:
                raise EntityStoreConflictError(
                    f"Booking status changed: expected {expected_status.value}, found {current_status.value}"
                )
            current_provider = row["assigned_provider_id"]
            if expected_provider_id is not None and current_provider != expected_provider_id:
                raise EntityStoreConflictError(
                    f"Booking provider changed: expected {expected_provider_id}, found {current_provider}"
                )

            next_status = patch.status if "status" in fields else current_status
            next_provider = patch.assigned_provider_id if "assigned_provider_id" in fields else current_provider
            if next_provider is not None and next_status not in STATUSES_WITH_PROVIDER:
                raise EntityStoreValidationError(f"A {next_status.value} booking cannot keep an assigned provider")
            if next_provider is not None:
                provider = conn.execute("SELECT id FROM providers WHERE id = ?", (next_provider,)).fetchone()
                if not provider:
                    raise EntityStoreNotFoundError("Provider not found")

            cursor = conn.execute(
                """
                UPDATE bookings
                SET status = ?, assigned_provider_id = ?, updated_at = ?
                WHERE id = ? AND status = ? AND assigned_provider_id IS ?
                """,
                (next_status.value, next_provider, _utcnow(), booking_id, current_status.value, current_provider),
            )
            if cursor.rowcount == 0:
                raise EntityStoreConflictError("Booking changed during update")
            if (
                next_status == BookingStatus.COMPLETED
                and current_status != BookingStatus.COMPLETED
                and next_provider is not None
            ):
                conn.execute(
                    "UPDATE providers SET total_jobs = total_jobs + 1, updated_at = ? WHERE id = ?",
                    (_utcnow(), next_provider),
                )
            if patch.history_entry is not None:
                conn.execute(
                    "INSERT INTO assignment_history (booking_id, provider_id, assigned_at, status) VALUES (?, ?, ?, ?)",
                    (
                        booking_id,
                        patch.history_entry.provider_id,
                        patch.history_entry.assigned_at,
                        patch.history_entry.status.value,
                    ),
                )
            return self._load_booking(conn, booking_id)

    def list_bookings(
        self,
        *,
        account_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        status: Optional[BookingStatus] = None,
    ) -> List[Booking]:
        query = "SELECT id FROM bookings"
        clauses: List[str] = []
        params: List[Any] = []
        if account_id is not None:
            clauses.append("account_id = ?")
            params.append(account_id)
        if provider_id is not None:
            clauses.append("assigned_provider_id = ?")
            params.append(provider_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC, rowid DESC"
        with self._session() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
            bookings = [self._load_booking(conn, row["id"]) for row in rows]
        return [booking for booking in bookings if booking is not None]

    # Categories

    def _row_to_category(self, row: sqlite3.Row) -> Category:
        return Category(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            icon=row["icon"],
            is_active=bool(row["is_active"]),
        )

    def list_categories(self, include_inactive: bool = False) -> List[Category]:
        query = "SELECT * FROM categories"
        if not include_inactive:
            query += " WHERE is_active = 1"
        query += " ORDER BY rowid"
        with self._session() as conn:
            rows = conn.execute(query).fetchall()
        return [self._row_to_category(row) for row in rows]

    def get_category_by_name(self, name: str) -> Optional[Category]:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM categories WHERE name = ?", (name.strip(),)).fetchone()
        return self._row_to_category(row) if row else None

    def create_category(self, *, name: str, description: Optional[str] = None, icon: Optional[str] = None) -> Category:
        if not name.strip():
            raise EntityStoreValidationError("Category name is required")
        category_id = f"cat_{uuid4().hex[:8]}"
        with self._session() as conn:
            duplicate = conn.execute("SELECT id FROM categories WHERE name = ?", (name.strip(),)).fetchone()
            if duplicate:
                raise EntityStoreConflictError("Category already exists")
            conn.execute(
                "INSERT INTO categories (id, name, description, icon, is_active) VALUES (?, ?, ?, ?, 1)",
                (category_id, name.strip(), description, icon),
            )
            row = conn.execute("SELECT * FROM categories WHERE id = ?", (category_id,)).fetchone()
        return self._row_to_category(row)

    def set_category_active(self, category_id: str, is_active: bool) -> Category:
        with self._session() as conn:
            cursor = conn.execute(
                "UPDATE categories SET is_active = ? WHERE id = ?",
                (1 if is_active else 0, category_id),
            )
            if cursor.rowcount == 0:
                raise EntityStoreNotFoundError("Category not found")
            row = conn.execute("SELECT * FROM categories WHERE id = ?", (category_id,)).fetchone()
        return self._row_to_category(row)
