"""SQLite-backed persistence for employee records and system settings."""
from __future__ import annotations

import base64
import hashlib
import os
import re
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken

from .errors import ConfigurationError
from .models import DeploymentConfig, SystemSetting, UserRecord

REPOSITORY_URL_KEY = "github_repository_url"
ACCESS_TOKEN_KEY = "github_access_token"
BRANCH_KEY = "github_branch"
DEPLOYMENT_ENABLED_KEY = "deployment_enabled"
SITE_BASE_URL_KEY = "site_base_url"
LAST_DEPLOYMENT_KEY = "last_deployment_time"

_ENCRYPTED_SETTINGS = {ACCESS_TOKEN_KEY}
MASKED_VALUE = "***"

EMPLOYEE_ID_PATTERN = re.compile(r"^[A-Z0-9][A-Z0-9._-]{0,49}$")
# Top-level names used by the published site itself.
RESERVED_EMPLOYEE_IDS = frozenset({"ASSETS"})
_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

_REQUIRED_FIELDS = ("employee_id", "full_name", "title", "department", "unit", "email")
_OPTIONAL_FIELDS = ("phone", "address", "linkedin_url", "github_url", "photo_url")
_FIELD_LIMITS = {
    "employee_id": 50,
    "full_name": 100,
    "title": 100,
    "department": 100,
    "unit": 100,
    "email": 255,
    "phone": 50,
    "address": 255,
    "linkedin_url": 255,
    "github_url": 255,
    "photo_url": 255,
}


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the application database."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "bizcards.sqlite3").resolve(strict=False)


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(value: datetime) -> str:
    return value.isoformat()


def _parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value)


def normalize_employee_id(value: str) -> str:
    return value.strip().upper()


def _normalize_field(key: str, value: object) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if key == "employee_id":
        text = text.upper()
    elif key == "email":
        text = text.lower()
    return text


def _validate_fields(fields: Mapping[str, Optional[str]], *, partial: bool) -> None:
    for key in _REQUIRED_FIELDS:
        if key not in fields:
            if partial:
                continue
            raise ValueError(f"{key} is required")
        if not fields[key]:
            raise ValueError(f"{key} must not be empty")

    for key, value in fields.items():
        limit = _FIELD_LIMITS[key]
        if value is not None and len(value) > limit:
            raise ValueError(f"{key} must be at most {limit} characters")

    employee_id = fields.get("employee_id")
    if employee_id and not EMPLOYEE_ID_PATTERN.fullmatch(employee_id):
        raise ValueError(
            "employee_id may only contain letters, numbers, dots, dashes and underscores"
        )
    if employee_id in RESERVED_EMPLOYEE_IDS:
        raise ValueError(f"employee_id {employee_id} is reserved")

    email = fields.get("email")
    if email and not _EMAIL_PATTERN.fullmatch(email):
        raise ValueError("email must be a valid email address")

    for key in ("linkedin_url", "github_url"):
        url = fields.get(key)
        if url and not url.lower().startswith(("http://", "https://")):
            raise ValueError(f"{key} must be an http(s) URL")


def _clean_record_fields(raw: Mapping[str, object], *, partial: bool) -> Dict[str, Optional[str]]:
    allowed = set(_REQUIRED_FIELDS) | set(_OPTIONAL_FIELDS)
    unknown = set(raw.keys()) - allowed
    if unknown:
        raise ValueError(f"Unknown fields: {', '.join(sorted(unknown))}")

    cleaned: Dict[str, Optional[str]] = {}
    for key, value in raw.items():
        normalized = _normalize_field(key, value)
        if key in _OPTIONAL_FIELDS and not normalized:
            normalized = None
        cleaned[key] = normalized

    _validate_fields(cleaned, partial=partial)
    return cleaned


class Database:
    """Simple wrapper around SQLite for employee records and settings."""

    def __init__(self, path: Path, *, secret_key: Optional[str] = None) -> None:
        _ensure_directory(path)
        self._path = path
        if secret_key is None:
            secret_key = os.getenv("BIZCARDS_SECRET_KEY")
        self._cipher = self._build_cipher(secret_key)

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def initialize(self) -> None:
        """Create the required tables if they do not already exist."""

        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    employee_id TEXT NOT NULL UNIQUE,
                    full_name TEXT NOT NULL,
                    title TEXT NOT NULL,
                    department TEXT NOT NULL,
                    unit TEXT NOT NULL,
                    email TEXT NOT NULL,
                    phone TEXT,
                    address TEXT,
                    linkedin_url TEXT,
                    github_url TEXT,
                    photo_url TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS system_settings (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    setting_key TEXT NOT NULL UNIQUE,
                    setting_value TEXT,
                    description TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_users_email ON users(email);
                CREATE INDEX IF NOT EXISTS idx_users_full_name ON users(full_name);
                CREATE INDEX IF NOT EXISTS idx_users_department ON users(department);
                CREATE INDEX IF NOT EXISTS idx_users_unit ON users(unit);
                """
            )

    # ------------------------------------------------------------------
    # Employee records
    # ------------------------------------------------------------------
    def create_user(self, **fields: object) -> UserRecord:
        """Validate and insert a new employee record."""

        cleaned = _clean_record_fields(fields, partial=False)
        for key in _OPTIONAL_FIELDS:
            cleaned.setdefault(key, None)

        now = _serialize_datetime(_current_timestamp())
        columns = list(_REQUIRED_FIELDS) + list(_OPTIONAL_FIELDS)
        values = [cleaned[column] for column in columns] + [now, now]
        placeholders = ", ".join("?" for _ in range(len(columns) + 2))

        with self._connect() as conn:
            try:
                conn.execute(
                    f"INSERT INTO users ({', '.join(columns)}, created_at, updated_at) "
                    f"VALUES ({placeholders})",
                    values,
                )
            except sqlite3.IntegrityError as exc:
                raise ValueError("A user with that employee ID already exists") from exc

        created = self.get_user(str(cleaned["employee_id"]))
        if created is None:
            raise RuntimeError("Failed to load user after creation")
        return created

    def get_user(self, employee_id: str) -> Optional[UserRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE employee_id = ?",
                (normalize_employee_id(employee_id),),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def list_users(
        self,
        *,
        page: int = 1,
        limit: int = 20,
        search: Optional[str] = None,
        department: Optional[str] = None,
        unit: Optional[str] = None,
    ) -> Tuple[List[UserRecord], int]:
        """Return one page of records (newest first) and the total match count."""

        clauses: List[str] = []
        params: List[object] = []
        if search:
            pattern = f"%{search.strip()}%"
            clauses.append("(full_name LIKE ? OR email LIKE ? OR employee_id LIKE ?)")
            params.extend([pattern, pattern, pattern])
        if department:
            clauses.append("department LIKE ?")
            params.append(f"%{department.strip()}%")
        if unit:
            clauses.append("unit LIKE ?")
            params.append(f"%{unit.strip()}%")

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        offset = (max(page, 1) - 1) * limit

        with self._connect() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM users {where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM users {where} ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                [*params, limit, offset],
            ).fetchall()
        return [self._row_to_user(row) for row in rows], int(total)

    def search_users(self, query: str) -> List[UserRecord]:
        pattern = f"%{query.strip()}%"
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM users
                 WHERE full_name LIKE ? OR email LIKE ? OR employee_id LIKE ?
                    OR department LIKE ? OR unit LIKE ?
                 ORDER BY created_at DESC, id DESC
                """,
                (pattern, pattern, pattern, pattern, pattern),
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def list_all_records(self) -> List[UserRecord]:
        """Every record ordered by employee ID, as consumed by the deployment pipeline."""

        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY employee_id ASC").fetchall()
        return [self._row_to_user(row) for row in rows]

    def update_user(self, employee_id: str, **fields: object) -> Optional[UserRecord]:
        if not fields:
            return self.get_user(employee_id)

        cleaned = _clean_record_fields(fields, partial=True)
        updates = [f"{column} = ?" for column in cleaned]
        values: List[object] = list(cleaned.values())
        updates.append("updated_at = ?")
        values.append(_serialize_datetime(_current_timestamp()))
        values.append(normalize_employee_id(employee_id))

        with self._connect() as conn:
            try:
                cursor = conn.execute(
                    f"UPDATE users SET {', '.join(updates)} WHERE employee_id = ?",
                    values,
                )
            except sqlite3.IntegrityError as exc:
                raise ValueError("A user with that employee ID already exists") from exc
            if cursor.rowcount == 0:
                return None

        return self.get_user(str(cleaned.get("employee_id") or employee_id))

    def delete_user(self, employee_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM users WHERE employee_id = ?",
                (normalize_employee_id(employee_id),),
            )
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # System settings
    # ------------------------------------------------------------------
    def get_setting(self, key: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT setting_value FROM system_settings WHERE setting_key = ?",
                (key,),
            ).fetchone()
        if row is None:
            return None
        return self._decode_value(key, row["setting_value"])

    def set_setting(self, key: str, value: Optional[str], description: Optional[str] = None) -> SystemSetting:
        self.set_settings({key: value}, descriptions={key: description} if description else None)
        setting = self.get_setting_row(key)
        if setting is None:
            raise RuntimeError(f"Failed to load setting {key!r} after saving it")
        return setting

    def set_settings(
        self,
        values: Mapping[str, Optional[str]],
        *,
        descriptions: Optional[Mapping[str, Optional[str]]] = None,
    ) -> None:
        """Write several settings in one transaction so readers never see a partial update."""

        descriptions = descriptions or {}
        now = _serialize_datetime(_current_timestamp())
        rows = [
            (key, self._encode_value(key, value), descriptions.get(key), now, now)
            for key, value in values.items()
        ]
        with self._connect() as conn:
            conn.executemany(
                """
                INSERT INTO system_settings (setting_key, setting_value, description, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(setting_key) DO UPDATE SET
                    setting_value = excluded.setting_value,
                    description = COALESCE(excluded.description, system_settings.description),
                    updated_at = excluded.updated_at
                """,
                rows,
            )

    def get_setting_row(self, key: str) -> Optional[SystemSetting]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM system_settings WHERE setting_key = ?",
                (key,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_setting(row)

    def list_settings(self) -> List[SystemSetting]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM system_settings ORDER BY setting_key ASC").fetchall()
        return [self._row_to_setting(row) for row in rows]

    def get_github_config(self) -> DeploymentConfig:
        return DeploymentConfig(
            repository_url=self.get_setting(REPOSITORY_URL_KEY) or None,
            access_token=self.get_setting(ACCESS_TOKEN_KEY) or None,
            branch=self.get_setting(BRANCH_KEY) or "main",
        )

    def is_deployment_enabled(self) -> bool:
        return self.get_setting(DEPLOYMENT_ENABLED_KEY) == "true"

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _row_to_user(self, row: sqlite3.Row) -> UserRecord:
        return UserRecord(
            id=int(row["id"]),
            employee_id=str(row["employee_id"]),
            full_name=str(row["full_name"]),
            title=str(row["title"]),
            department=str(row["department"]),
            unit=str(row["unit"]),
            email=str(row["email"]),
            phone=row["phone"],
            address=row["address"],
            linkedin_url=row["linkedin_url"],
            github_url=row["github_url"],
            photo_url=row["photo_url"],
            created_at=_parse_datetime(str(row["created_at"])),
            updated_at=_parse_datetime(str(row["updated_at"])),
        )

    def _row_to_setting(self, row: sqlite3.Row) -> SystemSetting:
        # Encrypted values are listed masked and never decrypted here.
        key = str(row["setting_key"])
        value = row["setting_value"]
        if key in _ENCRYPTED_SETTINGS and value:
            value = MASKED_VALUE
        return SystemSetting(
            key=key,
            value=value,
            description=row["description"],
            updated_at=_parse_datetime(str(row["updated_at"])),
        )

    def _encode_value(self, key: str, value: Optional[str]) -> Optional[str]:
        if key not in _ENCRYPTED_SETTINGS or not value:
            return value
        cipher = self._require_cipher()
        return cipher.encrypt(value.encode("utf-8")).decode("utf-8")

    def _decode_value(self, key: str, stored: Optional[str]) -> Optional[str]:
        if key not in _ENCRYPTED_SETTINGS or not stored:
            return stored
        cipher = self._require_cipher()
        try:
            plaintext = cipher.decrypt(str(stored).encode("utf-8"))
        except InvalidToken:
            raise ConfigurationError(
                "Stored access token could not be decrypted with the current BIZCARDS_SECRET_KEY. "
                "Save the GitHub configuration again."
            ) from None
        return plaintext.decode("utf-8")

    def _build_cipher(self, secret: Optional[str]) -> Optional[Fernet]:
        if not secret:
            return None
        digest = hashlib.sha256(secret.encode("utf-8")).digest()
        key = base64.urlsafe_b64encode(digest)
        return Fernet(key)

    def _require_cipher(self) -> Fernet:
        if self._cipher is None:
            raise ConfigurationError(
                "Secret key is not configured. Set BIZCARDS_SECRET_KEY to store the GitHub access token."
            )
        return self._cipher


def protected_setting_keys() -> Iterable[str]:
    return tuple(sorted(_ENCRYPTED_SETTINGS))


__all__ = [
    "Database",
    "resolve_database_path",
    "normalize_employee_id",
    "protected_setting_keys",
    "EMPLOYEE_ID_PATTERN",
    "RESERVED_EMPLOYEE_IDS",
    "MASKED_VALUE",
    "REPOSITORY_URL_KEY",
    "ACCESS_TOKEN_KEY",
    "BRANCH_KEY",
    "DEPLOYMENT_ENABLED_KEY",
    "SITE_BASE_URL_KEY",
    "LAST_DEPLOYMENT_KEY",
]
