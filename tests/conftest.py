from __future__ import annotations

import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from bizcards.config import PACKAGE_DIR, SiteConfig
from bizcards.database import (
    ACCESS_TOKEN_KEY,
    DEPLOYMENT_ENABLED_KEY,
    REPOSITORY_URL_KEY,
    Database,
)
from bizcards.models import UserRecord
from bizcards.publisher import CommandResult, GitError

FIXED_NOW = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
TEST_TOKEN = "ghp_" + "A1b2C3d4E5" * 4
TEST_REPOSITORY = "https://github.com/example/cards.git"
TEST_SECRET = "unit-test-secret"


def fixed_clock() -> datetime:
    return FIXED_NOW


def make_record(**overrides: object) -> UserRecord:
    values: Dict[str, object] = {
        "id": 1,
        "employee_id": "E001",
        "full_name": "Alice Smith",
        "title": "Engineer",
        "department": "R&D",
        "unit": "Platform",
        "email": "alice@example.com",
        "phone": None,
        "address": None,
        "linkedin_url": None,
        "github_url": None,
        "photo_url": None,
        "created_at": FIXED_NOW,
        "updated_at": FIXED_NOW,
    }
    values.update(overrides)
    return UserRecord(**values)  # type: ignore[arg-type]


class RecordingRunner:
    """Stands in for git: records every call and returns canned results."""

    def __init__(
        self,
        failures: Optional[Dict[str, Tuple[int, str]]] = None,
        errors: Optional[Dict[str, str]] = None,
    ) -> None:
        self.calls: List[Tuple[List[str], Optional[Path]]] = []
        self.snapshots: Dict[str, List[str]] = {}
        self._failures = failures or {}
        self._errors = errors or {}

    @property
    def commands(self) -> List[List[str]]:
        return [args for args, _ in self.calls]

    def run(self, args: Sequence[str], *, cwd: Optional[Path] = None, timeout: int = 120) -> CommandResult:
        args = list(args)
        self.calls.append((args, cwd))
        subcommand = args[0]
        if subcommand == "add" and cwd is not None:
            self.snapshots["add"] = sorted(
                str(path.relative_to(cwd)) for path in cwd.rglob("*") if path.is_file()
            )
        if subcommand in self._errors:
            raise GitError(self._errors[subcommand])
        if subcommand in self._failures:
            status, stderr = self._failures[subcommand]
            return CommandResult(command=args, exit_status=status, stdout="", stderr=stderr)
        return CommandResult(command=args, exit_status=0, stdout="", stderr="")


@pytest.fixture()
def site_config(tmp_path: Path) -> SiteConfig:
    photo_dir = tmp_path / "photos"
    photo_dir.mkdir()
    return SiteConfig(
        template_dir=PACKAGE_DIR / "templates",
        logo_path=PACKAGE_DIR / "assets" / "logo.svg",
        photo_dir=photo_dir,
        staging_dir=tmp_path / "deploy",
    )


@pytest.fixture()
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "bizcards.sqlite3", secret_key=TEST_SECRET)
    db.initialize()
    return db


def configure_github(db: Database, *, enabled: bool = True) -> None:
    db.set_settings(
        {
            REPOSITORY_URL_KEY: TEST_REPOSITORY,
            ACCESS_TOKEN_KEY: TEST_TOKEN,
            DEPLOYMENT_ENABLED_KEY: "true" if enabled else "false",
        }
    )


def add_employee(db: Database, employee_id: str, full_name: str, **extra: object) -> UserRecord:
    fields: Dict[str, object] = {
        "employee_id": employee_id,
        "full_name": full_name,
        "title": "Engineer",
        "department": "R&D",
        "unit": "Platform",
        "email": f"{employee_id.lower()}@example.com",
    }
    fields.update(extra)
    return db.create_user(**fields)
