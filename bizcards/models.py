"""Domain models for employee records and deployment reports."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional


@dataclass(frozen=True)
class UserRecord:
    """An employee record as stored in the admin database."""

    id: int
    employee_id: str
    full_name: str
    title: str
    department: str
    unit: str
    email: str
    phone: Optional[str]
    address: Optional[str]
    linkedin_url: Optional[str]
    github_url: Optional[str]
    photo_url: Optional[str]
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "employee_id": self.employee_id,
            "full_name": self.full_name,
            "title": self.title,
            "department": self.department,
            "unit": self.unit,
            "email": self.email,
            "phone": self.phone,
            "address": self.address,
            "linkedin_url": self.linkedin_url,
            "github_url": self.github_url,
            "photo_url": self.photo_url,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class SystemSetting:
    """A key/value row from the settings table."""

    key: str
    value: Optional[str]
    description: Optional[str]
    updated_at: datetime


@dataclass(frozen=True)
class DeploymentConfig:
    """GitHub target for a deployment. ``access_token`` must never be logged."""

    repository_url: Optional[str]
    access_token: Optional[str] = field(default=None, repr=False)
    branch: str = "main"

    @property
    def is_configured(self) -> bool:
        return bool(self.repository_url and self.access_token)


@dataclass
class RecordResult:
    """Per-record entry in a deployment report."""

    employee_id: str
    full_name: str
    files: List[str] = field(default_factory=list)
    url: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, object]:
        if self.error is not None:
            return {
                "employee_id": self.employee_id,
                "full_name": self.full_name,
                "error": self.error,
            }
        return {
            "employee_id": self.employee_id,
            "full_name": self.full_name,
            "files": list(self.files),
            "url": self.url,
        }


@dataclass
class DeploymentOutcome:
    """Summary and per-record details returned after a successful publish."""

    total_users: int
    files_generated: int
    deployment_time: datetime
    details: List[RecordResult] = field(default_factory=list)

    @property
    def failures(self) -> List[RecordResult]:
        return [item for item in self.details if not item.succeeded]

    def to_dict(self) -> Dict[str, object]:
        return {
            "summary": {
                "total_users": self.total_users,
                "files_generated": self.files_generated,
                "deployment_time": self.deployment_time.isoformat(),
            },
            "details": [item.to_dict() for item in self.details],
        }


__all__ = ["UserRecord", "SystemSetting", "DeploymentConfig", "RecordResult", "DeploymentOutcome"]
