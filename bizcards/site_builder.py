"""Render employee records into the static business card site."""
from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from jinja2 import Environment, FileSystemLoader, TemplateError, select_autoescape

from .config import SiteConfig
from .database import EMPLOYEE_ID_PATTERN
from .errors import GenerationError
from .models import RecordResult, UserRecord
from .photos import PHOTO_URL_PREFIX
from .staging import ASSETS_DIRNAME
from .vcard import build_vcard

logger = logging.getLogger("bizcards.site_builder")

HTML_FILENAME = "index.html"
VCARD_FILENAME = "contact.vcf"
LOGO_FILENAME = "logo.svg"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def photo_asset_name(employee_id: str) -> str:
    return f"{employee_id}-photo.jpg"


class PhotoStore:
    """Reads uploaded photos from a directory by file name."""

    def __init__(self, directory: Path) -> None:
        self._directory = directory

    def read(self, photo_url: str) -> Optional[bytes]:
        """Return the photo bytes, or ``None`` when the file does not exist.

        Only the final path component of ``photo_url`` is used, so a stored URL
        such as ``/uploads/photos/a.jpg`` resolves to ``<directory>/a.jpg``.
        """

        name = PurePosixPath(urlparse(photo_url).path).name
        if not name or name in {".", ".."}:
            return None
        path = self._directory / name
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None


@dataclass
class BuildResult:
    files_generated: int = 0
    details: List[RecordResult] = field(default_factory=list)

    @property
    def succeeded(self) -> List[RecordResult]:
        return [item for item in self.details if item.succeeded]

    @property
    def failures_count(self) -> int:
        return len(self.details) - len(self.succeeded)


class SiteBuilder:
    """Produces ``<employee_id>/index.html``, ``contact.vcf`` and shared assets."""

    def __init__(
        self,
        config: SiteConfig,
        *,
        photo_store: Optional[PhotoStore] = None,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._config = config
        self._photos = photo_store or PhotoStore(config.photo_dir)
        self._now = now or _utcnow
        self._environment = Environment(
            loader=FileSystemLoader(str(config.template_dir)),
            autoescape=select_autoescape(["html", "htm", "xml"]),
            keep_trailing_newline=True,
        )

    def render_html(self, record: UserRecord, *, base_url: str = "", has_photo: Optional[bool] = None) -> str:
        if has_photo is None:
            has_photo = bool(record.photo_url)
        template = self._environment.get_template(self._config.template_name)
        return template.render(
            user=record,
            base_url=base_url.rstrip("/"),
            generated_at=self._now().isoformat(),
            vcard_href=VCARD_FILENAME,
            photo_src=f"../{ASSETS_DIRNAME}/{photo_asset_name(record.employee_id)}" if has_photo else None,
            logo_src=f"../{ASSETS_DIRNAME}/{LOGO_FILENAME}",
        )

    def render_vcard(self, record: UserRecord, *, base_url: str = "") -> str:
        return build_vcard(record, base_url=base_url, now=self._now)

    def render_preview(self, record: UserRecord, *, base_url: str = "", vcard_href: str = VCARD_FILENAME) -> str:
        """Render the card for the admin UI, pointing at the uploaded photo instead of site assets."""

        photo_name = PurePosixPath(urlparse(record.photo_url).path).name if record.photo_url else ""
        template = self._environment.get_template(self._config.template_name)
        return template.render(
            user=record,
            base_url=base_url.rstrip("/"),
            generated_at=self._now().isoformat(),
            vcard_href=vcard_href,
            photo_src=f"{PHOTO_URL_PREFIX}{photo_name}" if photo_name else None,
            logo_src=None,
            is_preview=True,
        )

    def render_all(self, records: Sequence[UserRecord], *, base_url: str = "") -> List[RecordResult]:
        """Render every record in memory and report per-record success or failure."""

        results: List[RecordResult] = []
        for record in records:
            try:
                self._render_record(record, base_url, has_photo=bool(record.photo_url))
            except GenerationError as exc:
                logger.error("Error generating files for %s: %s", record.employee_id, exc)
                results.append(
                    RecordResult(employee_id=record.employee_id, full_name=record.full_name, error=str(exc))
                )
                continue
            results.append(
                RecordResult(
                    employee_id=record.employee_id,
                    full_name=record.full_name,
                    files=[HTML_FILENAME, VCARD_FILENAME],
                    url=f"/{record.employee_id}/",
                )
            )
        return results

    def build(self, records: Sequence[UserRecord], root: Path, *, base_url: str = "") -> BuildResult:
        """Write every record into ``root``; a failing record is reported, not raised."""

        result = BuildResult()
        assets_dir = root / ASSETS_DIRNAME
        assets_dir.mkdir(parents=True, exist_ok=True)

        if self._copy_logo(assets_dir):
            result.files_generated += 1

        for record in records:
            try:
                written = self._build_record(record, root, assets_dir, base_url)
            except GenerationError as exc:
                logger.error("Error generating files for %s: %s", record.employee_id, exc)
                result.details.append(
                    RecordResult(
                        employee_id=record.employee_id,
                        full_name=record.full_name,
                        error=str(exc),
                    )
                )
                continue

            result.files_generated += written
            result.details.append(
                RecordResult(
                    employee_id=record.employee_id,
                    full_name=record.full_name,
                    files=[HTML_FILENAME, VCARD_FILENAME],
                    url=f"/{record.employee_id}/",
                )
            )

        return result

    def preview(self, records: Sequence[UserRecord]) -> Dict[str, object]:
        """Describe the tree :meth:`build` would produce without touching the disk."""

        assets: List[str] = [LOGO_FILENAME]
        users: Dict[str, object] = {}
        for record in records:
            photo = photo_asset_name(record.employee_id) if record.photo_url else None
            users[record.employee_id] = {
                "name": record.full_name,
                "files": [HTML_FILENAME, VCARD_FILENAME],
                "photo": photo,
            }
            if photo:
                assets.append(photo)
        return {"assets": assets, "users": users}

    def _copy_logo(self, assets_dir: Path) -> bool:
        try:
            shutil.copyfile(self._config.logo_path, assets_dir / LOGO_FILENAME)
        except OSError:
            logger.warning("Logo file not found at %s, skipping", self._config.logo_path)
            return False
        return True

    def _ensure_publishable(self, employee_id: str) -> None:
        if not EMPLOYEE_ID_PATTERN.fullmatch(employee_id) or employee_id.lower() == ASSETS_DIRNAME:
            raise GenerationError(employee_id, f"Employee ID {employee_id!r} is not safe to publish")

    def _render_record(self, record: UserRecord, base_url: str, *, has_photo: bool) -> Tuple[str, str]:
        employee_id = record.employee_id
        self._ensure_publishable(employee_id)
        try:
            html = self.render_html(record, base_url=base_url, has_photo=has_photo)
        except TemplateError as exc:
            raise GenerationError(employee_id, f"Template rendering failed: {exc}") from exc
        return html, self.render_vcard(record, base_url=base_url)

    def _build_record(self, record: UserRecord, root: Path, assets_dir: Path, base_url: str) -> int:
        employee_id = record.employee_id
        self._ensure_publishable(employee_id)
        photo: Optional[bytes] = None
        if record.photo_url:
            try:
                photo = self._photos.read(record.photo_url)
            except OSError as exc:
                raise GenerationError(employee_id, f"Photo could not be read: {exc.strerror or exc}") from exc
            if photo is None:
                logger.warning("Photo not found for %s, skipping", employee_id)

        html, vcard = self._render_record(record, base_url, has_photo=photo is not None)

        user_dir = root / employee_id
        photo_path = assets_dir / photo_asset_name(employee_id)
        try:
            user_dir.mkdir(parents=True, exist_ok=True)
            (user_dir / HTML_FILENAME).write_text(html, encoding="utf-8")
            (user_dir / VCARD_FILENAME).write_text(vcard, encoding="utf-8")
            if photo is not None:
                photo_path.write_bytes(photo)
        except OSError as exc:
            shutil.rmtree(user_dir, ignore_errors=True)
            photo_path.unlink(missing_ok=True)
            raise GenerationError(employee_id, f"Failed to write files: {exc}") from exc

        return 3 if photo is not None else 2


__all__ = ["SiteBuilder", "PhotoStore", "BuildResult", "photo_asset_name"]
