"""Configuration management for the business card site generator."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

import yaml

PACKAGE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = PACKAGE_DIR.parent

DEFAULT_TEMPLATE_NAME = "business_card.html"
DEFAULT_GIT_TIMEOUT = 120


def _resolve_path(raw: object, base_path: Path | None) -> Path:
    candidate = Path(str(raw)).expanduser()
    if candidate.is_absolute():
        return candidate.resolve(strict=False)
    if base_path is not None:
        return (base_path / candidate).resolve(strict=False)
    return candidate.resolve(strict=False)


@dataclass(frozen=True)
class SiteConfig:
    """Filesystem and git settings used when building and publishing the site."""

    template_dir: Path
    logo_path: Path
    photo_dir: Path
    staging_dir: Path
    template_name: str = DEFAULT_TEMPLATE_NAME
    base_url: str = ""
    git_executable: str = "git"
    git_timeout_seconds: int = DEFAULT_GIT_TIMEOUT

    @staticmethod
    def defaults() -> "SiteConfig":
        return SiteConfig(
            template_dir=PACKAGE_DIR / "templates",
            logo_path=PACKAGE_DIR / "assets" / "logo.svg",
            photo_dir=(PROJECT_ROOT / "uploads" / "photos").resolve(strict=False),
            staging_dir=(PROJECT_ROOT / "data" / "deploy").resolve(strict=False),
        )

    @staticmethod
    def from_dict(data: Dict[str, object], base_path: Path | None = None) -> "SiteConfig":
        """Create a :class:`SiteConfig` from raw dictionary data, filling in defaults."""
        unknown = set(data.keys()) - {
            "template_dir",
            "template_name",
            "logo_path",
            "photo_dir",
            "staging_dir",
            "base_url",
            "git_executable",
            "git_timeout_seconds",
        }
        if unknown:
            raise ValueError(f"Unknown site configuration fields: {', '.join(sorted(unknown))}")

        defaults = SiteConfig.defaults()

        def path_or_default(key: str, default: Path) -> Path:
            value = data.get(key)
            if value in (None, ""):
                return default
            return _resolve_path(value, base_path)

        timeout = int(data.get("git_timeout_seconds", DEFAULT_GIT_TIMEOUT))
        if timeout <= 0:
            raise ValueError("git_timeout_seconds must be greater than zero")

        return SiteConfig(
            template_dir=path_or_default("template_dir", defaults.template_dir),
            template_name=str(data.get("template_name") or DEFAULT_TEMPLATE_NAME),
            logo_path=path_or_default("logo_path", defaults.logo_path),
            photo_dir=path_or_default("photo_dir", defaults.photo_dir),
            staging_dir=path_or_default("staging_dir", defaults.staging_dir),
            base_url=str(data.get("base_url") or "").rstrip("/"),
            git_executable=str(data.get("git_executable") or "git"),
            git_timeout_seconds=timeout,
        )


def load_site_config(config_path: Path) -> SiteConfig:
    """Load site settings from a YAML file, falling back to defaults when absent."""
    if not config_path.exists():
        return SiteConfig.defaults()

    with config_path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    if not isinstance(raw, dict):
        raise ValueError("Site configuration must be a mapping")

    section = raw.get("site", raw)
    if not isinstance(section, dict):
        raise ValueError("The 'site' key must contain a mapping")

    return SiteConfig.from_dict(section, base_path=config_path.parent)


def resolve_config_path(env_value: Optional[str]) -> Path:
    """Resolve the path to the configuration file."""
    if env_value:
        candidate = Path(env_value).expanduser().resolve(strict=False)
    else:
        candidate = (PROJECT_ROOT / "config" / "site.yaml").resolve(strict=False)
    return candidate


__all__ = ["SiteConfig", "load_site_config", "resolve_config_path"]
