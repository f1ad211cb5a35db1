"""Deployment pipeline: validate, stage, generate, publish and record the outcome."""
from __future__ import annotations

import enum
import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Protocol, Sequence

from .config import SiteConfig
from .database import BRANCH_KEY, LAST_DEPLOYMENT_KEY, REPOSITORY_URL_KEY, SITE_BASE_URL_KEY
from .errors import ConfigurationError, DeploymentError, NoDataError
from .models import DeploymentConfig, DeploymentOutcome, UserRecord
from .publisher import GitCommandRunner, Publisher, validate_repository_url
from .site_builder import BuildResult, SiteBuilder
from .staging import StagingArea

logger = logging.getLogger("bizcards.deployments")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecordSource(Protocol):
    def list_all_records(self) -> Sequence[UserRecord]:
        ...


class SettingsStore(Protocol):
    def get_setting(self, key: str) -> Optional[str]:
        ...

    def set_setting(self, key: str, value: Optional[str], description: Optional[str] = None) -> object:
        ...

    def get_github_config(self) -> DeploymentConfig:
        ...

    def is_deployment_enabled(self) -> bool:
        ...


class DeploymentState(str, enum.Enum):
    IDLE = "idle"
    VALIDATING_CONFIG = "validating_config"
    LOADING_RECORDS = "loading_records"
    STAGING = "staging"
    GENERATING = "generating"
    PUBLISHING = "publishing"
    RECORDING_OUTCOME = "recording_outcome"
    ERROR = "error"


class OutcomeRecorder:
    """Persists the last successful deployment time and assembles the report."""

    def __init__(self, settings: SettingsStore) -> None:
        self._settings = settings

    def record(self, build: BuildResult, *, total_users: int, deployed_at: datetime) -> DeploymentOutcome:
        self._settings.set_setting(
            LAST_DEPLOYMENT_KEY,
            deployed_at.isoformat(),
            "Time of the last successful deployment",
        )
        return DeploymentOutcome(
            total_users=total_users,
            files_generated=build.files_generated,
            deployment_time=deployed_at,
            details=list(build.details),
        )


class DeploymentPipeline:
    """Runs one deployment at a time against the configured staging directory."""

    def __init__(
        self,
        records: RecordSource,
        settings: SettingsStore,
        site_config: SiteConfig,
        *,
        builder: Optional[SiteBuilder] = None,
        publisher: Optional[Publisher] = None,
        staging: Optional[StagingArea] = None,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._records = records
        self._settings = settings
        self._site_config = site_config
        self._now = now or _utcnow
        self._builder = builder or SiteBuilder(site_config, now=self._now)
        self._publisher = publisher or Publisher(
            GitCommandRunner(site_config.git_executable),
            timeout=site_config.git_timeout_seconds,
            now=self._now,
        )
        self._staging = staging or StagingArea(site_config.staging_dir)
        self._recorder = OutcomeRecorder(settings)
        self._state = DeploymentState.IDLE
        self._last_error: Optional[str] = None
        self._state_lock = threading.Lock()

    @property
    def state(self) -> DeploymentState:
        with self._state_lock:
            return self._state

    @property
    def builder(self) -> SiteBuilder:
        return self._builder

    def base_url(self) -> str:
        configured = self._settings.get_setting(SITE_BASE_URL_KEY)
        return (configured or self._site_config.base_url or "").rstrip("/")

    def status(self) -> Dict[str, object]:
        configuration_error: Optional[str] = None
        try:
            config = self._settings.get_github_config()
        except ConfigurationError as exc:
            # Token unreadable; fall back to the plain settings.
            configuration_error = str(exc)
            config = DeploymentConfig(
                repository_url=self._settings.get_setting(REPOSITORY_URL_KEY) or None,
                branch=self._settings.get_setting(BRANCH_KEY) or "main",
            )
        with self._state_lock:
            state = self._state.value
            last_error = self._last_error
        return {
            "deployment_enabled": self._settings.is_deployment_enabled(),
            "github_configured": config.is_configured,
            "repository_url": config.repository_url,
            "branch": config.branch,
            "last_deployment": self._settings.get_setting(LAST_DEPLOYMENT_KEY),
            "state": state,
            "last_error": last_error,
            "configuration_error": configuration_error,
        }

    def preview(self) -> Dict[str, object]:
        records = list(self._records.list_all_records())
        return {
            "total_users": len(records),
            "users": [
                {
                    "employee_id": record.employee_id,
                    "full_name": record.full_name,
                    "url_path": f"/{record.employee_id}/",
                }
                for record in records
            ],
            "structure": self._builder.preview(records),
        }

    def test_connection(self) -> Dict[str, object]:
        config = self._settings.get_github_config()
        if not config.is_configured:
            raise ConfigurationError("GitHub configuration is not complete")
        success, details = self._publisher.test_connection(config)
        return {"status": "success" if success else "failed", "details": details}

    def run(self) -> DeploymentOutcome:
        """Execute a full deployment or raise a :class:`DeploymentError`."""

        with self._staging.exclusive():
            try:
                outcome = self._run_locked()
            except DeploymentError as exc:
                self._fail(f"Deployment failed during {exc.phase}: {exc}")
                raise
            except Exception:
                self._fail("Deployment failed unexpectedly")
                raise
            self._transition(DeploymentState.IDLE)
            return outcome

    def _run_locked(self) -> DeploymentOutcome:
        self._transition(DeploymentState.VALIDATING_CONFIG)
        config = self._settings.get_github_config()
        if not config.is_configured:
            raise ConfigurationError(
                "GitHub configuration is not complete. "
                "Please configure repository URL and access token first."
            )
        if not self._settings.is_deployment_enabled():
            raise ConfigurationError("Deployment functionality is disabled")
        validate_repository_url(str(config.repository_url))

        self._transition(DeploymentState.LOADING_RECORDS)
        records: List[UserRecord] = list(self._records.list_all_records())
        if not records:
            raise NoDataError("No users found to deploy")

        self._transition(DeploymentState.STAGING)
        with self._staging.staged() as root:
            self._transition(DeploymentState.GENERATING)
            build = self._builder.build(records, root, base_url=self.base_url())
            if not build.succeeded:
                raise DeploymentError("No business cards could be generated", phase="generating")
            if build.failures_count:
                logger.warning(
                    "%s of %s records failed to generate and will not be published",
                    build.failures_count,
                    len(records),
                )

            self._transition(DeploymentState.PUBLISHING)
            self._publisher.publish(root, config, record_count=len(records))

        self._transition(DeploymentState.RECORDING_OUTCOME)
        outcome = self._recorder.record(build, total_users=len(records), deployed_at=self._now())
        logger.info(
            "Deployment completed: %s users, %s files generated",
            outcome.total_users,
            outcome.files_generated,
        )
        return outcome

    def _transition(self, state: DeploymentState) -> None:
        with self._state_lock:
            self._state = state
            if state is DeploymentState.VALIDATING_CONFIG:
                self._last_error = None
        logger.debug("Deployment state: %s", state.value)

    def _fail(self, message: str) -> None:
        with self._state_lock:
            self._state = DeploymentState.ERROR
            self._last_error = message
        logger.error(message)


__all__ = [
    "DeploymentPipeline",
    "DeploymentState",
    "OutcomeRecorder",
    "RecordSource",
    "SettingsStore",
]
