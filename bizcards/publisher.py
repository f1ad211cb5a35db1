"""Publish a staged site to a remote git repository."""
from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Sequence, Tuple
from urllib.parse import quote, urlsplit, urlunsplit

from .errors import ConfigurationError, PublishError
from .models import DeploymentConfig

logger = logging.getLogger("bizcards.publisher")

BOT_NAME = "Digital Business Cards Bot"
BOT_EMAIL = "noreply@system.local"
REMOTE_NAME = "origin"
REDACTED = "***"


class GitError(RuntimeError):
    """Raised when a git process cannot be started or does not finish in time."""


@dataclass
class CommandResult:
    """Result of an executed git command."""

    command: Sequence[str]
    exit_status: int
    stdout: str
    stderr: str


class CommandRunner(Protocol):
    def run(self, args: Sequence[str], *, cwd: Optional[Path] = None, timeout: int = 120) -> CommandResult:
        ...


class GitCommandRunner:
    """Runs git locally without ever prompting for credentials."""

    def __init__(self, executable: str = "git") -> None:
        self._executable = executable

    def run(self, args: Sequence[str], *, cwd: Optional[Path] = None, timeout: int = 120) -> CommandResult:
        command = [self._executable, *args]
        env = dict(os.environ)
        env["GIT_TERMINAL_PROMPT"] = "0"
        try:
            completed = subprocess.run(
                command,
                cwd=str(cwd) if cwd is not None else None,
                env=env,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise GitError(f"git executable not found: {self._executable}") from exc
        except subprocess.TimeoutExpired as exc:
            raise GitError(f"git {args[0] if args else ''} timed out after {timeout} seconds") from exc
        except OSError as exc:
            raise GitError(f"git could not be started: {exc}") from exc

        return CommandResult(
            command=list(args),
            exit_status=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )


def validate_repository_url(repository_url: str) -> None:
    """Raise :class:`ConfigurationError` unless ``repository_url`` is an http(s) URL."""

    parts = urlsplit(repository_url.strip())
    if parts.scheme not in {"https", "http"} or not parts.hostname:
        raise ConfigurationError("Repository URL must be an http(s) URL")
    try:
        parts.port
    except ValueError:
        raise ConfigurationError("Repository URL has an invalid port") from None


def authenticated_url(repository_url: str, access_token: str) -> str:
    """Splice ``access_token`` into the authority of an http(s) repository URL."""

    validate_repository_url(repository_url)
    parts = urlsplit(repository_url.strip())
    host = parts.hostname
    if parts.port is not None:
        host = f"{host}:{parts.port}"
    netloc = f"{quote(access_token, safe='')}@{host}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Publisher:
    """Initialises a repository in the staging directory and force-pushes it."""

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        *,
        timeout: int = 120,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._runner = runner or GitCommandRunner()
        self._timeout = timeout
        self._now = now or _utcnow

    def commit_message(self, record_count: int) -> str:
        timestamp = self._now().isoformat().replace("+00:00", "Z")
        return f"Deploy {record_count} digital business cards - {timestamp}"

    def publish(self, directory: Path, config: DeploymentConfig, *, record_count: int) -> CommandResult:
        if not config.is_configured:
            raise ConfigurationError("GitHub configuration is not complete")

        secrets = self._secrets(config)
        remote_url = authenticated_url(str(config.repository_url), str(config.access_token))

        steps: List[Tuple[str, str, List[str]]] = [
            ("init", "initialise repository", ["init"]),
            ("configure_identity", "configure commit author", ["config", "user.name", BOT_NAME]),
            ("configure_identity", "configure commit author", ["config", "user.email", BOT_EMAIL]),
            ("add_remote", "register remote", ["remote", "add", REMOTE_NAME, remote_url]),
            ("stage", "stage generated files", ["add", "--all"]),
            ("commit", "commit generated files", ["commit", "-m", self.commit_message(record_count)]),
            (
                "push",
                f"push to branch '{config.branch}'",
                ["push", "--force", REMOTE_NAME, f"HEAD:refs/heads/{config.branch}"],
            ),
        ]

        results = [
            self._execute(args, phase=phase, action=action, cwd=directory, secrets=secrets)
            for phase, action, args in steps
        ]

        logger.info(
            "Pushed %s business cards to %s (branch %s)",
            record_count,
            redact(str(config.repository_url), secrets),
            config.branch,
        )
        return results[-1]

    def test_connection(self, config: DeploymentConfig) -> Tuple[bool, str]:
        """Check that the remote is reachable with the configured credentials."""

        if not config.is_configured:
            raise ConfigurationError("GitHub configuration is not complete")

        secrets = self._secrets(config)
        remote_url = authenticated_url(str(config.repository_url), str(config.access_token))
        try:
            self._execute(
                ["ls-remote", "--heads", remote_url],
                phase="test_connection",
                action="reach remote repository",
                cwd=None,
                secrets=secrets,
            )
        except PublishError as exc:
            return False, str(exc)
        return True, "GitHub connection test passed"

    def _secrets(self, config: DeploymentConfig) -> List[str]:
        token = str(config.access_token or "")
        return [value for value in {token, quote(token, safe="")} if value]

    def _execute(
        self,
        args: List[str],
        *,
        phase: str,
        action: str,
        cwd: Optional[Path],
        secrets: Sequence[str],
    ) -> CommandResult:
        logger.debug("Running git %s", redact(" ".join(args), secrets))
        try:
            result = self._runner.run(args, cwd=cwd, timeout=self._timeout)
        except GitError as exc:
            raise PublishError(f"Failed to {action}: {redact(str(exc), secrets)}", phase=phase) from None

        if result.exit_status != 0:
            detail = (result.stderr or result.stdout).strip()
            message = f"Failed to {action} (git exited with status {result.exit_status})"
            if detail:
                message = f"{message}: {detail}"
            raise PublishError(redact(message, secrets), phase=phase, stderr=redact(result.stderr, secrets))
        return result


def redact(text: str, secrets: Sequence[str]) -> str:
    for secret in sorted(secrets, key=len, reverse=True):
        if secret:
            text = text.replace(secret, REDACTED)
    return text


__all__ = [
    "Publisher",
    "GitCommandRunner",
    "GitError",
    "CommandResult",
    "CommandRunner",
    "authenticated_url",
    "validate_repository_url",
    "redact",
    "BOT_NAME",
    "BOT_EMAIL",
]
