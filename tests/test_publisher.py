from __future__ import annotations

import logging
from pathlib import Path

import pytest

from bizcards.errors import ConfigurationError, PublishError
from bizcards.models import DeploymentConfig
from bizcards.publisher import (
    BOT_EMAIL,
    BOT_NAME,
    Publisher,
    authenticated_url,
    redact,
    validate_repository_url,
)

from conftest import TEST_REPOSITORY, TEST_TOKEN, RecordingRunner, fixed_clock

CONFIG = DeploymentConfig(repository_url=TEST_REPOSITORY, access_token=TEST_TOKEN, branch="gh-pages")


def test_publish_runs_git_steps_in_order(tmp_path: Path) -> None:
    runner = RecordingRunner()
    publisher = Publisher(runner, now=fixed_clock)

    publisher.publish(tmp_path, CONFIG, record_count=3)

    assert runner.commands == [
        ["init"],
        ["config", "user.name", BOT_NAME],
        ["config", "user.email", BOT_EMAIL],
        ["remote", "add", "origin", f"https://{TEST_TOKEN}@github.com/example/cards.git"],
        ["add", "--all"],
        ["commit", "-m", "Deploy 3 digital business cards - 2024-01-02T03:04:05Z"],
        ["push", "--force", "origin", "HEAD:refs/heads/gh-pages"],
    ]
    assert all(cwd == tmp_path for _, cwd in runner.calls)


def test_failed_push_is_reported_without_token(tmp_path: Path) -> None:
    stderr = f"fatal: unable to access 'https://{TEST_TOKEN}@github.com/example/cards.git/': 403"
    runner = RecordingRunner(failures={"push": (128, stderr)})

    with pytest.raises(PublishError) as excinfo:
        Publisher(runner, now=fixed_clock).publish(tmp_path, CONFIG, record_count=1)

    error = excinfo.value
    assert error.phase == "push"
    assert TEST_TOKEN not in str(error)
    assert TEST_TOKEN not in (error.stderr or "")
    assert "https://***@github.com" in str(error)


def test_git_process_error_becomes_publish_error(tmp_path: Path) -> None:
    runner = RecordingRunner(errors={"init": "git executable not found: git"})

    with pytest.raises(PublishError) as excinfo:
        Publisher(runner).publish(tmp_path, CONFIG, record_count=1)

    assert excinfo.value.phase == "init"
    assert excinfo.value.__cause__ is None
    assert runner.commands == [["init"]]


def test_token_never_reaches_logs(tmp_path: Path, caplog) -> None:
    runner = RecordingRunner()

    with caplog.at_level(logging.DEBUG, logger="bizcards.publisher"):
        Publisher(runner, now=fixed_clock).publish(tmp_path, CONFIG, record_count=1)

    assert caplog.records
    assert TEST_TOKEN not in caplog.text


def test_unconfigured_publish_is_rejected(tmp_path: Path) -> None:
    runner = RecordingRunner()

    with pytest.raises(ConfigurationError):
        Publisher(runner).publish(tmp_path, DeploymentConfig(repository_url=TEST_REPOSITORY), record_count=1)
    assert runner.calls == []


def test_authenticated_url_requires_http_remote() -> None:
    assert authenticated_url("https://github.com:8443/a/b.git", "tok/en") == "https://tok%2Fen@github.com:8443/a/b.git"
    with pytest.raises(ConfigurationError):
        authenticated_url("git@github.com:a/b.git", TEST_TOKEN)


@pytest.mark.parametrize(
    "url",
    ["git@github.com:a/b.git", "ssh://github.com/a/b.git", "https://github.com:abc/a/b.git", "https://"],
)
def test_validate_repository_url_rejects_non_http_remotes(url: str) -> None:
    with pytest.raises(ConfigurationError):
        validate_repository_url(url)


def test_connection_check_reports_result() -> None:
    ok_runner = RecordingRunner()
    assert Publisher(ok_runner).test_connection(CONFIG) == (True, "GitHub connection test passed")
    assert ok_runner.commands[0][:2] == ["ls-remote", "--heads"]

    failing = RecordingRunner(failures={"ls-remote": (128, f"Authentication failed for {TEST_TOKEN}")})
    success, details = Publisher(failing).test_connection(CONFIG)
    assert success is False
    assert TEST_TOKEN not in details


def test_redact_replaces_every_secret() -> None:
    assert redact("a secret and secret", ["secret"]) == "a *** and ***"
    assert redact("nothing here", []) == "nothing here"
