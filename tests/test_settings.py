from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from canary_releaser.settings import Settings, load_settings, parse_duration

REQUIRED = {
    "repo": "acme/widget",
    "package_name_pattern": r"widget-.*\.tar\.gz$",
    "deploy_command": "deploy.sh",
    "healthcheck_command": "health.sh",
    "version_command": "cat /etc/widget/version",
}


def _write_config(path: Path, body: str) -> str:
    path.write_text(body, encoding="utf-8")
    return str(path)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (30, 30),
        ("45", 45.0),
        ("1m30s", 90.0),
        ("5m", 300.0),
        ("1h", 3600.0),
        ("250ms", 0.25),
    ],
)
def test_parse_duration(raw: object, expected: float) -> None:
    assert parse_duration(raw) == expected


@pytest.mark.parametrize("raw", ["", "soon", "5 m", "1m30"])
def test_parse_duration_rejects_garbage(raw: str) -> None:
    with pytest.raises(ValueError):
        parse_duration(raw)


def test_defaults_and_derived_values() -> None:
    settings = Settings(**REQUIRED)

    assert settings.save_assets_path == "/usr/local/src"
    assert settings.healthcheck_interval == 60.0
    assert settings.healthcheck_timeout == 30.0
    assert settings.healthcheck_retries == 3
    assert settings.canary_rollout_window == 300.0
    assert settings.rollout_window == 60.0
    assert settings.repository_polling_interval == 300.0
    assert settings.redis.db == 1
    assert settings.key_prefix == "acme/widget"
    assert settings.canary_lock_ttl == 600.0
    assert settings.rollout_lock_ttl == 60.0
    assert settings.member_ttl == 120.0


def test_missing_required_fields_fail_validation() -> None:
    with pytest.raises(ValidationError):
        Settings(repo="acme/widget")


def test_bad_package_pattern_fails_validation() -> None:
    with pytest.raises(ValidationError):
        Settings(**{**REQUIRED, "package_name_pattern": "widget-(["})


def test_file_then_environment_then_overrides(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path / "gacr.conf",
        """
repo = "acme/widget"
package_name_pattern = "\\\\.tar\\\\.gz$"
deploy_command = "deploy.sh"
healthcheck_command = "health.sh"
version_command = "version.sh"
rollout_window = "2m"
log_level = "DEBUG"

[redis]
host = "redis.internal"
key_prefix = "widget-prod"
""",
    )
    environ = {
        "GACR_ROLLOUT_WINDOW": "90s",
        "GACR_HEALTHCHECK_RETRIES": "5",
        "GACR_REDIS_PORT": "6380",
        "UNRELATED": "ignored",
    }

    settings = load_settings(
        config_path=config_path,
        overrides={"healthcheck_retries": 7, "rollback_command": None},
        environ=environ,
    )

    assert settings.package_name_pattern == r"\.tar\.gz$"
    assert settings.rollout_window == 90.0
    assert settings.healthcheck_retries == 7
    assert settings.rollback_command == ""
    assert settings.log_level == "debug"
    assert settings.redis.host == "redis.internal"
    assert settings.redis.port == 6380
    assert settings.key_prefix == "widget-prod"


def test_missing_config_file_is_not_fatal(tmp_path: Path) -> None:
    settings = load_settings(
        config_path=str(tmp_path / "absent.conf"),
        overrides=REQUIRED,
        environ={},
    )
    assert settings.repo == "acme/widget"


def test_malformed_config_file(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "gacr.conf", "repo = [unterminated")

    with pytest.raises(ValueError, match="failed to read config"):
        load_settings(config_path=config_path, environ={})
