"""Canary releaser command-line interface."""

from __future__ import annotations

import argparse
import json
import sys
from typing import Any

from pydantic import ValidationError

from canary_releaser.api import collect_status
from canary_releaser.logs import configure_logging, shutdown_logging
from canary_releaser.main import build_state
from canary_releaser.main import run as run_releaser
from canary_releaser.settings import DEFAULT_CONFIG_PATH, Settings, load_settings
from canary_releaser.store import SharedStore, StoreUnavailableError, create_store

# flag dest -> settings key; dotted keys are nested under ``redis``.
_FLAG_KEYS = {
    "repo": "repo",
    "github_token": "github_token",
    "github_api": "github_api",
    "deploy_command": "deploy_command",
    "rollback_command": "rollback_command",
    "healthcheck_command": "healthcheck_command",
    "version_command": "version_command",
    "slack_webhook_url": "slack_webhook_url",
    "slack_channel": "slack_channel",
    "redis_host": "redis.host",
    "redis_port": "redis.port",
    "redis_password": "redis.password",
    "redis_db": "redis.db",
    "redis_key_prefix": "redis.key_prefix",
    "package_name_pattern": "package_name_pattern",
    "log_level": "log_level",
    "save_assets_path": "save_assets_path",
    "canary_rollout_window": "canary_rollout_window",
    "rollout_window": "rollout_window",
    "health_check_interval": "healthcheck_interval",
    "repository_polling_interval": "repository_polling_interval",
    "healthcheck_retries": "healthcheck_retries",
    "healthcheck_timeout": "healthcheck_timeout",
    "include_prerelease": "include_prerelease",
    "store_backend": "store_backend",
    "status_port": "status_port",
    "once": "once",
}


def _common_flags() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="TOML config file")
    parser.add_argument("--repo", help="GitHub repository (owner/name)")
    parser.add_argument("--github-token")
    parser.add_argument("--github-api", help="GitHub API endpoint")
    parser.add_argument("--deploy-command")
    parser.add_argument("--rollback-command")
    parser.add_argument("--healthcheck-command")
    parser.add_argument("--version-command")
    parser.add_argument("--slack-webhook-url")
    parser.add_argument("--slack-channel")
    parser.add_argument("--redis-host")
    parser.add_argument("--redis-port", type=int)
    parser.add_argument("--redis-password")
    parser.add_argument("--redis-db", type=int)
    parser.add_argument("--redis-key-prefix", help="Key prefix (default: repo name)")
    parser.add_argument("--package-name-pattern", help="Regex matching the asset name")
    parser.add_argument("--log-level", choices=["debug", "info", "warn", "error"])
    parser.add_argument("--save-assets-path", help="Directory for downloaded assets")
    parser.add_argument("--canary-rollout-window", help="e.g. 5m")
    parser.add_argument("--rollout-window", help="e.g. 1m")
    parser.add_argument("--health-check-interval", help="e.g. 1m")
    parser.add_argument("--repository-polling-interval", help="e.g. 5m")
    parser.add_argument("--healthcheck-retries", type=int)
    parser.add_argument("--healthcheck-timeout", help="e.g. 30s")
    parser.add_argument(
        "--include-prerelease", action="store_const", const=True, default=None
    )
    parser.add_argument("--store-backend", choices=["redis", "inmemory"])
    return parser


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Download GitHub release assets and roll them out through a canary."
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    common = _common_flags()

    run = subparsers.add_parser("run", parents=[common], help="Run the release loops")
    run.add_argument(
        "--once",
        action="store_const",
        const=True,
        default=None,
        help="Run one rollout tick and one canary tick, then exit",
    )
    run.add_argument("--status-port", type=int, help="Serve the status API on this port")

    subparsers.add_parser(
        "status", parents=[common], help="Print the fleet coordination state as JSON"
    )
    return parser


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for dest, key in _FLAG_KEYS.items():
        value = getattr(args, dest, None)
        if value is None:
            continue
        if key.startswith("redis."):
            overrides.setdefault("redis", {})[key.removeprefix("redis.")] = value
        else:
            overrides[key] = value
    return overrides


def _load(args: argparse.Namespace) -> Settings | None:
    try:
        return load_settings(config_path=args.config, overrides=_overrides(args))
    except (ValidationError, ValueError) as exc:
        print(f"failed to load config: {exc}", file=sys.stderr)
        return None


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = _load(args)
    if settings is None:
        return 1

    try:
        configure_logging(
            settings.log_level,
            slack_webhook_url=settings.slack_webhook_url,
            slack_channel=settings.slack_channel,
        )
    except ValueError as exc:
        print(f"failed to init logger: {exc}", file=sys.stderr)
        return 1

    try:
        return _dispatch(parser, args, settings)
    finally:
        shutdown_logging()


def _dispatch(
    parser: argparse.ArgumentParser, args: argparse.Namespace, settings: Settings
) -> int:
    if args.command == "run":
        try:
            run_releaser(settings)
        except Exception as exc:
            print(f"failed to run server: {exc}", file=sys.stderr)
            return 1
        return 0

    if args.command == "status":
        store: SharedStore | None = None
        try:
            store = create_store(settings)
            status = collect_status(build_state(settings, store))
        except StoreUnavailableError as exc:
            print(f"failed to read state: {exc}", file=sys.stderr)
            return 1
        finally:
            if store is not None:
                store.close()
        print(json.dumps(status.model_dump(mode="json"), indent=2, sort_keys=True))
        return 0

    parser.error(f"Unsupported command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
