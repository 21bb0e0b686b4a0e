from __future__ import annotations

import os

import pytest

from canary_releaser.executor import CommandError, CommandExecutor


def _executor(**extra: str) -> CommandExecutor:
    return CommandExecutor(environ={"PATH": os.environ.get("PATH", "/usr/bin:/bin"), **extra})


def test_run_injects_release_tag_and_asset_file() -> None:
    output = _executor(GREETING="hi").run(
        'echo "$GREETING $RELEASE_TAG $ASSET_FILE"', "v1.1.0", "/srv/widget.tar.gz"
    )
    assert output == "hi v1.1.0 /srv/widget.tar.gz\n"


def test_run_failure_carries_combined_output() -> None:
    with pytest.raises(CommandError) as excinfo:
        _executor().run("echo out; echo err >&2; exit 3", "v1.1.0", "/srv/widget.tar.gz")

    assert excinfo.value.returncode == 3
    assert "out" in excinfo.value.output
    assert "err" in excinfo.value.output


def test_run_times_out() -> None:
    with pytest.raises(CommandError, match="timed out"):
        _executor().run("sleep 5", "v1.1.0", "", timeout_s=0.2)


def test_query_returns_trimmed_stdout() -> None:
    assert _executor().query("printf '  v1.0.0\\n\\n'") == "v1.0.0"


def test_query_failure_raises() -> None:
    with pytest.raises(CommandError) as excinfo:
        _executor().query("exit 2")
    assert excinfo.value.returncode == 2
