from __future__ import annotations

import os
import subprocess
from functools import lru_cache
from importlib import metadata
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]


def _run_git_command(*args: str) -> str:
    """Return trimmed git command output or an empty string on failure."""
    try:
        output = subprocess.check_output(
            ["git", *args],
            cwd=REPO_ROOT,
            stderr=subprocess.DEVNULL,
        )
    except (subprocess.CalledProcessError, FileNotFoundError):
        return ""
    return output.decode().strip()


@lru_cache(maxsize=1)
def get_app_version() -> str:
    """
    Return the version string shown in ``/app-config``.

    An explicit APP_VERSION env var wins. Otherwise the installed package
    version is used, suffixed with the short git SHA when running from a
    checkout. Falls back to a dev sentinel.
    """
    env_version = os.environ.get("APP_VERSION")
    if env_version:
        return env_version

    try:
        package_version = metadata.version("meditrack")
    except metadata.PackageNotFoundError:
        package_version = ""
    short_sha = _run_git_command("rev-parse", "--short", "HEAD")
    if package_version and short_sha:
        return f"{package_version}+{short_sha}"
    return package_version or short_sha or "dev"
