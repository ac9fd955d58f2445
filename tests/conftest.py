"""Shared fixtures: isolated storage roots and throwaway shell scripts."""
from __future__ import annotations

import os
import stat
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from imgforge import storage  # noqa: E402


@pytest.fixture
def dirs(tmp_path: Path, monkeypatch) -> dict:
    """Point every storage root at the test's temp dir."""
    layout = {
        "home": tmp_path / "home",
        "scratch": tmp_path / "scratch",
        "uploads": tmp_path / "uploads",
        "workdir": tmp_path / "workdir",
    }
    for d in layout.values():
        d.mkdir()
    monkeypatch.setattr(storage, "HOME_DIR", layout["home"])
    monkeypatch.setattr(storage, "SCRATCH_DIR", layout["scratch"])
    monkeypatch.setattr(storage, "UPLOAD_DIR", layout["uploads"])
    monkeypatch.setattr(storage, "WORKDIR", layout["workdir"])
    return layout


@pytest.fixture
def make_script(tmp_path: Path):
    """Write an executable /bin/sh script and return its path."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()

    def _make(name: str, body: str) -> str:
        path = bin_dir / name
        path.write_text("#!/bin/sh\n" + body.lstrip("\n"), encoding="utf-8")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return _make


@pytest.fixture
def echo_dd(make_script) -> str:
    """Stands in for dd: prints its arguments on stdout and a progress line on stderr."""
    return make_script(
        "dd",
        """
echo "$@"
printf '4194304 bytes copied\\r8388608 bytes copied\\n' >&2
""",
    )


@pytest.fixture
def fake_build(make_script) -> str:
    """Stands in for imgforge.sh: echoes a few env values and leaves custom.img behind."""
    return make_script(
        "imgforge.sh",
        """
echo "building $HOSTNAME board=$BOARD mode=$MODE"
echo "image choice $IMG_CHOICE"
echo "fake warning" >&2
printf 'img' > custom.img
""",
    )
