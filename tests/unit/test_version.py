"""Version is read from pyproject.toml and exposed by the app."""

from __future__ import annotations

import re
import tomllib
from pathlib import Path

import keyhive
from keyhive import main as main_module

SEMVER_RE = re.compile(r"^\d+\.\d+\.\d+(-[a-zA-Z0-9.]+)?$")


def _read_pyproject_version() -> str:
    pyproject_path = Path(__file__).parent.parent.parent / "pyproject.toml"
    with open(pyproject_path, "rb") as f:
        return tomllib.load(f)["project"]["version"]


class TestVersionConsistency:
    def test_version_is_valid_semver(self):
        assert SEMVER_RE.match(keyhive.__version__)

    def test_package_version_matches_pyproject(self):
        assert keyhive.__version__ == _read_pyproject_version()

    def test_fastapi_app_version_matches_pyproject(self):
        assert main_module.create_app().version == _read_pyproject_version()
