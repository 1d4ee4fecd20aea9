"""Shared fixtures for CLI command tests."""

from __future__ import annotations

from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def no_global_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the user's global config out of CLI tests."""
    monkeypatch.setattr(
        "flaketree.config.loader.GLOBAL_CONFIG_PATH", tmp_path / "no-such-config.yaml"
    )


@pytest.fixture
def flake_dir(tmp_path: Path) -> Path:
    flake = tmp_path / "flake"
    flake.mkdir()
    (flake / "flake.nix").write_text("{ outputs = _: { }; }")
    return flake
