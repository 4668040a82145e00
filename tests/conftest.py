from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path


@pytest.fixture(autouse=True)
def isolated_data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Keep HTTP caches and other runtime files out of the user's data directory."""

    data_dir = tmp_path / "stagediff-data"
    monkeypatch.setenv("STAGEDIFF_DATA_DIR", str(data_dir))
    return data_dir


@pytest.fixture
def write_pipeline(tmp_path: Path) -> Callable[[str], Path]:
    def write(content: str) -> Path:
        path = tmp_path / "pipeline.toml"
        path.write_text(content, encoding="utf-8")
        return path

    return write
