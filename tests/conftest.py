"""
共享测试夹具
"""
from pathlib import Path

import pytest

from nano_dexter.core.policy import PolicyEngine

from .helpers import make_policy


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """一个小型项目目录"""
    root = tmp_path / "project"
    (root / "src" / "pkg").mkdir(parents=True)
    (root / "src" / "app.py").write_text("def main():\n    return 1\n", encoding="utf-8")
    (root / "src" / "pkg" / "util.py").write_text("# TODO: tidy\nVALUE = 42\n", encoding="utf-8")
    (root / "src" / "secrets.json").write_text('{"k": "v"}\n', encoding="utf-8")
    (root / "README.md").write_text("# Demo\n", encoding="utf-8")
    (root / "config").mkdir()
    (root / "config" / "settings.json").write_text("{}\n", encoding="utf-8")
    (root / "node_modules" / "lib").mkdir(parents=True)
    (root / "node_modules" / "lib" / "index.py").write_text("x = 1\n", encoding="utf-8")
    return root


@pytest.fixture
def engine(project: Path) -> PolicyEngine:
    return PolicyEngine(project, make_policy())
