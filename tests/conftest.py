"""
Pytest configuration.

- Puts the repository root on sys.path so root-level `config.py` and the
  `paper_engine` package import under any invocation pattern.
- Strips PAPER_ENGINE_* variables from the environment so settings defaults
  are deterministic inside tests.
"""
from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]

repo_root_str = str(REPO_ROOT)
if repo_root_str not in sys.path:
    sys.path.insert(1 if len(sys.path) > 1 else 0, repo_root_str)


@pytest.fixture(autouse=True)
def _clean_engine_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("PAPER_ENGINE_"):
            monkeypatch.delenv(name, raising=False)
