"""Pytest configuration: import the backend package from apps/backend and isolate state."""

import os
import sys
import tempfile
from pathlib import Path

_BACKEND_ROOT = Path(__file__).resolve().parents[1] / "apps" / "backend"
if str(_BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(_BACKEND_ROOT))

# 既定 DB はリポジトリ外の一時ディレクトリへ向け、テストが作業ツリーを汚さないようにする。
# 個々のテストは tmp_path を使って独立した DB を作ること。
os.environ.setdefault(
    "SRS_DB_PATH", str(Path(tempfile.gettempdir()) / "pinyin-srs-tests" / "srs.sqlite3")
)
os.environ.setdefault("ENVIRONMENT", "test")
