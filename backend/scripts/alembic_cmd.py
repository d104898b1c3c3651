"""在 backend 目录下运行 alembic；不带参数时等同于 upgrade head"""
from __future__ import annotations

import os
import sys
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv) or ["upgrade", "head"]

    backend_dir = Path(__file__).resolve().parents[1]
    sys.path.insert(0, str(backend_dir))
    (backend_dir / "data").mkdir(exist_ok=True)

    from alembic.config import main as alembic_main

    old_cwd = os.getcwd()
    try:
        os.chdir(str(backend_dir))
        alembic_main(argv=["-c", str(backend_dir / "alembic.ini"), *args], prog="alembic")
    finally:
        os.chdir(old_cwd)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
