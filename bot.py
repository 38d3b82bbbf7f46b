#!/usr/bin/env python3
from __future__ import annotations

from pathlib import Path
import sys

from dotenv import load_dotenv

ROOT = Path(__file__).resolve().parent
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

load_dotenv(dotenv_path=ROOT / ".env", override=False)

from clob_quoter.main import cli  # noqa: E402


if __name__ == "__main__":
    raise SystemExit(cli())
