"""Allow ``python -m z2mctl`` (used by the installed backup script)."""
from __future__ import annotations

from .cli import app

if __name__ == "__main__":
    app(prog_name="z2mctl")
