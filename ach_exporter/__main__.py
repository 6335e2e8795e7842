from __future__ import annotations

from ach_exporter.cli import main

if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
