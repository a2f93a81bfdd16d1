"""Module entrypoint for ``python -m repobatch``."""

from __future__ import annotations

from repobatch.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
