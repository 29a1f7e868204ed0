"""Module entrypoint for ``python -m strategy_copilot``."""

from __future__ import annotations

from strategy_copilot.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
