"""UI package exports for the command-line surface."""

from strategy_copilot.ui.cli import build_parser, run_cli

__all__ = ["build_parser", "run_cli"]
