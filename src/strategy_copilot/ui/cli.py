"""Command-line interface router for strategy-copilot."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import IO, Final

from strategy_copilot.config import (
    ConfigLoadError,
    ConfigValidationError,
    load_config,
    logging_from_config,
    redact_config,
    settings_from_config,
)
from strategy_copilot.domain.models import Turn
from strategy_copilot.gateway.base import ModelGateway
from strategy_copilot.gateway.scripted import ScriptedGateway
from strategy_copilot.observability.logging import setup_structured_logging, shutdown_logging
from strategy_copilot.pipeline.service import StrategyCopilot, TurnRequest
from strategy_copilot.protocol.envelope import build_envelope_text

OFFLINE_ASSISTANT_MESSAGE: Final[str] = (
    "Here is a welcome-gift draft for new visitors with a conservative budget."
)
OFFLINE_DECISION: Final[Mapping[str, object]] = {
    "mode": "PROPOSAL",
    "assistantMessage": OFFLINE_ASSISTANT_MESSAGE,
    "proposals": [
        {
            "templateId": "acquisition_welcome_gift",
            "branchId": "DEFAULT",
            "title": "Welcome Gift - Offline Draft",
            "rationale": "Offline demo proposal for exercising the full pipeline.",
            "confidence": 0.8,
            "policyPatch": {"budget": {"cap": 100}, "priority": 70},
        }
    ],
}


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="strategy-copilot",
        description=(
            "strategy-copilot — LLM strategy drafting turn pipeline.\n\n"
            "Common workflows:\n"
            "  strategy-copilot turn --offline -m 'new users'   Run one turn without network\n"
            "  strategy-copilot runtime                         Show provider/runtime info\n"
            "  strategy-copilot config                          Show effective config\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to copilot TOML config (default: ./copilot.toml if present).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # turn ----------------------------------------------------------------
    turn_parser = subparsers.add_parser(
        "turn",
        parents=[common],
        help="Run one chat turn and print the resulting Turn as JSON",
        description=(
            "Stream assistant tokens to stdout, then print the final Turn as JSON.\n\n"
            "Examples:\n"
            "  strategy-copilot turn --merchant-id m1 --session-id s1 -m '拉新 预算 120 元'\n"
            "  strategy-copilot turn --offline -m 'welcome gift for new users'\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    turn_parser.add_argument("--merchant-id", default="demo_merchant", help="Merchant identifier.")
    turn_parser.add_argument("--session-id", default="demo_session", help="Chat session identifier.")
    turn_parser.add_argument("--message", "-m", required=True, help="User message for this turn.")
    turn_parser.add_argument("--template-id", default="", help="Caller template override.")
    turn_parser.add_argument("--branch-id", default="", help="Caller branch override.")
    turn_parser.add_argument(
        "--publish-intent",
        action="store_true",
        default=False,
        help="Request publishing of ready proposals (requires --approval-token).",
    )
    turn_parser.add_argument("--approval-token", default="", help="Approval token for publishing.")
    turn_parser.add_argument(
        "--offline",
        action="store_true",
        default=False,
        help="Use a scripted in-process model instead of a remote provider.",
    )
    turn_parser.add_argument(
        "--no-stream",
        action="store_true",
        default=False,
        help="Do not echo streamed tokens; print only the final Turn.",
    )
    turn_parser.set_defaults(handler=_cmd_turn)

    # runtime -------------------------------------------------------------
    runtime_parser = subparsers.add_parser(
        "runtime",
        parents=[common],
        help="Show resolved provider, model, transport, and critic settings",
    )
    runtime_parser.set_defaults(handler=_cmd_runtime)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Show effective configuration (redacted)",
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_turn(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    settings = settings_from_config(config)
    handle = setup_structured_logging(logging_from_config(config))
    try:
        gateway: ModelGateway | None = offline_gateway() if args.offline else None
        copilot = StrategyCopilot(settings, gateway=gateway)
        request = TurnRequest(
            merchant_id=args.merchant_id,
            session_id=args.session_id,
            user_message=args.message,
            template_id=args.template_id,
            branch_id=args.branch_id,
            publish_intent=args.publish_intent,
            approval_token=args.approval_token,
        )
        turn = asyncio.run(
            stream_to(copilot, request, out=None if args.no_stream else sys.stdout)
        )
    finally:
        shutdown_logging(handle)
    _emit_json(turn.to_dict())
    return 0


def _cmd_runtime(args: argparse.Namespace) -> int:
    settings = settings_from_config(_load_effective_config(args))
    _emit_json(StrategyCopilot(settings).runtime_info())
    return 0


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    _emit_json({"command": "config", "config": redact_config(config)})
    return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def offline_gateway() -> ScriptedGateway:
    return ScriptedGateway(
        stream_text=build_envelope_text(OFFLINE_ASSISTANT_MESSAGE, dict(OFFLINE_DECISION)),
        chunk_size=16,
    )


async def stream_to(
    copilot: StrategyCopilot, request: TurnRequest, *, out: IO[str] | None
) -> Turn:
    """Echo token events to ``out`` as they arrive, then return the final Turn."""

    stream = copilot.stream_turn(request)
    async for event in stream.events():
        if out is None:
            continue
        if event.type == "token":
            out.write(event.text)
            out.flush()
        elif event.type == "end":
            out.write("\n")
            out.flush()
    return await stream.result()


def _emit_json(payload: Mapping[str, object]) -> None:
    print(json.dumps(payload, sort_keys=True, indent=2, ensure_ascii=False))


def _load_effective_config(args: argparse.Namespace) -> dict[str, object]:
    try:
        return load_config(getattr(args, "config_path", None))
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc


__all__ = ["CLIError", "build_parser", "offline_gateway", "run_cli", "stream_to"]
