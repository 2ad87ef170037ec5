# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Command line front end for the relay library.

    relay status
    relay chat anthropic claude-sonnet-4-5 "Hello"
    relay reset anthropic_env_1
    relay pin gemini gemini-2.5-pro gemini_env_2
    relay balance openai on
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler

from relay_library.client.transport import ChatRequest
from relay_library.config import RelayConfig
from relay_library.context import RelayContext
from relay_library.error_handler import RelayError
from relay_library.utils.cancellation import CancellationToken

from .render import EventRenderer, build_status_table

console = Console()
logger = logging.getLogger("relay_app")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="relay", description="Multi-account LLM relay with quota-aware failover"
    )
    parser.add_argument(
        "--data-dir", type=Path, default=None, help="Directory for accounts and quota state."
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    sub = parser.add_subparsers(dest="command", required=True)

    status = sub.add_parser("status", help="Show accounts, cooldowns and pins.")
    status.add_argument("--provider", help="Only show this provider.")

    chat = sub.add_parser("chat", help="Send one prompt and stream the answer.")
    chat.add_argument("provider")
    chat.add_argument("model")
    chat.add_argument("prompt")
    chat.add_argument("--dialect", choices=["openai", "anthropic", "gemini"], default=None)
    chat.add_argument("--system", default=None, help="System prompt.")
    chat.add_argument("--max-tokens", type=int, default=None)
    chat.add_argument("--temperature", type=float, default=None)
    chat.add_argument("--no-thinking", action="store_true", help="Hide reasoning output.")

    reset = sub.add_parser("reset", help="Clear an account's quota cooldown.")
    reset.add_argument("credential_id")

    pin = sub.add_parser("pin", help="Pin a model to an account, or clear the pin.")
    pin.add_argument("provider")
    pin.add_argument("model")
    pin.add_argument("credential_id", nargs="?", default=None)

    balance = sub.add_parser("balance", help="Turn load balancing on or off.")
    balance.add_argument("provider")
    balance.add_argument("state", choices=["on", "off"])
    return parser


# =============================================================================
# COMMANDS
# =============================================================================


async def cmd_status(ctx: RelayContext, args) -> int:
    providers = [args.provider] if args.provider else ctx.registry.get_providers()
    if not providers:
        console.print(
            "[yellow]No accounts registered.[/yellow] Set <PROVIDER>_API_KEY in .env to import keys."
        )
        return 0
    states = ctx.quota_store.snapshot()
    for provider in providers:
        routing = ctx.registry.get_routing(provider)
        console.print(
            build_status_table(
                provider,
                ctx.registry.get_accounts(provider),
                states,
                routing.model_assignments,
                routing.load_balance_enabled,
            )
        )
    return 0


async def cmd_chat(ctx: RelayContext, args) -> int:
    request = ChatRequest(
        model=args.model,
        messages=[{"role": "user", "content": args.prompt}],
        system=args.system,
        max_tokens=args.max_tokens,
        temperature=args.temperature,
    )
    renderer = EventRenderer(console, show_thinking=not args.no_thinking)
    cancel = CancellationToken()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel.cancel)
    except (NotImplementedError, RuntimeError):
        # Windows event loops do not support signal handlers
        pass

    try:
        result = await ctx.orchestrator.execute(
            args.provider,
            request,
            sink=renderer,
            cancel=cancel,
            dialect=args.dialect,
            output_thinking=not args.no_thinking,
        )
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass

    renderer.footer(result.outcome, result.credential_id, len(result.attempts))
    if result.pinned:
        console.print(f"[dim]Pinned {args.model} to {result.credential_id}[/dim]")
    return 0


async def cmd_reset(ctx: RelayContext, args) -> int:
    if ctx.registry.get_account(args.credential_id) is None:
        console.print(f"[red]Unknown account:[/red] {args.credential_id}")
        return 1
    await ctx.quota_store.clear_exceeded(args.credential_id)
    console.print(f"Cooldown cleared for [bold]{args.credential_id}[/bold]")
    return 0


async def cmd_pin(ctx: RelayContext, args) -> int:
    await ctx.registry.set_assigned_credential(args.provider, args.model, args.credential_id)
    if args.credential_id:
        console.print(f"{args.provider}/{args.model} pinned to [bold]{args.credential_id}[/bold]")
    else:
        console.print(f"Pin cleared for {args.provider}/{args.model}")
    return 0


async def cmd_balance(ctx: RelayContext, args) -> int:
    await ctx.registry.set_load_balance_enabled(args.provider, args.state == "on")
    console.print(f"Load balancing for {args.provider}: [bold]{args.state}[/bold]")
    return 0


COMMANDS = {
    "status": cmd_status,
    "chat": cmd_chat,
    "reset": cmd_reset,
    "pin": cmd_pin,
    "balance": cmd_balance,
}


async def run(args) -> int:
    config = RelayConfig.from_env(data_dir=args.data_dir)
    ctx = await RelayContext.create(config)
    try:
        return await COMMANDS[args.command](ctx, args)
    finally:
        await ctx.aclose()


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
    )
    logging.getLogger("LiteLLM").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv(Path.cwd() / ".env")
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)
    try:
        return asyncio.run(run(args))
    except RelayError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        return 1
    except (ValueError, KeyError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
