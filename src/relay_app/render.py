# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import json
import logging
import time
from typing import List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from relay_library.accounts.types import Account
from relay_library.quota.types import QuotaState
from relay_library.streaming.events import (
    StreamEvent,
    StreamOutcome,
    TextEvent,
    ThinkingEvent,
    ToolCallEvent,
    UsageEvent,
)
from relay_library.streaming.normalizer import dump_event

logger = logging.getLogger("relay_app")


class EventRenderer:
    """Prints normalized events as they arrive."""

    def __init__(self, console: Console, show_thinking: bool = True):
        self.console = console
        self.show_thinking = show_thinking
        self.usage: Optional[UsageEvent] = None
        self._in_thinking = False

    def __call__(self, event: StreamEvent) -> None:
        logger.debug(dump_event(event))
        if isinstance(event, ThinkingEvent):
            if event.is_close:
                if self._in_thinking:
                    self.console.print()
                self._in_thinking = False
                return
            if self.show_thinking:
                self._in_thinking = True
                self.console.print(Text(event.delta, style="dim italic"), end="")
        elif isinstance(event, TextEvent):
            self.console.print(Text(event.delta), end="")
        elif isinstance(event, ToolCallEvent):
            self.console.print()
            self.console.print(
                Panel(
                    json.dumps(event.args, indent=2, ensure_ascii=False),
                    title=f"Tool call [bold yellow]{event.name}[/bold yellow] ({event.id})",
                    style="bold blue",
                )
            )
        elif isinstance(event, UsageEvent):
            self.usage = event

    def footer(self, outcome: StreamOutcome, credential: str, attempts: int) -> None:
        self.console.print()
        parts = [f"account {credential}", f"attempts {attempts}"]
        if outcome.finish_reason:
            parts.append(f"finish {outcome.finish_reason}")
        usage = outcome.usage or self.usage
        if usage is not None:
            parts.append(
                f"tokens {usage.prompt_tokens} in / {usage.completion_tokens} out"
                + (f" ({usage.cached_tokens} cached)" if usage.cached_tokens else "")
            )
        if outcome.cancelled:
            parts.append("[yellow]cancelled[/yellow]")
        self.console.print(f"[dim]{' | '.join(parts)}[/dim]")


def _format_remaining(seconds: float) -> str:
    if seconds <= 0:
        return "-"
    minutes, secs = divmod(int(seconds + 0.5), 60)
    return f"{minutes}m{secs:02d}s" if minutes else f"{secs}s"


def build_status_table(
    provider: str,
    accounts: List[Account],
    states: dict,
    pins: dict,
    load_balance: bool,
    now: Optional[float] = None,
) -> Table:
    now = time.time() if now is None else now
    table = Table(
        title=f"{provider} (load balancing {'on' if load_balance else 'off'})",
        title_justify="left",
    )
    table.add_column("", width=1)
    table.add_column("Account")
    table.add_column("ID", style="dim")
    table.add_column("Status")
    table.add_column("Cooldown", justify="right")
    table.add_column("Level", justify="right")
    table.add_column("OK", justify="right", style="green")
    table.add_column("Fail", justify="right", style="red")
    table.add_column("Pinned models")

    for account in accounts:
        state: Optional[QuotaState] = states.get(account.id)
        remaining = 0.0
        if state is not None and state.quota_exceeded and state.quota_reset_at:
            remaining = max(0.0, state.quota_reset_at - now)
        status = account.status.value
        if account.is_expired(now):
            status = "expired"
        status_style = "green" if status == "active" else "yellow"
        table.add_row(
            "*" if account.is_default else "",
            account.display_name,
            account.id,
            f"[{status_style}]{status}[/{status_style}]",
            _format_remaining(remaining),
            str(state.backoff_level) if state else "0",
            str(state.success_count) if state else "0",
            str(state.failure_count) if state else "0",
            ", ".join(model for model, target in pins.items() if target == account.id),
        )
    return table
