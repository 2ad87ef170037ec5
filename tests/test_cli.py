import logging
from argparse import Namespace
from pathlib import Path

import pytest
from rich.console import Console

from relay_app import main as cli
from relay_app.render import EventRenderer, build_status_table
from relay_library.accounts.secrets import MemorySecretStore
from relay_library.accounts.types import Account
from relay_library.config import RelayConfig
from relay_library.context import RelayContext
from relay_library.quota.types import QuotaState
from relay_library.storage import MemoryStorage
from relay_library.streaming.events import (
    StreamOutcome,
    TextEvent,
    ThinkingEvent,
    ToolCallEvent,
    UsageEvent,
)


def _console() -> Console:
    return Console(record=True, width=200, color_system=None)


def test_parser() -> None:
    parser = cli.build_parser()
    args = parser.parse_args(["chat", "openai", "gpt-4o", "Hello", "--no-thinking", "--max-tokens", "5"])
    assert (args.command, args.provider, args.model, args.prompt) == ("chat", "openai", "gpt-4o", "Hello")
    assert args.no_thinking and args.max_tokens == 5

    pin = parser.parse_args(["pin", "gemini", "gemini-2.5-pro"])
    assert pin.credential_id is None

    with pytest.raises(SystemExit):
        parser.parse_args(["balance", "openai", "maybe"])


def test_status_table() -> None:
    now = 1_000.0
    accounts = [
        Account(id="a", display_name="Work", provider="openai", is_default=True),
        Account(id="b", display_name="Spare", provider="openai", expires_at=500.0),
    ]
    states = {
        "a": QuotaState("a", "openai", quota_exceeded=True, quota_reset_at=now + 125, backoff_level=3),
    }
    console = _console()
    console.print(build_status_table("openai", accounts, states, {"gpt-4o": "a"}, True, now=now))
    output = console.export_text()

    assert "openai (load balancing on)" in output
    assert "2m05s" in output
    assert "gpt-4o" in output
    assert "expired" in output


def test_event_renderer() -> None:
    console = _console()
    renderer = EventRenderer(console, show_thinking=False)
    renderer(ThinkingEvent("t1", "secret plan"))
    renderer(ThinkingEvent("t1", ""))
    renderer(TextEvent("Hello there"))
    renderer(ToolCallEvent("call_1", "get_weather", {"city": "Paris"}))
    renderer(UsageEvent(prompt_tokens=3, completion_tokens=4, total_tokens=7, cached_tokens=1))
    renderer.footer(StreamOutcome(finish_reason="stop"), "openai_env_1", 2)
    output = console.export_text()

    assert "secret plan" not in output
    assert "Hello there" in output
    assert "get_weather" in output and '"city": "Paris"' in output
    assert "tokens 3 in / 4 out (1 cached)" in output
    assert "account openai_env_1 | attempts 2 | finish stop" in output


@pytest.mark.asyncio
async def test_commands_against_memory_context(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    console = _console()
    monkeypatch.setattr(cli, "console", console)
    ctx = await RelayContext.create(
        RelayConfig(data_dir=tmp_path, enable_failure_log=False),
        storage=MemoryStorage(),
        secret_store=MemorySecretStore(),
    )
    try:
        assert await cli.cmd_status(ctx, Namespace(provider=None)) == 0
        assert "No accounts registered" in console.export_text()

        await ctx.registry.add_account("openai", "Work", secret={"api_key": "sk-1"}, account_id="a")
        await ctx.quota_store.mark_exceeded("a", "openai", reset_delay_hint=30)

        assert await cli.cmd_reset(ctx, Namespace(credential_id="missing")) == 1
        assert await cli.cmd_reset(ctx, Namespace(credential_id="a")) == 0
        assert not ctx.quota_store.is_in_cooldown("a")

        await cli.cmd_pin(ctx, Namespace(provider="openai", model="gpt-4o", credential_id="a"))
        assert ctx.registry.get_assigned_credential("openai", "gpt-4o") == "a"
        await cli.cmd_balance(ctx, Namespace(provider="openai", state="on"))
        assert ctx.registry.is_load_balance_enabled("openai")

        assert await cli.cmd_status(ctx, Namespace(provider="openai")) == 0
        assert "openai (load balancing on)" in console.export_text()
    finally:
        await ctx.aclose()


def test_event_renderer_logs_each_event_at_debug(caplog: pytest.LogCaptureFixture) -> None:
    renderer = EventRenderer(_console(), show_thinking=True)
    with caplog.at_level(logging.DEBUG, logger="relay_app"):
        renderer(TextEvent("Hi"))
        renderer(ToolCallEvent("call_1", "get_weather", {"city": "Paris"}))

    assert '{"type": "TextEvent", "delta": "Hi"}' in caplog.messages
    assert any('"name": "get_weather"' in message for message in caplog.messages)
