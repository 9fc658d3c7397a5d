# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Mirrowel

"""
Codex Pool - terminal entry point.

This module handles:
- CLI argument parsing
- Environment and logging setup
- One-shot account commands (login, list, use, remove)
- The interactive chat session
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import colorlog
from dotenv import load_dotenv

from codex_pool.account_manager import AccountManager
from codex_pool.commands import PoolCommands
from codex_pool.config import PoolSettings
from codex_pool.provider import ProviderConfig, build_provider_config
from codex_pool.utils.paths import get_logs_dir
from pool_app.console_ui import ConsoleUI

CHAT_HELP = (
    "Commands: /login <email>, /list, /use [email], /auto, /remove <email>, "
    "/new, /quit"
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="codex-pool",
        description="Pool several ChatGPT Codex accounts behind one provider.",
    )
    parser.add_argument("--debug", action="store_true", help="Verbose console logging.")
    parser.add_argument(
        "--log-file",
        action="store_true",
        help="Also write logs to codex_pool.log in the logs directory.",
    )

    sub = parser.add_subparsers(dest="command")

    login = sub.add_parser("login", help="Log in an account and add it to the pool.")
    login.add_argument("email", help="Email or identifier to store the account under.")

    sub.add_parser("list", help="List accounts with usage.")

    use = sub.add_parser("use", help="Make an account active.")
    use.add_argument("email", nargs="?", help="Account to use; prompts when omitted.")

    remove = sub.add_parser("remove", help="Remove an account from the pool.")
    remove.add_argument("email")

    chat = sub.add_parser("chat", help="Interactive chat through the pool (default).")
    chat.add_argument("--model", default=None, help="Model id to use.")
    chat.add_argument("--system", default=None, help="System prompt.")
    return parser


def configure_logging(debug: bool = False, log_dir: Optional[Path] = None) -> None:
    console_handler = colorlog.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG if debug else logging.WARNING)
    console_handler.setFormatter(
        colorlog.ColoredFormatter(
            "%(log_color)s%(message)s",
            log_colors={
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
                "CRITICAL": "red,bg_white",
            },
        )
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(console_handler)

    if log_dir is not None:
        file_handler = logging.FileHandler(log_dir / "codex_pool.log", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG if debug else logging.INFO)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        root_logger.addHandler(file_handler)

    # Silence noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)


def _assistant_text(message: Optional[Dict[str, Any]]) -> str:
    if not message:
        return ""
    return "".join(
        block.get("text", "")
        for block in message.get("content") or []
        if isinstance(block, dict) and block.get("type") == "text"
    )


async def _stream_reply(
    ui: ConsoleUI,
    config: ProviderConfig,
    model: Dict[str, Any],
    context: Dict[str, Any],
) -> Optional[Dict[str, Any]]:
    abort = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, abort.set)
        handler_installed = True
    except (NotImplementedError, RuntimeError):
        handler_installed = False

    try:
        stream = config.stream_simple(model, context, {"signal": abort})
        async for event in stream:
            if event["type"] == "text_delta":
                ui.console.print(event["delta"], end="", markup=False, highlight=False)
            elif event["type"] == "error":
                ui.console.print()
                error = event.get("error") or {}
                ui.notify(error.get("error_message") or "Request failed", "error")
        ui.console.print()
        return await stream.result()
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)


async def run_chat(
    commands: PoolCommands,
    ui: ConsoleUI,
    config: ProviderConfig,
    model_id: Optional[str],
    system_prompt: Optional[str],
) -> None:
    model = config.get_model(model_id)
    ui.console.print(f"[bold]Model:[/bold] {model['id']}  [dim]{CHAT_HELP}[/dim]")
    await commands.on_session_start()

    messages: List[Dict[str, Any]] = []
    while True:
        try:
            line = await asyncio.to_thread(ui.console.input, "[bold green]> [/bold green]")
        except (EOFError, KeyboardInterrupt):
            return
        line = line.strip()
        if not line:
            continue

        if line.startswith("/"):
            name, _, arg = line[1:].partition(" ")
            arg = arg.strip()
            if name in ("quit", "exit"):
                return
            if name == "login":
                await commands.login(arg)
            elif name == "list":
                ui.show_accounts(await commands.list_accounts())
            elif name == "use":
                await commands.use(arg or None)
            elif name == "auto":
                commands.auto()
            elif name == "remove":
                commands.remove(arg)
            elif name == "new":
                messages = []
                await commands.on_session_switch("new")
            else:
                ui.notify(CHAT_HELP, "warning")
            continue

        messages.append({"role": "user", "content": line})
        context = {"system_prompt": system_prompt, "messages": messages}
        result = await _stream_reply(ui, config, model, context)
        if result and result.get("stop_reason") not in ("error", "aborted"):
            messages.append({"role": "assistant", "content": _assistant_text(result)})
        else:
            # Keep the conversation consistent for the next turn
            messages.pop()
        commands.update_status()


async def run(args: argparse.Namespace, settings: PoolSettings) -> int:
    ui = ConsoleUI()
    manager = AccountManager.from_settings(
        settings, warn=lambda message: ui.notify(message, "warning")
    )
    commands = PoolCommands(manager, ui)

    if args.command == "login":
        return 0 if await commands.login(args.email) else 1
    if args.command == "list":
        ui.show_accounts(await commands.list_accounts())
        return 0
    if args.command == "use":
        return 0 if await commands.use(args.email) else 1
    if args.command == "remove":
        return 0 if commands.remove(args.email) else 1

    config = build_provider_config(manager, settings=settings)
    await run_chat(
        commands,
        ui,
        config,
        getattr(args, "model", None),
        getattr(args, "system", None),
    )
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    # Load environment variables
    load_dotenv(Path.cwd() / ".env")

    settings = PoolSettings.from_env()
    log_dir = get_logs_dir(settings.storage_file.parent) if args.log_file else None
    configure_logging(args.debug, log_dir)

    try:
        return asyncio.run(run(args, settings))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
