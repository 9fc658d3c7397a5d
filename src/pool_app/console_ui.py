# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Mirrowel

"""Rich-based terminal implementation of the pool's ``PoolUI``."""

import asyncio
from typing import Dict, List, Optional

from rich.console import Console
from rich.markup import escape as rich_escape
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

LEVEL_STYLES = {
    "info": "green",
    "warning": "yellow",
    "error": "bold red",
}


class ConsoleUI:
    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()
        self.status: Dict[str, str] = {}

    def notify(self, message: str, level: str = "info") -> None:
        style = LEVEL_STYLES.get(level, "white")
        self.console.print(f"[{style}]{rich_escape(message)}[/{style}]")

    async def select(self, title: str, options: List[str]) -> Optional[str]:
        if not options:
            return None

        table = Table(title=title, show_header=False, box=None)
        table.add_column("#", style="cyan", justify="right")
        table.add_column("Option")
        for idx, option in enumerate(options, start=1):
            table.add_row(str(idx), rich_escape(option))
        self.console.print(table)

        choices = [str(i) for i in range(1, len(options) + 1)] + [""]
        answer = await asyncio.to_thread(
            Prompt.ask,
            "Choose (empty to cancel)",
            choices=choices,
            default="",
            show_choices=False,
            console=self.console,
        )
        if not answer:
            return None
        return options[int(answer) - 1]

    async def input(self, prompt: str) -> Optional[str]:
        answer = await asyncio.to_thread(Prompt.ask, prompt, console=self.console)
        return answer or None

    def set_status(self, key: str, text: str) -> None:
        self.status[key] = text
        self.console.print(f"[dim]{rich_escape(key)}: {rich_escape(text)}[/dim]")

    def show_accounts(self, lines: List[str]) -> None:
        if not lines:
            return
        self.console.print(
            Panel("\n".join(rich_escape(line) for line in lines), title="Codex accounts")
        )
