"""
Rich Output Utilities
=====================

Terminal output for the execguard CLI using the Rich library: a themed
console, message helpers, tables and panels, and Rich-backed logging.
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text
from rich.theme import Theme


# =============================================================================
# Color Scheme & Theme
# =============================================================================

@dataclass(frozen=True)
class GuardColors:
    """execguard color palette, hex for truecolor terminals."""
    ink: str = "#E6E6E6"       # primary text
    dim: str = "#9AA4B2"       # muted text
    accent: str = "#22D3EE"    # cyan accent
    steel: str = "#94A3B8"     # secondary accent
    ok: str = "#22C55E"        # success / GREEN tier
    warn: str = "#FBBF24"      # warning / YELLOW tier
    err: str = "#EF4444"       # error / RED tier
    black: str = "#A855F7"     # BLACKLISTED tier


def guard_theme(colors: GuardColors = GuardColors()) -> Theme:
    """
    Rich Theme for the execguard CLI.

    Style names are semantic:
      console.print("...", style="eg.ok")
    """
    return Theme(
        {
            "eg.accent": f"bold {colors.accent}",
            "eg.muted": f"{colors.dim}",
            "eg.text": f"{colors.ink}",
            "eg.border": f"{colors.accent}",

            # Status
            "eg.ok": f"bold {colors.ok}",
            "eg.warn": f"bold {colors.warn}",
            "eg.err": f"bold {colors.err}",
            "eg.info": f"{colors.accent}",

            # Data display
            "eg.key": f"{colors.steel}",
            "eg.value": f"{colors.ink}",
            "eg.number": f"bold {colors.warn}",
            "eg.path": f"{colors.accent}",

            # Risk tiers
            "eg.tier.green": f"bold {colors.ok}",
            "eg.tier.yellow": f"bold {colors.warn}",
            "eg.tier.red": f"bold {colors.err}",
            "eg.tier.blacklisted": f"bold reverse {colors.black}",

            "eg.table.header": f"bold {colors.accent}",
        }
    )


# =============================================================================
# Unicode / ASCII Fallbacks
# =============================================================================

def _can_use_unicode() -> bool:
    """Check if the terminal can handle Unicode characters."""
    if os.name == "nt":
        try:
            encoding = sys.stdout.encoding or "utf-8"
            "✓✗•".encode(encoding)
            return True
        except (UnicodeEncodeError, LookupError, AttributeError):
            return False
    return True


_UNICODE_ICONS = {
    "check": "✓",
    "cross": "✗",
    "blocked": "⛔",
    "warning": "⚠",
    "info": "ℹ",
    "bullet": "•",
    "lock": "\U0001F512",
    "clock": "⏳",
}

_ASCII_ICONS = {
    "check": "[OK]",
    "cross": "[X]",
    "blocked": "[BLOCKED]",
    "warning": "[!]",
    "info": "[i]",
    "bullet": "-",
    "lock": "[LOCK]",
    "clock": "[T]",
}

_ICONS = _UNICODE_ICONS if _can_use_unicode() else _ASCII_ICONS


def icon(name: str) -> str:
    """Get an icon by name, using ASCII fallback if needed."""
    return _ICONS.get(name, "")


# =============================================================================
# Global Console Instance
# =============================================================================

console = Console(theme=guard_theme())


# =============================================================================
# Basic Message Functions
# =============================================================================

def print_success(message: str) -> None:
    """Print a success message with checkmark."""
    console.print(f"[eg.ok]{icon('check')} {message}[/]")


def print_error(message: str) -> None:
    """Print an error message with X."""
    console.print(f"[eg.err]{icon('cross')} {message}[/]")


def print_warning(message: str) -> None:
    console.print(f"[eg.warn]{icon('warning')} {message}[/]")


def print_info(message: str) -> None:
    console.print(f"[eg.info]{icon('info')} {message}[/]")


def print_muted(message: str) -> None:
    console.print(f"[eg.muted]{message}[/]")


def print_header(title: str, style: str = "eg.accent") -> None:
    """Print a prominent section header with rule lines."""
    console.print()
    console.print(Rule(f"[{style}]{title}[/]", style=style))
    console.print()


# =============================================================================
# Risk Tiers
# =============================================================================

def tier_style(tier: str) -> str:
    """Theme style for a risk tier name."""
    return f"eg.tier.{str(tier).lower()}"


def tier_icon(tier: str) -> str:
    return {
        "GREEN": icon("check"),
        "YELLOW": icon("warning"),
        "RED": icon("lock"),
        "BLACKLISTED": icon("blocked"),
    }.get(str(tier).upper(), "")


# =============================================================================
# Data Display Functions
# =============================================================================

def print_key_value_table(
    data: Dict[str, Any],
    *,
    title: Optional[str] = None,
    border_style: str = "eg.border",
) -> None:
    """Print multiple key-value pairs in a clean table format."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="eg.key")
    table.add_column("Value", style="eg.value")

    for key, value in data.items():
        table.add_row(key, "-" if value is None else str(value))

    if title:
        console.print(Panel(table, title=f"[bold]{title}[/]", border_style=border_style))
    else:
        console.print(table)


def create_table(
    *,
    title: Optional[str] = None,
    columns: Optional[List[str]] = None,
    show_header: bool = True,
    border_style: str = "eg.border",
    header_style: str = "eg.table.header",
) -> Table:
    """Create a styled Rich Table."""
    table = Table(
        title=title,
        show_header=show_header,
        header_style=header_style,
        border_style=border_style,
        title_style="eg.accent",
    )
    if columns:
        for col in columns:
            table.add_column(col)
    return table


def print_table(table: Table) -> None:
    console.print(table)


def print_panel(
    content: Union[str, Text],
    *,
    title: Optional[str] = None,
    border_style: str = "eg.border",
    padding: tuple = (1, 2),
) -> None:
    """Print content in a styled panel."""
    console.print(Panel(
        content,
        title=f"[bold]{title}[/]" if title else None,
        border_style=border_style,
        padding=padding,
    ))


# =============================================================================
# Logging Integration
# =============================================================================

def setup_rich_logging(level: int = logging.INFO) -> None:
    """
    Configure Python logging to render through Rich.

    Usage:
        setup_rich_logging()
        logging.getLogger(__name__).info("Guard ready")
    """
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(
            console=console,
            show_path=False,
            markup=False,
            rich_tracebacks=True,
        )],
        force=True,
    )
