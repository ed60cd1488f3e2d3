"""Console presentation: Nord themed Rich output, banners and prompts."""

import logging
import shutil
from typing import Dict, List, Optional

import pyfiglet
from rich import box
from rich.align import Align
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table
from rich.text import Text
from rich.theme import Theme

from webhost_provision import APP_NAME, APP_SUBTITLE, VERSION

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------
# Nord-Themed Colors and Theme Setup
# ----------------------------------------------------------------
class NordColors:
    """Nord color palette definitions for consistent UI styling."""

    POLAR_NIGHT_3: str = "#434C5E"
    SNOW_STORM_1: str = "#D8DEE9"
    SNOW_STORM_2: str = "#E5E9F0"
    FROST_1: str = "#8FBCBB"
    FROST_2: str = "#88C0D0"
    FROST_3: str = "#81A1C1"
    FROST_4: str = "#5E81AC"
    RED: str = "#BF616A"
    YELLOW: str = "#EBCB8B"
    GREEN: str = "#A3BE8C"

    @classmethod
    def get_frost_gradient(cls, steps: int = 4) -> List[str]:
        """Returns a gradient using the frost color palette."""
        frosts = [cls.FROST_1, cls.FROST_2, cls.FROST_3, cls.FROST_4]
        return frosts[:steps]


nord_theme = Theme(
    {
        "banner": f"bold {NordColors.FROST_2}",
        "header": f"bold {NordColors.FROST_2}",
        "info": NordColors.GREEN,
        "warning": NordColors.YELLOW,
        "error": NordColors.RED,
        "debug": NordColors.POLAR_NIGHT_3,
        "success": NordColors.GREEN,
    }
)

console = Console(theme=nord_theme)


# ----------------------------------------------------------------
# UI Helper Functions
# ----------------------------------------------------------------
def create_header(title: str = APP_NAME) -> Panel:
    """
    Generate an ASCII art header with gradient styling using Pyfiglet.
    The banner is built line-by-line into a Rich Text object to avoid stray markup tokens.
    """
    term_width, _ = shutil.get_terminal_size((80, 24))
    fonts: List[str] = ["slant", "small", "mini"]
    if term_width < 60:
        fonts = fonts[1:]

    ascii_art = ""
    for font in fonts:
        try:
            fig = pyfiglet.Figlet(font=font, width=min(term_width - 10, 120))
            ascii_art = fig.renderText(title)
            if ascii_art.strip():
                break
        except pyfiglet.FigletError:
            continue

    ascii_lines = [line for line in ascii_art.splitlines() if line.strip()] or [title]
    colors = NordColors.get_frost_gradient(len(ascii_lines))
    combined_text = Text()

    for i, line in enumerate(ascii_lines):
        color = colors[i % len(colors)]
        combined_text.append(Text(line, style=f"bold {color}"))
        if i < len(ascii_lines) - 1:
            combined_text.append("\n")

    return Panel(
        Align.center(combined_text),
        border_style=NordColors.FROST_1,
        padding=(1, 2),
        title=Text(f"{APP_NAME} v{VERSION}", style=f"bold {NordColors.SNOW_STORM_2}"),
        title_align="right",
        subtitle=Text(APP_SUBTITLE, style=f"bold {NordColors.SNOW_STORM_1}"),
        subtitle_align="center",
        box=box.ROUNDED,
    )


def print_message(
    text: str, style: str = NordColors.FROST_2, prefix: str = "•"
) -> None:
    """Print a styled message with a prefix and record it in the log file."""
    console.print(f"[{style}]{prefix} {escape(text)}[/{style}]", highlight=False)
    logger.debug(text)


def print_success(message: str) -> None:
    print_message(message, NordColors.GREEN, "✓")


def print_warning(message: str) -> None:
    print_message(message, NordColors.YELLOW, "⚠")


def print_error(message: str) -> None:
    print_message(message, NordColors.RED, "✗")


def print_step(message: str) -> None:
    print_message(message, NordColors.FROST_2, "→")


def print_section(title: str) -> None:
    """Print a section header."""
    console.print()
    console.print(f"[bold {NordColors.FROST_3}]==> {title}[/]")
    console.print(f"[{NordColors.FROST_3}]{'─' * (len(title) + 4)}[/]")
    logger.debug(f"--- {title} ---")


def display_panel(
    message: str, style: str = NordColors.FROST_2, title: Optional[str] = None
) -> None:
    """Display a styled panel with a message."""
    panel = Panel(
        Text(message, style=style),
        border_style=f"{style}",
        padding=(1, 2),
        title=f"[bold {style}]{title}[/]" if title else None,
        box=box.ROUNDED,
    )
    console.print(panel)


def print_key_values(title: str, rows: Dict[str, str]) -> None:
    """Render a two column summary table."""
    table = Table(title=title, box=box.ROUNDED, style=NordColors.FROST_3)
    table.add_column("Setting", style="header")
    table.add_column("Value", style="info")
    for key, value in rows.items():
        table.add_row(key, str(value))
    console.print(table)


def print_status_report(statuses: Dict[str, str], title: str = "Setup Status Report") -> None:
    """Print a status table for all provisioning modules."""
    table = Table(title=title, style="banner", box=box.ROUNDED)
    table.add_column("Module", style="header")
    table.add_column("Status", style="info")

    for name, status in statuses.items():
        status_color = {
            "not_started": "debug",
            "running": "warning",
            "complete": "success",
            "skipped": "debug",
        }.get(status.lower(), "info")
        table.add_row(
            name.replace("_", " ").title(),
            f"[{status_color}]{status.upper()}[/{status_color}]",
        )

    console.print(
        Panel(
            table,
            title=f"[banner]{APP_NAME}[/banner]",
            border_style=NordColors.FROST_3,
            box=box.ROUNDED,
        )
    )


# ----------------------------------------------------------------
# Prompts
# ----------------------------------------------------------------
def confirm(question: str, default: bool = False, assume_yes: bool = False) -> bool:
    """Ask a yes/no question; ``assume_yes`` answers with the default for unattended runs."""
    if assume_yes:
        logger.info(f"{question} -> {'yes' if default else 'no'} (non-interactive)")
        return default
    return Confirm.ask(f"[{NordColors.FROST_2}]{question}[/]", default=default, console=console)


def ask(question: str, default: Optional[str] = None) -> str:
    """Prompt for a free-form answer."""
    return Prompt.ask(f"[{NordColors.FROST_2}]{question}[/]", default=default, console=console)
