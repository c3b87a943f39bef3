"""
Output to the shell UI. These are for user interaction, not logging.
"""

from typing import Optional

import rich.style
from rich import box
from rich.console import Group, OverflowMethod, RenderableType
from rich.padding import Padding
from rich.panel import Panel
from rich.text import Text

from howzit.config.logger import get_console
from howzit.config.text_styles import (
    BOX_WIDTH,
    COLOR_HEADING,
    COLOR_HINT,
    HRULE_CHAR,
)


null_style = rich.style.Style.null()


def rich_print(
    *args: RenderableType,
    width: Optional[int] = None,
    soft_wrap: Optional[bool] = None,
    indent: int = 0,
    overflow: Optional[OverflowMethod] = "fold",
    **kwargs,
):
    """
    Print to the Rich console, either the global console or a thread-local
    override, if one is active.
    """
    console = get_console()
    if len(args) == 0:
        renderable: RenderableType = ""
    elif len(args) == 1:
        renderable = args[0]
    else:
        renderable = Group(*args)

    if indent:
        renderable = Padding.indent(renderable, indent)

    console.print(renderable, width=width, soft_wrap=soft_wrap, overflow=overflow, **kwargs)


def cprint(
    message: RenderableType = "",
    *args,
    color=None,
    end="\n",
    width: Optional[int] = None,
):
    """
    Main way to print to the shell. Plain strings are printed literally, never as
    Rich markup.
    """
    if not message:
        rich_print(Text("", style=null_style))
        return

    if isinstance(message, str):
        text = message % args if args else message
        rich_print(Text(text, color or null_style), end=end, width=width)
    else:
        rich_print(message, end=end, width=width)


def print_box(message: str, color: Optional[str] = None, width: int = BOX_WIDTH):
    """
    Print text inside a frame, as used for prerequisites and postrequisites.
    """
    console_width = get_console().width
    panel = Panel(
        Text(message, style=color or null_style),
        box=box.ROUNDED,
        border_style=color or COLOR_HINT,
        width=min(width, console_width) if console_width else width,
        expand=False,
    )
    rich_print(panel)


def print_heading(message: str, color: str = COLOR_HEADING):
    cprint(Text(message, style=color))


def print_hrule(char: str = HRULE_CHAR, color: Optional[str] = None, width: int = BOX_WIDTH):
    cprint(char * width, color=color or COLOR_HINT)


## Tests


def test_output_recorded():
    from howzit.config.logger import record_console

    with record_console() as console:
        cprint("Ran %s tasks", 3)
        cprint("[not markup]")
        print_box("Check the VPN.")
        print_hrule(width=10)

    output = console.export_text()
    assert "Ran 3 tasks" in output
    assert "[not markup]" in output
    assert "Check the VPN." in output
    assert "─" * 10 in output
