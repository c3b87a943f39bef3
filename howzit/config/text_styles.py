"""
Settings that define the visual appearance of text outputs.
"""

import re

from rich.highlighter import _combine_regex, RegexHighlighter
from rich.style import Style

## Settings

BOX_WIDTH = 60
"""Width of the frames drawn around prerequisites and postrequisites."""


## Colors

COLOR_HEADING = "bold bright_green"

COLOR_EMPH = "bright_green"

COLOR_HINT = "bright_black"

COLOR_KEY = "bright_blue"

COLOR_VALUE = "cyan"

COLOR_SUCCESS = "green"

COLOR_FAILURE = "bright_red"

COLOR_WARN = "bright_red"

COLOR_ERROR = "bright_red"

COLOR_TASK = "magenta"

COLOR_TASK_TITLE = "bold bright_white"

COLOR_PREREQ = "bright_yellow"

COLOR_POSTREQ = "bright_white"


## Symbols and emojis

PROMPT_FORM = "❯❯"

EMOJI_WARN = "△"

EMOJI_ERROR = EMOJI_WARN + EMOJI_WARN

EMOJI_TASK = "▷▷"

EMOJI_SUCCESS = "✓"

EMOJI_FAILURE = "✗"

EMOJI_REPORT_FAILURE = "X"

EMOJI_RUN = "▶"

EMOJI_COPY = "✚"

EMOJI_OPEN = "➚"

HRULE_CHAR = "─"

REPORT_TOP_CHAR = "="

REPORT_BOTTOM_CHAR = "-"


## Rich setup


class HowzitHighlighter(RegexHighlighter):
    """
    Highlighter for log and status lines.
    """

    base_style = "howzit."
    highlights = [
        _combine_regex(
            f"(?P<task>{re.escape(EMOJI_TASK)})",
            f"(?P<success>{re.escape(EMOJI_SUCCESS)})",
            f"(?P<failure>{re.escape(EMOJI_FAILURE)})",
            f"(?P<warn>{re.escape(EMOJI_WARN)})",
        ),
        _combine_regex(
            r"(?P<var>\$\{[\w-]+(:[^}]*)?\})",
            r"(?P<directive>(?<!\w)@(run|copy|open|url|include|if|unless|elsif|else|end|set_var|log_level)\b)",
            r"(?P<code_span>`[^`\n]+`)",
        ),
    ]


RICH_STYLES = {
    "markdown.h1": Style(color=COLOR_EMPH, bold=True),
    "markdown.h2": Style(color=COLOR_EMPH, bold=True),
    "markdown.h3": Style(color=COLOR_EMPH, bold=True, italic=True),
    "howzit.task": Style(color=COLOR_TASK, bold=True),
    "howzit.success": Style(color=COLOR_SUCCESS, bold=True),
    "howzit.failure": Style(color=COLOR_FAILURE, bold=True),
    "howzit.warn": Style(color=COLOR_WARN, bold=True),
    "howzit.var": Style(color=COLOR_VALUE),
    "howzit.directive": Style(color=COLOR_KEY),
    "howzit.code_span": Style(color=COLOR_VALUE),
}
