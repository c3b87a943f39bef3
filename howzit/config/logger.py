import logging
import os
import threading
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass
from functools import cache
from logging import Formatter
from typing import IO, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme

from howzit.config.settings import ENV_LOG_LEVEL, global_settings, LogLevel, update_global_settings
from howzit.config.text_styles import EMOJI_ERROR, EMOJI_WARN, HowzitHighlighter, RICH_STYLES

_log_lock = threading.RLock()


@dataclass
class TlContext(threading.local):
    console: Optional[Console] = None


_tl_context = TlContext()
"""
Thread-local context override for the Rich output console.
"""


@cache
def get_highlighter():
    return HowzitHighlighter()


@cache
def get_theme():
    return Theme(RICH_STYLES)


@cache
def _stdout_console() -> Console:
    return Console(theme=get_theme(), highlighter=get_highlighter())


@cache
def get_log_console() -> Console:
    """
    Console used for log messages. Logs always go to stderr so that stdout
    carries only topic output.
    """
    return Console(theme=get_theme(), highlighter=get_highlighter(), stderr=True)


def get_console() -> Console:
    """
    Return the stdout console, unless it is overridden by a thread-local console.
    """
    return _tl_context.console or _stdout_console()


def new_console(file: Optional[IO[str]], record: bool) -> Console:
    """
    Create a new console with the our theme and highlighter.
    Use `get_console()` for the global console.
    """
    return Console(theme=get_theme(), highlighter=get_highlighter(), file=file, record=record)


@contextmanager
def record_console() -> Generator[Console, None, None]:
    """
    Context manager to temporarily override the output console with a thread-local
    console that records output.
    """
    from rich._null_file import NULL_FILE

    old_console = _tl_context.console
    console = new_console(file=NULL_FILE, record=True)
    _tl_context.console = console

    try:
        yield console
    finally:
        _tl_context.console = old_console


_console_handler: Optional[RichHandler] = None


def logging_setup():
    """
    Set up or reset logging. Replaces the previous console handler, so can be
    called again to pick up changed settings.
    """
    global _console_handler
    with _log_lock:
        level = global_settings().console_log_level.value

        handler = RichHandler(
            console=get_log_console(),
            level=level,
            show_time=False,
            show_path=False,
            show_level=False,
            highlighter=get_highlighter(),
            markup=True,
        )
        handler.setLevel(level)
        handler.setFormatter(Formatter("%(message)s"))

        logger = logging.getLogger("howzit")
        logger.setLevel(logging.DEBUG)
        logger.propagate = False
        for old in logger.handlers[:]:
            logger.removeHandler(old)
        logger.addHandler(handler)

        _console_handler = handler


def set_console_log_level(level: LogLevel) -> None:
    """
    Change the console log level, keeping settings, handler, and the
    `HOWZIT_LOG_LEVEL` environment mirror in sync.
    """
    with update_global_settings() as settings:
        settings.console_log_level = level
    if _console_handler:
        _console_handler.setLevel(level.value)
    os.environ[ENV_LOG_LEVEL] = level.name


@contextmanager
def console_log_level(level: Optional[LogLevel]) -> Generator[None, None, None]:
    """
    Temporarily override the console log level. Does nothing if `level` is None.
    """
    if level is None:
        yield
        return

    previous_level = global_settings().console_log_level
    previous_env = os.environ.get(ENV_LOG_LEVEL)
    set_console_log_level(level)
    try:
        yield
    finally:
        set_console_log_level(previous_level)
        if previous_env is None:
            os.environ.pop(ENV_LOG_LEVEL, None)
        else:
            os.environ[ENV_LOG_LEVEL] = previous_env


def prefix(line, emoji: str = "", warn_emoji: str = ""):
    emojis = f"{warn_emoji}{emoji}".strip()
    return " ".join(filter(None, [emojis, line]))


def prefix_args(args, emoji: str = "", warn_emoji: str = ""):
    if len(args) > 0:
        args = (prefix(args[0], emoji, warn_emoji),) + args[1:]
    return args


class CustomLogger:
    """
    Custom logger to be clearer about user messages.
    """

    def __init__(self, name: str):
        if name != "howzit" and not name.startswith("howzit."):
            name = f"howzit.{name}"
        self.logger = logging.getLogger(name)

    def debug(self, *args, **kwargs):
        self.logger.debug(*prefix_args(args), **kwargs)

    def info(self, *args, **kwargs):
        self.logger.info(*prefix_args(args), **kwargs)

    def message(self, *args, **kwargs):
        self.logger.warning(*prefix_args(args), **kwargs)

    def warning(self, *args, **kwargs):
        self.logger.warning(*prefix_args(args, warn_emoji=EMOJI_WARN), **kwargs)

    def error(self, *args, **kwargs):
        self.logger.error(*prefix_args(args, warn_emoji=EMOJI_ERROR), **kwargs)

    def log(self, level: LogLevel, *args, **kwargs):
        getattr(self, level.name)(*args, **kwargs)

    # Fallback for other attributes/methods.
    def __getattr__(self, attr):
        return getattr(self.logger, attr)


def get_logger(name: str):
    return CustomLogger(name)


## Tests


def test_console_log_level_restores(monkeypatch):
    monkeypatch.delenv(ENV_LOG_LEVEL, raising=False)
    logging_setup()
    original = global_settings().console_log_level

    with console_log_level(LogLevel.debug):
        assert global_settings().console_log_level == LogLevel.debug
        assert os.environ[ENV_LOG_LEVEL] == "debug"
        assert _console_handler is not None
        assert _console_handler.level == logging.DEBUG

    assert global_settings().console_log_level == original
    assert ENV_LOG_LEVEL not in os.environ

    with console_log_level(None):
        assert global_settings().console_log_level == original


def test_logger_names():
    assert get_logger("howzit.engine.runner").logger.name == "howzit.engine.runner"
    assert get_logger("__main__").logger.name == "howzit.__main__"
