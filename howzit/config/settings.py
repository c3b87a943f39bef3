import os
import threading
from contextlib import contextmanager
from enum import Enum
from logging import DEBUG, ERROR, INFO, WARNING
from pathlib import Path

from pydantic.dataclasses import dataclass


APP_NAME = "howzit"

ENV_COMM_FILE = "HOWZIT_COMM_FILE"
"""Path of the ScriptComm file handed to each task subprocess."""

ENV_SUPPORT_DIR = "HOWZIT_SUPPORT_DIR"
"""Directory holding per-language helper libraries for run blocks."""

ENV_LOG_LEVEL = "HOWZIT_LOG_LEVEL"
"""Mirror of the active console log level, visible to task subprocesses."""

ENV_TEMPLATE_FOLDER = "HOWZIT_TEMPLATE_FOLDER"


def config_dir() -> Path:
    """
    The howzit config directory, honoring `XDG_CONFIG_HOME`.
    """
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg).expanduser() / APP_NAME
    return Path("~/.config").expanduser() / APP_NAME


class LogLevel(Enum):
    debug = DEBUG
    info = INFO
    warning = WARNING
    message = WARNING  # Same as warning, just for important console messages.
    error = ERROR

    @classmethod
    def parse(cls, level_str: str):
        canon_name = level_str.strip().lower()
        if canon_name == "warn":
            canon_name = "warning"
        try:
            return cls[canon_name]
        except KeyError:
            raise ValueError(
                f"Invalid log level: `{level_str}`. Valid options are: {', '.join(f'`{name}`' for name in cls.__members__)}"
            )

    def __str__(self):
        return self.name


class Matching(Enum):
    partial = "partial"
    exact = "exact"
    beginswith = "beginswith"
    fuzzy = "fuzzy"


class MultipleMatches(Enum):
    first = "first"
    best = "best"
    all = "all"
    choose = "choose"


@dataclass
class Settings:
    console_log_level: LogLevel
    """The log level for console-based logging."""

    matching: Matching
    """How topic search terms are matched against titles."""

    multiple_matches: MultipleMatches
    """What to do when a search term matches more than one topic."""

    stack: bool
    """Run tasks from the directory of the build note that defined them."""

    include_upstream: bool
    """Also read build notes found in parent directories."""

    force: bool
    """Continue running remaining tasks after a task fails."""

    ask: bool
    """Request confirmation for every task, not just optional ones."""

    default_answers: bool
    """Answer every confirmation prompt with its default, without asking."""

    show_all_code: bool
    """Show task actions instead of task titles."""

    template_folder: Path
    """Folder holding template build notes referenced by `template:` metadata."""

    support_dir: Path
    """Folder holding installed helper libraries for run blocks."""


def _default_settings() -> Settings:
    log_level = LogLevel.info
    env_level = os.environ.get(ENV_LOG_LEVEL)
    if env_level:
        try:
            log_level = LogLevel.parse(env_level)
        except ValueError:
            pass

    template_folder = os.environ.get(ENV_TEMPLATE_FOLDER) or config_dir() / "templates"
    support_dir = os.environ.get(ENV_SUPPORT_DIR) or config_dir() / "support"

    return Settings(
        console_log_level=log_level,
        matching=Matching.partial,
        multiple_matches=MultipleMatches.first,
        stack=False,
        include_upstream=False,
        force=False,
        ask=False,
        default_answers=False,
        show_all_code=False,
        template_folder=Path(template_folder).expanduser(),
        support_dir=Path(support_dir).expanduser(),
    )


# Initial default settings.
_settings = _default_settings()


def global_settings() -> Settings:
    """
    Read access to global settings.
    """
    return _settings


_settings_lock = threading.RLock()


@contextmanager
def update_global_settings():
    """
    Context manager for thread-safe updates to global settings.
    """
    with _settings_lock:
        yield _settings


## Tests


def test_log_level_parse():
    assert LogLevel.parse("warn") == LogLevel.warning
    assert LogLevel.parse(" DEBUG ") == LogLevel.debug
    assert LogLevel.parse("error") == LogLevel.error
    try:
        LogLevel.parse("loud")
        assert False, "Should have raised ValueError"
    except ValueError as e:
        assert "Invalid log level" in str(e)


def test_env_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv(ENV_LOG_LEVEL, "warn")
    monkeypatch.setenv(ENV_TEMPLATE_FOLDER, str(tmp_path / "tpl"))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
    monkeypatch.delenv(ENV_SUPPORT_DIR, raising=False)

    settings = _default_settings()
    assert settings.console_log_level == LogLevel.warning
    assert settings.template_folder == tmp_path / "tpl"
    assert settings.support_dir == tmp_path / "howzit" / "support"

    monkeypatch.setenv(ENV_LOG_LEVEL, "nonsense")
    assert _default_settings().console_log_level == LogLevel.info
