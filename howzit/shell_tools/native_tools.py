"""
Platform-specific tools: clipboard copy and opening files or URLs.
"""

import shlex
import shutil
import subprocess
import sys
from enum import Enum
from functools import cache
from typing import List, Optional

from howzit.config.logger import get_logger
from howzit.errors import SetupError

log = get_logger(__name__)


class OSPlatform(Enum):
    macos = "macos"
    linux = "linux"
    windows = "windows"
    unknown = "unknown"


@cache
def detect_platform() -> OSPlatform:
    if sys.platform == "darwin":
        return OSPlatform.macos
    elif sys.platform.startswith("linux"):
        return OSPlatform.linux
    elif sys.platform in ("win32", "cygwin"):
        return OSPlatform.windows
    else:
        return OSPlatform.unknown


_linux_clipboard_commands = [
    ["xclip", "-selection", "clipboard"],
    ["xsel", "--clipboard", "--input"],
    ["wl-copy"],
]


def clipboard_command() -> Optional[List[str]]:
    """
    The command that reads stdin into the system clipboard, or None if there is none.
    """
    platform = detect_platform()
    if platform == OSPlatform.macos:
        return ["pbcopy"]
    elif platform == OSPlatform.windows:
        return ["clip"]
    for command in _linux_clipboard_commands:
        if shutil.which(command[0]):
            return command
    return None


def os_copy(text: str) -> None:
    """
    Copy text to the system clipboard.
    """
    command = clipboard_command()
    if not command:
        raise SetupError("No clipboard tool found (tried pbcopy, xclip, xsel, wl-copy, clip)")
    try:
        subprocess.run(command, input=text, text=True, check=True)
    except (OSError, subprocess.CalledProcessError) as e:
        raise SetupError(f"Could not copy to clipboard with `{command[0]}`: {e}")
    log.info("Copied to clipboard: %s", text)


def native_open(target: str) -> None:
    """
    Open a file or URL with the platform's default handler.
    """
    log.info("Opening: %s", target)
    platform = detect_platform()
    if platform == OSPlatform.macos:
        subprocess.run(["open", target])
    elif platform == OSPlatform.linux:
        subprocess.run(["xdg-open", target])
    elif platform == OSPlatform.windows:
        subprocess.run(f"start {shlex.quote(target)}", shell=True)
    else:
        raise NotImplementedError("Unsupported platform")


## Tests


def test_clipboard_command(monkeypatch):
    detect_platform.cache_clear()
    monkeypatch.setattr(sys, "platform", "darwin")
    assert clipboard_command() == ["pbcopy"]

    detect_platform.cache_clear()
    monkeypatch.setattr(sys, "platform", "linux")
    monkeypatch.setattr(shutil, "which", lambda name: "/usr/bin/xsel" if name == "xsel" else None)
    assert clipboard_command() == ["xsel", "--clipboard", "--input"]

    monkeypatch.setattr(shutil, "which", lambda name: None)
    assert clipboard_command() is None
    try:
        os_copy("text")
        assert False, "Should have raised SetupError"
    except SetupError:
        pass
    detect_platform.cache_clear()
