"""
Support for fenced `run` blocks: interpreter detection from the hashbang,
injection of the helper library load line, and the command that runs the script.
"""

import re
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple


class Interpreter(Enum):
    bash = "bash"
    zsh = "zsh"
    fish = "fish"
    ruby = "ruby"
    python = "python"
    perl = "perl"
    node = "node"


_shebang_patterns = [
    (Interpreter.bash, re.compile(r"(^|/)bash\b|/usr/bin/env\s+bash\b")),
    (Interpreter.zsh, re.compile(r"(^|/)zsh\b|/usr/bin/env\s+zsh\b")),
    (Interpreter.fish, re.compile(r"(^|/)fish\b|/usr/bin/env\s+fish\b")),
    (Interpreter.ruby, re.compile(r"(^|/)ruby\b|/usr/bin/env\s+ruby\b")),
    (Interpreter.python, re.compile(r"(^|/)python3?\b|/usr/bin/env\s+python3?\b")),
    (Interpreter.perl, re.compile(r"(^|/)perl\b|/usr/bin/env\s+perl\b")),
    (Interpreter.node, re.compile(r"(^|/)node\b|/usr/bin/env\s+node\b")),
]

_helper_files = {
    Interpreter.bash: "howzit.sh",
    Interpreter.zsh: "howzit.sh",
    Interpreter.fish: "howzit.fish",
    Interpreter.ruby: "howzit.rb",
    Interpreter.python: "howzit.py",
    Interpreter.perl: "howzit.pl",
    Interpreter.node: "howzit.js",
}

_interpreter_commands = {
    Interpreter.bash: ["/bin/bash"],
    Interpreter.zsh: ["/bin/zsh"],
    Interpreter.fish: ["/usr/bin/env", "fish"],
    Interpreter.ruby: ["/usr/bin/env", "ruby"],
    Interpreter.python: ["/usr/bin/env", "python3"],
    Interpreter.perl: ["/usr/bin/env", "perl"],
    Interpreter.node: ["/usr/bin/env", "node"],
}


def detect_interpreter(script: str) -> Optional[Interpreter]:
    """
    Detect the interpreter from the script's hashbang line, if any.
    """
    lines = script.lstrip("\n").splitlines()
    if not lines or not lines[0].startswith("#!"):
        return None
    shebang = lines[0][2:].strip()
    for interpreter, pattern in _shebang_patterns:
        if pattern.search(shebang):
            return interpreter
    return None


def helper_load_line(interpreter: Interpreter, support_dir: Path) -> str:
    path = support_dir / _helper_files[interpreter]
    if interpreter in (Interpreter.bash, Interpreter.zsh, Interpreter.fish):
        return f'source "{path}"'
    if interpreter == Interpreter.python:
        return f"import sys\nsys.path.insert(0, {str(support_dir)!r})\nimport howzit"
    if interpreter == Interpreter.node:
        return f"require('{path}');"
    return f"require '{path}';" if interpreter == Interpreter.perl else f"require '{path}'"


def inject_helper(script: str, support_dir: Optional[Path]) -> Tuple[str, Optional[Interpreter]]:
    """
    Insert the helper load line after the hashbang, if the interpreter is known and
    its helper is installed in `support_dir`.
    """
    interpreter = detect_interpreter(script)
    if not interpreter or not support_dir:
        return script, interpreter
    if not (support_dir / _helper_files[interpreter]).exists():
        return script, interpreter

    lines = script.lstrip("\n").splitlines()
    injected = [lines[0]] + helper_load_line(interpreter, support_dir).splitlines() + lines[1:]
    return "\n".join(injected) + "\n", interpreter


def execution_command(script_path: Path, interpreter: Optional[Interpreter], script: str) -> List[str]:
    """
    The command line that runs a script file. Scripts with an unrecognized hashbang
    are executed directly; scripts with none run under `/bin/sh`.
    """
    if interpreter:
        return _interpreter_commands[interpreter] + [str(script_path)]
    if script.lstrip("\n").startswith("#!"):
        return [str(script_path)]
    return ["/bin/sh", str(script_path)]


## Tests


def test_detect_interpreter():
    assert detect_interpreter("#!/bin/bash\necho hi") == Interpreter.bash
    assert detect_interpreter("#!/usr/bin/env python3\nprint(1)") == Interpreter.python
    assert detect_interpreter("#!/usr/local/bin/ruby\nputs 1") == Interpreter.ruby
    assert detect_interpreter("#!/usr/bin/env node\n") == Interpreter.node
    assert detect_interpreter("#!/opt/homebrew/bin/fish\n") == Interpreter.fish
    assert detect_interpreter("#!/usr/bin/env awk -f\n") is None
    assert detect_interpreter("echo no shebang") is None
    assert detect_interpreter("") is None


def test_inject_helper(tmp_path):
    script = "#!/bin/bash\necho hi"
    assert inject_helper(script, tmp_path) == (script, Interpreter.bash)

    (tmp_path / "howzit.sh").write_text("log_info() { :; }\n")
    (tmp_path / "howzit.py").write_text("")
    injected, interpreter = inject_helper(script, tmp_path)
    assert interpreter == Interpreter.bash
    assert injected.splitlines() == ["#!/bin/bash", f'source "{tmp_path}/howzit.sh"', "echo hi"]

    injected, _ = inject_helper("#!/usr/bin/env python3\nprint(1)", tmp_path)
    assert injected.splitlines()[1:4] == [
        "import sys",
        f"sys.path.insert(0, {str(tmp_path)!r})",
        "import howzit",
    ]

    assert inject_helper("echo plain", tmp_path) == ("echo plain", None)


def test_execution_command(tmp_path):
    path = tmp_path / "script"
    assert execution_command(path, Interpreter.bash, "") == ["/bin/bash", str(path)]
    assert execution_command(path, Interpreter.python, "") == ["/usr/bin/env", "python3", str(path)]
    assert execution_command(path, None, "#!/usr/bin/awk -f\n") == [str(path)]
    assert execution_command(path, None, "echo hi") == ["/bin/sh", str(path)]
