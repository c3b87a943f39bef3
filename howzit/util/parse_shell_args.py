"""
Tiny parsing library for shell-style arguments: quoting for display and
separating `--options` from positional arguments.
"""

import ast
import re
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Tuple

# Same unsafe chars as shlex.quote(), but also allowing `~`.
_shell_unsafe_re = re.compile(r"[^\w@%+=:,./~-]", re.ASCII)


def shell_quote(arg: str) -> str:
    """
    Quote a string for shell usage, if needed. Simple text words without spaces
    are left unquoted. Prefers single quotes in cases where either could work.
    """
    has_unsafe = _shell_unsafe_re.search(arg)
    if arg and not has_unsafe:
        return arg
    elif "'" not in arg:
        return f"'{arg}'"
    else:
        return repr(arg)


def shell_unquote(arg: str) -> str:
    """
    Unquote a string using Python conventions, but allow unquoted strings to
    pass through.
    """
    if len(arg) >= 2 and arg.startswith(("'", '"')) and arg.endswith(arg[0]):
        try:
            return ast.literal_eval(arg)
        except (SyntaxError, ValueError):
            pass
    return arg


def command_str(command: List[str]) -> str:
    return " ".join(shell_quote(arg) for arg in command)


StrBoolOptions = Dict[str, str | bool]
"""
A dict of options, where keys are option names and values are either strings or
boolean flags.
"""


def parse_option(key_value_str: str, aliases: Optional[Mapping[str, str]] = None) -> Tuple[str, str | bool]:
    """
    Parse a key-value string like `--foo=123` or `--bar="some value"` into a `(key, value)`
    tuple. Short names like `-r` are expanded via `aliases`.
    """
    # Allow -foo or --foo.
    key_value_str = key_value_str.lstrip("-")
    key, _, value_str = key_value_str.partition("=")
    key = key.strip()
    if aliases and key in aliases:
        key = aliases[key]
    key = key.replace("-", "_")
    value_str = value_str.strip()
    value = shell_unquote(value_str) if value_str else True

    return key, value


@dataclass(frozen=True)
class ShellArgs:
    """
    Immutable record of parsed command line arguments and options.
    """

    args: List[str]
    options: StrBoolOptions
    show_help: bool = False


def parse_shell_args(
    args_and_opts: List[str],
    aliases: Optional[Mapping[str, str]] = None,
    options_first: bool = False,
) -> ShellArgs:
    """
    Parse pre-split raw shell input arguments into plain args and options
    (shell arguments starting with `-`).

    All plain args are strings. All options are string values (if they have
    a value) or boolean flags with a True value (indicating they were
    present on the command line with no value provided).

    With `options_first`, everything from the first plain arg on is a plain arg,
    so arguments meant for a topic may themselves look like options.

    ["deploy", "--opt1", "--opt2='bar baz'"]
      -> ShellArgs(args=["deploy"], options={"opt1": True, "opt2": "bar baz"}, show_help=False)

    ["--run", "deploy", "--dry-run"], options_first=True
      -> ShellArgs(args=["deploy", "--dry-run"], options={"run": True}, show_help=False)
    """
    args: List[str] = []
    options: StrBoolOptions = {}
    show_help: bool = False

    for i, token in enumerate(args_and_opts):
        if options_first and args:
            args.extend(args_and_opts[i:])
            break
        if token.startswith("-") and token != "-":
            key, value = parse_option(token, aliases)
            if key in ("help", "h"):
                show_help = True
            else:
                options[key] = value
        else:
            args.append(token)

    return ShellArgs(args=args, options=options, show_help=show_help)


## Tests


def test_shell_quote():
    assert shell_quote("simple") == "simple"
    assert shell_quote("~/path/file.md") == "~/path/file.md"
    assert shell_quote("two words") == "'two words'"
    assert shell_quote("it's") == '"it\'s"'
    assert shell_quote("") == "''"
    assert command_str(["/bin/sh", "-c", "echo hi"]) == "/bin/sh -c 'echo hi'"


def test_shell_unquote():
    assert shell_unquote("'two words'") == "two words"
    assert shell_unquote('"x"') == "x"
    assert shell_unquote("plain") == "plain"
    assert shell_unquote("'") == "'"
    assert shell_unquote("'unbalanced\"") == "'unbalanced\""


def test_parse_shell_args():
    args = [
        "pos1",
        "pos2",
        "--key1=value1",
        "--key2",
        "pos3",
        "-k3=value3",
        "--key4='two words'",
        "--log-level=debug",
        "--help",
    ]
    shell_args = parse_shell_args(args)

    assert shell_args.args == [
        "pos1",
        "pos2",
        "pos3",
    ]
    assert shell_args.options == {
        "key1": "value1",
        "key2": True,
        "k3": "value3",
        "key4": "two words",
        "log_level": "debug",
    }
    assert shell_args.show_help == True


def test_parse_shell_args_options_first():
    shell_args = parse_shell_args(
        ["-r", "--stack", "deploy", "--dry-run", "prod"],
        aliases={"r": "run"},
        options_first=True,
    )
    assert shell_args.args == ["deploy", "--dry-run", "prod"]
    assert shell_args.options == {"run": True, "stack": True}
    assert shell_args.show_help == False
