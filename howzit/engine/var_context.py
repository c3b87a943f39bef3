"""
The explicit run context threaded through parsing, condition evaluation, and
execution: the variable store, positional arguments, note metadata, run options,
and the callbacks the engine needs from the outside world.
"""

import re
import shlex
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from howzit.model.task_model import TaskOutcome

ConfirmFunc = Callable[[str, bool], bool]
"""Asks a yes/no question and returns the answer. Second arg is the default."""

TopicLookup = Callable[[str], List[Any]]
"""Finds topics matching a name, best match first."""


def answer_default(question: str, default: bool) -> bool:
    return default


class VariableStore:
    """
    Named variables, all string-valued. The version counter increases on every
    write so callers can tell whether values may have changed since they last
    looked.
    """

    def __init__(self, values: Optional[Dict[str, str]] = None):
        self._values: Dict[str, str] = dict(values or {})
        self.version = 0

    def get(self, name: str) -> Optional[str]:
        return self._values.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._values

    def __getitem__(self, name: str) -> str:
        return self._values[name]

    def set(self, name: str, value: str) -> None:
        self._values[name] = str(value)
        self.version += 1

    def update(self, values: Dict[str, str]) -> None:
        if not values:
            return
        for name, value in values.items():
            self._values[name] = str(value)
        self.version += 1

    def __repr__(self) -> str:
        return f"VariableStore({self._values!r}, version={self.version})"


@dataclass
class RunContext:
    arguments: List[str] = field(default_factory=list)
    """Positional arguments, `$1`..`$N`."""

    variables: VariableStore = field(default_factory=VariableStore)
    """Named arguments, shared by nested runs."""

    metadata: Dict[str, str] = field(default_factory=dict)
    """Metadata from the build note header."""

    stack_mode: bool = False
    force: bool = False
    ask: bool = False
    show_all_code: bool = False

    template_folder: Optional[Path] = None
    support_dir: Optional[Path] = None

    confirm: ConfirmFunc = answer_default
    find_topic: Optional[TopicLookup] = None

    run_log: List[TaskOutcome] = field(default_factory=list)

    include_stack: Tuple[str, ...] = ()
    """Titles of the topics whose includes led to the current run, outermost first."""

    def nested(
        self, arguments: Optional[Iterable[str]] = None, including: Optional[str] = None
    ) -> "RunContext":
        """
        Context for an included topic. Shares variables and run log; positional
        arguments are replaced if given. `including` is the title of the topic
        doing the include.
        """
        include_stack = self.include_stack + ((including,) if including else ())
        if arguments is None:
            return replace(self, include_stack=include_stack)
        return replace(self, arguments=list(arguments), include_stack=include_stack)

    def render(self, text: str) -> str:
        return render_arguments(text, self.arguments, self.variables)


_placeholder_re = re.compile(r"\$\{([A-Za-z0-9_-]+)(?::([^}]*))?\}|\$(\d+)|\$([@*])")


def render_arguments(text: str, arguments: List[str], variables: Optional[VariableStore]) -> str:
    """
    Substitute `${name}`, `${name:default}`, `$1`..`$N`, and `$@`/`$*` in text.
    Placeholders with no value and no default are left as they are.
    """

    def replace_placeholder(match: re.Match) -> str:
        name, default, index, all_args = match.groups()
        if name is not None:
            if variables is not None and name in variables:
                return variables[name]
            if default is not None:
                return default
            return match.group(0)
        if index is not None:
            idx = int(index) - 1
            if 0 <= idx < len(arguments):
                return arguments[idx]
            return match.group(0)
        if all_args is not None and arguments:
            return shlex.join(arguments)
        return match.group(0)

    return _placeholder_re.sub(replace_placeholder, text)


def strip_quotes(value: str) -> Tuple[str, bool]:
    """
    Remove one layer of matching surrounding quotes. Returns the text and whether
    it was quoted.
    """
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1], True
    return value, False


## Tests


def test_render_arguments():
    store = VariableStore({"VERSION": "1.2.3", "NAME": "howzit"})
    args = ["one", "two words"]

    assert render_arguments("v${VERSION} of ${NAME}", args, store) == "v1.2.3 of howzit"
    assert render_arguments("${MISSING:fallback}", args, store) == "fallback"
    assert render_arguments("${MISSING}", args, store) == "${MISSING}"
    assert render_arguments("${VERSION:ignored}", args, store) == "1.2.3"
    assert render_arguments("$1 and $2, not $3", args, store) == "one and two words, not $3"
    assert render_arguments("echo $@", args, store) == "echo one 'two words'"
    assert render_arguments("echo $*", [], store) == "echo $*"


def test_render_is_single_pass():
    store = VariableStore({"A": "$1"})
    assert render_arguments("${A}", ["x"], store) == "$1"


def test_variable_store_version():
    store = VariableStore()
    assert store.version == 0
    store.set("X", "1")
    store.update({"Y": "2", "Z": "3"})
    assert store.version == 2
    store.update({})
    assert store.version == 2
    assert [store.get(k) for k in ("X", "Y", "Z")] == ["1", "2", "3"]


def test_nested_context_shares_state():
    ctx = RunContext(arguments=["a"])
    child = ctx.nested(["b", "c"])
    child.variables.set("K", "v")
    child.run_log.append(TaskOutcome("t", "topic", True))
    assert ctx.variables.get("K") == "v"
    assert len(ctx.run_log) == 1
    assert ctx.arguments == ["a"]
    assert ctx.nested().arguments == ["a"]
    assert ctx.nested(including="Build").include_stack == ("Build",)
    assert ctx.include_stack == ()


def test_strip_quotes():
    assert strip_quotes('"Hello, world"') == ("Hello, world", True)
    assert strip_quotes("'x'") == ("x", True)
    assert strip_quotes("\"mixed'") == ("\"mixed'", False)
    assert strip_quotes("plain") == ("plain", False)
    assert strip_quotes('"') == ('"', False)
