"""
Turns the markdown body of a topic into a flat, ordered sequence of directives.

Each line is classified once into a `LineKind` and the parser acts on the
classification, tracking open conditionals on an explicit stack. `@before`/`@after`
blocks are prose and are extracted separately by `extract_requirements()`.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import List, NamedTuple, Optional, Set, Tuple

from howzit.config.logger import get_logger
from howzit.config.settings import LogLevel
from howzit.model.directive_model import Directive, DirectiveKind, TaskSpec
from howzit.model.task_model import TaskType

log = get_logger(__name__)


class LineKind(Enum):
    fence_open = "fence_open"
    if_ = "if"
    unless = "unless"
    elsif = "elsif"
    else_ = "else"
    end = "end"
    requirement_open = "requirement_open"
    log_level = "log_level"
    set_var = "set_var"
    action = "action"
    text = "text"


_line_patterns: List[Tuple[LineKind, re.Pattern]] = [
    (
        LineKind.fence_open,
        re.compile(r"^\s*(?P<fence>`{3,})run(?P<optional>[!?]{1,2})?\s*(?P<title>.*?)\s*$", re.I),
    ),
    (LineKind.if_, re.compile(r"^\s*@if\s+(?P<condition>.+?)\s*$", re.I)),
    (LineKind.unless, re.compile(r"^\s*@unless\s+(?P<condition>.+?)\s*$", re.I)),
    (LineKind.elsif, re.compile(r"^\s*@elsif\s+(?P<condition>.+?)\s*$", re.I)),
    (LineKind.else_, re.compile(r"^\s*@else\s*$", re.I)),
    (LineKind.end, re.compile(r"^\s*@end\s*$", re.I)),
    (
        LineKind.requirement_open,
        re.compile(r"^\s*@(?P<which>before|prereq|after|postreq)\s*$", re.I),
    ),
    (LineKind.log_level, re.compile(r"^\s*@log_level\(\s*(?P<level>\w+)\s*\)\s*$", re.I)),
    (
        LineKind.set_var,
        re.compile(r"^\s*@set_var\(\s*(?P<name>[^,]*?)\s*,\s*(?P<value>.*?)\s*\)\s*$", re.I),
    ),
    (
        LineKind.action,
        re.compile(r"@(?P<cmd>include|run|copy|open|url)(?P<optional>[!?]{1,2})?\(", re.I),
    ),
]

_valid_var_name_re = re.compile(r"^[A-Za-z0-9_-]+$")
_task_log_level_re = re.compile(r",\s*log_level\s*=\s*(?P<level>\w+)\s*$", re.I)
_include_args_re = re.compile(r"^(?P<topic>.*?)\s*\[(?P<args>[^\]]*)\]\s*$")

_requirements_re = re.compile(
    r"^[ \t]*@(?P<which>before|prereq|after|postreq)[ \t]*$(?P<body>.*?)^[ \t]*@end[ \t]*$",
    re.I | re.M | re.S,
)

_action_types = {
    "run": TaskType.run,
    "copy": TaskType.copy,
    "open": TaskType.open,
    "url": TaskType.open,
    "include": TaskType.include,
}


@dataclass(frozen=True)
class ClassifiedLine:
    kind: LineKind
    match: Optional[re.Match]
    text: str


def classify_line(line: str) -> ClassifiedLine:
    """
    Classify a single line. Action directives may appear anywhere in a line; all
    other directives must start the line.
    """
    for kind, pattern in _line_patterns:
        match = pattern.search(line) if kind == LineKind.action else pattern.match(line)
        if match:
            return ClassifiedLine(kind, match, line)
    return ClassifiedLine(LineKind.text, None, line)


def requirement_lines(text: str) -> Set[int]:
    """
    Line numbers (1-based) covered by closed `@before`/`@after` blocks, markers included.
    An opener with no matching `@end` covers nothing.
    """
    lines: Set[int] = set()
    for match in _requirements_re.finditer(text):
        first = text.count("\n", 0, match.start()) + 1
        last = text.count("\n", 0, match.end()) + 1
        lines.update(range(first, last + 1))
    return lines


def parse_optional(marker: Optional[str]) -> Tuple[bool, bool]:
    """
    Decode a `?`/`!` marker into `(optional, default)`. `?` defaults to yes, `!` to no.
    """
    if not marker:
        return False, True
    return True, "!" not in marker


def split_balanced(text: str, start: int) -> Optional[Tuple[str, str]]:
    """
    Given `text` with an opening paren just before `start`, return the text inside
    the matching close paren and the remainder after it. None if unbalanced.
    """
    depth = 1
    for pos in range(start, len(text)):
        c = text[pos]
        if c == "(":
            depth += 1
        elif c == ")":
            depth -= 1
            if depth == 0:
                return text[start:pos], text[pos + 1 :]
    return None


def split_include_args(action: str) -> Tuple[str, Tuple[str, ...]]:
    """
    Split `Topic [a, b]` or `Topic, a, b` into the topic name and its positional
    arguments.
    """
    match = _include_args_re.match(action)
    if not match:
        name, _, rest = action.partition(",")
        return name.strip(), tuple(a.strip() for a in rest.split(",") if a.strip())
    args = tuple(a.strip() for a in match.group("args").split(",") if a.strip())
    return match.group("topic").strip(), args


def _parse_log_level(value: str, line_number: int) -> Optional[LogLevel]:
    try:
        return LogLevel.parse(value)
    except ValueError:
        log.debug("Ignoring unknown log level %r on line %s", value, line_number)
        return None


def action_task_spec(classified: ClassifiedLine, line_number: int) -> Optional[TaskSpec]:
    """
    Build the task for an `@run`/`@copy`/`@open`/`@url`/`@include` line.
    """
    match = classified.match
    assert match
    split = split_balanced(classified.text, match.end())
    if split is None:
        return None
    action, title = split
    action = action.strip()
    title = title.strip()

    task_type = _action_types[match.group("cmd").lower()]
    optional, default = parse_optional(match.group("optional"))

    log_level = None
    if task_type == TaskType.run:
        level_match = _task_log_level_re.search(action)
        if level_match:
            log_level = _parse_log_level(level_match.group("level"), line_number)
            action = action[: level_match.start()].rstrip()

    include_args: Tuple[str, ...] = ()
    if task_type == TaskType.include:
        action, include_args = split_include_args(action)

    return TaskSpec(
        task_type=task_type,
        title=title or action,
        action=action,
        optional=optional,
        default=default,
        log_level=log_level,
        include_args=include_args,
    )


class ParsedBody(NamedTuple):
    directives: List[Directive]
    prereqs: List[str]
    postreqs: List[str]


class DirectiveParser:
    """
    Single pass over the lines of a topic body. State is local to one `parse()`.
    """

    def __init__(self, text: str):
        self.lines = text.splitlines()
        self.requirement_lines = requirement_lines(text)
        self.directives: List[Directive] = []
        self.stack: List[int] = []

    def _emit(self, directive: Directive) -> int:
        self.directives.append(directive)
        return len(self.directives) - 1

    @property
    def path(self) -> Tuple[int, ...]:
        return tuple(self.stack)

    def parse(self) -> List[Directive]:
        fence: Optional[str] = None
        fence_spec: Tuple[bool, bool, str] = (False, True, "")
        fence_line = 0
        fence_body: List[str] = []
        for line_number, line in enumerate(self.lines, start=1):
            if fence is not None:
                if re.match(rf"^\s*{fence}`*\s*$", line):
                    optional, default, title = fence_spec
                    body = "\n".join(fence_body).strip("\n")
                    spec = TaskSpec(
                        task_type=TaskType.block,
                        title=title,
                        action=body,
                        optional=optional,
                        default=default,
                    )
                    self._emit(
                        Directive(
                            kind=DirectiveKind.task,
                            line_number=fence_line,
                            conditional_path=self.path,
                            task_spec=spec,
                        )
                    )
                    fence = None
                else:
                    fence_body.append(line)
                continue

            classified = classify_line(line)
            kind = classified.kind
            match = classified.match

            if line_number in self.requirement_lines:
                continue

            if kind == LineKind.requirement_open:
                log.debug("Ignoring unclosed requirement block on line %s", line_number)

            elif kind == LineKind.fence_open:
                assert match
                fence = match.group("fence")
                optional, default = parse_optional(match.group("optional"))
                fence_spec = (optional, default, match.group("title"))
                fence_line = line_number
                fence_body = []

            elif kind in (LineKind.if_, LineKind.unless):
                assert match
                directive_kind = DirectiveKind.if_ if kind == LineKind.if_ else DirectiveKind.unless
                idx = self._emit(
                    Directive(
                        kind=directive_kind,
                        line_number=line_number,
                        conditional_path=self.path,
                        condition=match.group("condition"),
                    )
                )
                self.stack.append(idx)

            elif kind in (LineKind.elsif, LineKind.else_):
                if not self.stack:
                    log.debug("Ignoring @%s outside a conditional on line %s", kind.value, line_number)
                    continue
                idx = self._emit(
                    Directive(
                        kind=DirectiveKind.elsif if kind == LineKind.elsif else DirectiveKind.else_,
                        line_number=line_number,
                        conditional_path=tuple(self.stack[:-1]),
                        condition=match.group("condition") if kind == LineKind.elsif and match else None,
                    )
                )
                # Tasks in this branch are gated by the branch itself.
                self.stack[-1] = idx

            elif kind == LineKind.end:
                if not self.stack:
                    continue
                self.stack.pop()
                self._emit(
                    Directive(kind=DirectiveKind.end, line_number=line_number, conditional_path=self.path)
                )

            elif kind == LineKind.log_level:
                assert match
                self._emit(
                    Directive(
                        kind=DirectiveKind.log_level,
                        line_number=line_number,
                        conditional_path=self.path,
                        log_level_value=match.group("level"),
                    )
                )

            elif kind == LineKind.set_var:
                assert match
                name = match.group("name")
                if not _valid_var_name_re.match(name):
                    log.debug("Ignoring @set_var with invalid name %r on line %s", name, line_number)
                    continue
                self._emit(
                    Directive(
                        kind=DirectiveKind.set_var,
                        line_number=line_number,
                        conditional_path=self.path,
                        var_name=name,
                        var_value=match.group("value"),
                    )
                )

            elif kind == LineKind.action:
                spec = action_task_spec(classified, line_number)
                if spec:
                    self._emit(
                        Directive(
                            kind=DirectiveKind.task,
                            line_number=line_number,
                            conditional_path=self.path,
                            task_spec=spec,
                        )
                    )

        if fence is not None:
            log.debug("Unclosed run block starting on line %s", fence_line)

        return self.directives


def extract_requirements(text: str) -> Tuple[List[str], List[str]]:
    """
    Collect the text of `@before ... @end` and `@after ... @end` blocks.
    """
    prereqs: List[str] = []
    postreqs: List[str] = []
    for match in _requirements_re.finditer(text):
        body = match.group("body").strip()
        if match.group("which").lower() in ("before", "prereq"):
            prereqs.append(body)
        else:
            postreqs.append(body)
    return prereqs, postreqs


def parse_topic_body(text: str) -> ParsedBody:
    """
    Parse a topic body into its directives, prerequisites, and postrequisites.
    """
    directives = DirectiveParser(text).parse()
    prereqs, postreqs = extract_requirements(text)
    return ParsedBody(directives, prereqs, postreqs)


## Tests


_conditional_body = """
Intro text.

@if ${ENV} == "prod"
@run(deploy --prod) Deploy to production
@if file exists .lock
@run(rm .lock) Clear lock
@end
@elsif ${ENV} == "staging"
@run(deploy --staging) Deploy to staging
@else
@log_level(debug)
@run(echo nothing)
@end
@run(echo done) Done
"""


def test_conditional_paths():
    directives, _, _ = parse_topic_body(_conditional_body)
    summary = [(d.kind, d.conditional_path) for d in directives]
    assert summary == [
        (DirectiveKind.if_, ()),
        (DirectiveKind.task, (0,)),
        (DirectiveKind.if_, (0,)),
        (DirectiveKind.task, (0, 2)),
        (DirectiveKind.end, (0,)),
        (DirectiveKind.elsif, ()),
        (DirectiveKind.task, (5,)),
        (DirectiveKind.else_, ()),
        (DirectiveKind.log_level, (7,)),
        (DirectiveKind.task, (7,)),
        (DirectiveKind.end, ()),
        (DirectiveKind.task, ()),
    ]
    assert directives[0].condition == '${ENV} == "prod"'
    assert directives[5].condition == '${ENV} == "staging"'
    assert directives[7].condition is None
    assert directives[8].log_level_value == "debug"
    assert directives[1].task_spec and directives[1].task_spec.title == "Deploy to production"
    assert directives[9].task_spec and directives[9].task_spec.title == "echo nothing"


def test_parse_is_idempotent():
    first = parse_topic_body(_conditional_body)
    second = parse_topic_body(_conditional_body)
    assert first == second


def test_fenced_blocks():
    body = "\n".join(
        [
            "@if $1",
            "```run? Say hello",
            "#!/bin/bash",
            "@end",
            "echo hello $1",
            "```",
            "@end",
            "````run!",
            "echo plain",
            "````",
        ]
    )
    directives, _, _ = parse_topic_body(body)
    assert [d.kind for d in directives] == [
        DirectiveKind.if_,
        DirectiveKind.task,
        DirectiveKind.end,
        DirectiveKind.task,
    ]
    block = directives[1].task_spec
    assert block and block.task_type == TaskType.block
    assert block.title == "Say hello"
    assert block.action == "#!/bin/bash\n@end\necho hello $1"
    assert (block.optional, block.default) == (True, True)
    assert directives[1].conditional_path == (0,)

    plain = directives[3].task_spec
    assert plain and plain.title == "" and plain.action == "echo plain"
    assert (plain.optional, plain.default) == (True, False)
    assert directives[3].conditional_path == ()


def test_requirements_are_prose():
    body = "\n".join(
        [
            "@before",
            "Make sure the VPN is up.",
            "@run(not a task)",
            "@end",
            "@if x",
            "@after",
            "Check the dashboard.",
            "@end",
            "@run(echo inside)",
            "@end",
        ]
    )
    directives, prereqs, postreqs = parse_topic_body(body)
    assert prereqs == ["Make sure the VPN is up.\n@run(not a task)"]
    assert postreqs == ["Check the dashboard."]
    assert [d.kind for d in directives] == [
        DirectiveKind.if_,
        DirectiveKind.task,
        DirectiveKind.end,
    ]
    assert directives[1].conditional_path == (0,)


def test_unmatched_directives_are_dropped():
    body = "@end\n@else\n@elsif x\n@run(echo ok)\n@end"
    directives, _, _ = parse_topic_body(body)
    assert [d.kind for d in directives] == [DirectiveKind.task]
    assert directives[0].conditional_path == ()


def test_set_var_validation():
    body = "\n".join(
        [
            '@set_var(MESSAGE, "Hello, world")',
            "@set_var(bad name, x)",
            "@set_var(BUILD-DIR, `pwd`)",
            "@set_var(STAMP, $(date +%s))",
            "@set_var(bad$name, x)",
        ]
    )
    directives, _, _ = parse_topic_body(body)
    assert [(d.var_name, d.var_value) for d in directives] == [
        ("MESSAGE", '"Hello, world"'),
        ("BUILD-DIR", "`pwd`"),
        ("STAMP", "$(date +%s)"),
    ]


def test_action_directives():
    body = "\n".join(
        [
            "@run(ls -la (with parens), log_level=debug) List files",
            "@copy?(some text)",
            "@open!(https://example.com) Docs",
            "@url(https://example.com/other)",
            "See @include(Setup [dev, us-east]) for details",
            "@run(unterminated",
        ]
    )
    directives, _, _ = parse_topic_body(body)
    specs = [d.task_spec for d in directives]
    assert len(specs) == 5
    run, copy, open_, url, include = specs
    assert run and run.action == "ls -la (with parens)" and run.log_level == LogLevel.debug
    assert run.title == "List files"
    assert copy and copy.task_type == TaskType.copy and copy.title == "some text"
    assert (copy.optional, copy.default) == (True, True)
    assert open_ and open_.task_type == TaskType.open and (open_.optional, open_.default) == (True, False)
    assert url and url.task_type == TaskType.open
    assert include and include.action == "Setup" and include.include_args == ("dev", "us-east")
    assert include.title == "for details"
    assert split_include_args("Deploy, prod, eu") == ("Deploy", ("prod", "eu"))
    assert split_include_args("Deploy") == ("Deploy", ())


def test_classify_line():
    assert classify_line("@IF x").kind == LineKind.if_
    assert classify_line("  @end  ").kind == LineKind.end
    assert classify_line("@ending soon").kind == LineKind.text
    assert classify_line("```run").kind == LineKind.fence_open
    assert classify_line("```bash").kind == LineKind.text
    assert classify_line("@log_level(warn)").kind == LineKind.log_level
    assert classify_line("plain text").kind == LineKind.text


def test_unclosed_requirement_keeps_directives():
    body = "@before\nHave keys.\n@run(true) One\n@run(true) Two"
    directives, prereqs, _ = parse_topic_body(body)
    assert prereqs == []
    assert [d.task_spec.title for d in directives if d.task_spec] == ["One", "Two"]

    body = "@after\n@end\n@if x\n@run(true) Gated\n@end\n@before\nStill open"
    directives, prereqs, postreqs = parse_topic_body(body)
    assert (prereqs, postreqs) == ([], [""])
    assert [d.kind for d in directives] == [
        DirectiveKind.if_,
        DirectiveKind.task,
        DirectiveKind.end,
    ]
    assert requirement_lines(body) == {1, 2}
