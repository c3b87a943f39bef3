import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from howzit.config.text_styles import EMOJI_COPY, EMOJI_OPEN, EMOJI_RUN
from howzit.engine.condition_eval import ConditionEvaluator
from howzit.engine.directive_parser import (
    action_task_spec,
    ClassifiedLine,
    classify_line,
    LineKind,
    parse_optional,
    parse_topic_body,
    requirement_lines,
)
from howzit.engine.runner import RunOutcome, SequentialRunner
from howzit.engine.var_context import RunContext, TopicLookup
from howzit.form_input.prompt_input import yes_no_hint
from howzit.model.task_model import Task

_title_params_re = re.compile(r"^(?P<title>.*?)\s*\[(?P<params>[^\]]*)\]\s*$")
_param_re = re.compile(r"^(?P<name>[A-Za-z0-9_-]+)(?::(?P<default>.*))?$")

_action_icons = {"run": EMOJI_RUN, "copy": EMOJI_COPY, "open": EMOJI_OPEN, "url": EMOJI_OPEN}

_hidden_line_kinds = (
    LineKind.if_,
    LineKind.unless,
    LineKind.elsif,
    LineKind.else_,
    LineKind.end,
    LineKind.requirement_open,
    LineKind.log_level,
    LineKind.set_var,
)


@dataclass(frozen=True)
class TopicParam:
    name: str
    default: Optional[str] = None


def split_title_params(title: str) -> Tuple[str, Tuple[TopicParam, ...]]:
    """
    Split `Deploy [env:staging, region]` into the bare title and its parameters.
    A bracketed suffix that isn't a list of parameter names is part of the title.
    """
    match = _title_params_re.match(title.strip())
    if not match:
        return title.strip(), ()

    params = []
    for item in match.group("params").split(","):
        param_match = _param_re.match(item.strip())
        if not param_match:
            return title.strip(), ()
        default = param_match.group("default")
        params.append(TopicParam(param_match.group("name"), default.strip() if default else default))
    return match.group("title").strip(), tuple(params)


class Topic:
    """
    One `##` section of a build note: a title and a markdown body, parsed into
    directives once at load time.
    """

    def __init__(
        self,
        title: str,
        content: str,
        source_file: Optional[Path] = None,
        parent: Optional[str] = None,
    ):
        self.title, self.params = split_title_params(title)
        self.content = content
        self.source_file = source_file
        self.parent = parent
        """Name of the template this topic came from, if any."""

        self.directives, self.prereqs, self.postreqs = parse_topic_body(content)

    @property
    def bare_title(self) -> str:
        """Title without any `prefix:` from an include, template, or upstream note."""
        return self.title.split(":")[-1].strip()

    @property
    def tasks(self) -> List[Task]:
        return [
            d.to_task(parent=self.title, source_file=self.source_file)
            for d in self.directives
            if d.is_task
        ]

    def grep(self, pattern: str) -> bool:
        """
        Case-insensitive search of the title and body. Invalid regexes are searched
        for literally.
        """
        try:
            rx = re.compile(pattern, re.IGNORECASE)
        except re.error:
            rx = re.compile(re.escape(pattern), re.IGNORECASE)
        return bool(rx.search(self.title) or rx.search(self.content))

    def bind_params(self, ctx: RunContext) -> None:
        """
        Bind positional arguments to the title's parameters. Unbound parameters take
        their default unless already set.
        """
        for i, param in enumerate(self.params):
            if i < len(ctx.arguments):
                ctx.variables.set(param.name, ctx.arguments[i])
            elif param.default is not None and param.name not in ctx.variables:
                ctx.variables.set(param.name, param.default)

    def run(self, ctx: RunContext, nested: bool = False) -> RunOutcome:
        self.bind_params(ctx)
        runner = SequentialRunner(
            self.directives,
            ctx,
            topic_title=self.title,
            source_file=self.source_file,
            prereqs=self.prereqs,
            postreqs=self.postreqs,
        )
        return runner.run(nested=nested)

    def print_out(
        self,
        show_all_code: bool = False,
        find_topic: Optional[TopicLookup] = None,
        header: bool = True,
        metadata: Optional[Dict[str, str]] = None,
    ) -> List[str]:
        """
        The topic for display: directive lines become task labels, conditional and
        requirement markers are hidden, and run blocks are collapsed unless
        `show_all_code` is set.

        Content inside `@if`/`@unless` branches is shown only when the branch holds,
        judged against the note metadata. Positional arguments and variables set by
        tasks are not known at display time, so conditions on them are false.
        """
        output: List[str] = []
        if header:
            output.extend([self.title, ""])

        evaluator = ConditionEvaluator(RunContext(metadata=dict(metadata or {}), find_topic=find_topic))
        in_requirement = requirement_lines(self.content)
        # One [showing, matched] pair per open conditional.
        branches: List[List[bool]] = []

        fence: Optional[str] = None
        fence_shown = False
        for line_number, line in enumerate(self.content.splitlines(), start=1):
            if fence is not None:
                if re.match(rf"^\s*{fence}`*\s*$", line):
                    fence = None
                    if show_all_code and fence_shown:
                        output.append(line)
                elif show_all_code and fence_shown:
                    output.append(line)
                continue

            classified = classify_line(line)
            kind = classified.kind
            match = classified.match

            if kind in (LineKind.if_, LineKind.unless) and line_number not in in_requirement:
                assert match
                showing = all(b[0] for b in branches) and (
                    evaluator.evaluate(match.group("condition")) != (kind == LineKind.unless)
                )
                branches.append([showing, showing])
                continue

            if kind in (LineKind.elsif, LineKind.else_) and branches:
                outer = all(b[0] for b in branches[:-1])
                matched = branches[-1][1]
                showing = (
                    outer
                    and not matched
                    and (kind == LineKind.else_ or evaluator.evaluate(match.group("condition")))
                )
                branches[-1] = [showing, matched or showing]
                continue

            if kind == LineKind.end and branches and line_number not in in_requirement:
                branches.pop()
                continue

            if not all(b[0] for b in branches) or kind in _hidden_line_kinds:
                if kind == LineKind.fence_open:
                    assert match
                    fence = match.group("fence")
                    fence_shown = False
                continue

            if kind == LineKind.fence_open:
                assert match
                fence = match.group("fence")
                fence_shown = True
                hint = _option_hint(match.group("optional"))
                title = match.group("title")
                desc = f"Block: {title}" if title else "Code Block"
                output.append(f"{EMOJI_RUN} {desc}{hint}")
                if show_all_code:
                    output.append(fence)
                continue

            if kind == LineKind.action:
                assert match
                output.append(self._action_label(classified, show_all_code, find_topic))
                continue

            output.append(line)

        output.append("")
        return output

    def _action_label(
        self, classified: ClassifiedLine, show_all_code: bool, find_topic: Optional[TopicLookup]
    ) -> str:
        match = classified.match
        assert match
        cmd = match.group("cmd").lower()
        hint = _option_hint(match.group("optional"))
        spec = action_task_spec(classified, 0)
        if not spec:
            return classified.text

        if cmd == "include":
            matches = find_topic(spec.action) if find_topic else []
            name = matches[0].title if matches else spec.action
            return f"{EMOJI_RUN} Include {name}{hint}"

        title = spec.action if show_all_code else spec.title
        return f"{_action_icons[cmd]} {title}{hint}"

    def __repr__(self) -> str:
        return f"Topic({self.title!r}, tasks={len(self.tasks)})"


def _option_hint(marker: Optional[str]) -> str:
    optional, default = parse_optional(marker)
    return f" {yes_no_hint(default)}" if optional else ""


## Tests


def _lookup(*topics: Topic) -> TopicLookup:
    def find_topic(name: str) -> List[Topic]:
        return [t for t in topics if name.lower() in t.title.lower()]

    return find_topic


def test_title_params():
    assert split_title_params("Deploy [env:staging, region]") == (
        "Deploy",
        (TopicParam("env", "staging"), TopicParam("region", None)),
    )
    assert split_title_params("Plain title") == ("Plain title", ())
    assert split_title_params("Notes [see below!]") == ("Notes [see below!]", ())


def test_bind_params():
    topic = Topic("Deploy [env:staging, region:us, extra]", "@run(true)")
    ctx = RunContext(arguments=["prod"])
    ctx.variables.set("region", "eu")
    topic.bind_params(ctx)
    assert ctx.variables.get("env") == "prod"
    assert ctx.variables.get("region") == "eu"
    assert "extra" not in ctx.variables


def test_include_counts_subtasks():
    setup = Topic("Setup", "@run(true) One\n@run(true) Two\n```run Three\ntrue\n```")
    main = Topic("Main", "@include(Setup)")
    ctx = RunContext(find_topic=_lookup(setup, main))

    outcome = main.run(ctx)
    assert outcome.total == 3
    assert outcome.summary == "✓ Ran 3 tasks"
    assert [o.task_title for o in ctx.run_log] == ["One", "Two", "Three"]
    assert all(o.topic_title == "Setup" for o in ctx.run_log)


def test_include_args_are_positional():
    greet = Topic("Greet [who]", '@run(test "$1" = "Ann" && test "${who}" = "Ann") Check')
    main = Topic("Main", "@include(Greet [Ann])")
    ctx = RunContext(arguments=["ignored"], find_topic=_lookup(greet, main))
    outcome = main.run(ctx)
    assert outcome.success and outcome.total == 1
    assert ctx.arguments == ["ignored"]


def test_print_out():
    body = "\n".join(
        [
            "Some intro.",
            "@before",
            "Have keys.",
            "@end",
            "@unless x",
            "@run?(make) Build it",
            "@end",
            "@copy!(secret) Copy secret",
            "@open(https://example.com)",
            "```run Compile",
            "make all",
            "```",
            "@include(Other)",
        ]
    )
    other = Topic("Other Topic", "@run(true)")
    topic = Topic("Example", body)
    lines = topic.print_out(find_topic=_lookup(other))
    assert lines == [
        "Example",
        "",
        "Some intro.",
        "Have keys.",
        "▶ Build it [Y/n]",
        "✚ Copy secret [y/N]",
        "➚ https://example.com",
        "▶ Block: Compile",
        "▶ Include Other Topic",
        "",
    ]

    code_lines = topic.print_out(show_all_code=True, header=False)
    assert "▶ make [Y/n]" in code_lines
    assert "make all" in code_lines


def test_grep_and_tasks():
    topic = Topic("Release", "@run(make release) Ship it\nUses [brackets(")
    assert topic.grep("ship")
    assert topic.grep("brackets(")
    assert not topic.grep("nothing here")
    assert [t.title for t in topic.tasks] == ["Ship it"]
    assert topic.tasks[0].parent == "Release"


def test_print_out_conditional_content():
    def shown(body: str, metadata: Optional[Dict[str, str]] = None) -> List[str]:
        return Topic("T", body).print_out(header=False, metadata=metadata)[:-1]

    assert shown('@if "test" == "test"\nIncluded\n@end\nVisible') == ["Included", "Visible"]
    assert shown('@if "test" == "other"\nThis should NOT be included\n@end\nVisible') == [
        "Visible"
    ]
    assert shown(
        '@if 1 == 1\nOuter\n@if "a" == "b"\nInner\n@end\nAfter inner\n@end\nDone'
    ) == ["Outer", "After inner", "Done"]
    assert shown('@if env == "production"\nProd only\n@end', {"env": "production"}) == [
        "Prod only"
    ]
    assert shown('@if env == "production"\nProd only\n@end', {"env": "staging"}) == []
    assert shown('@unless "a" == "b"\nShown\n@end\n@unless 1 == 1\nHidden\n@end') == ["Shown"]
    assert shown(
        '@if env == "prod"\nProd\n@elsif env == "dev"\nDev\n@else\nOther\n@end', {"env": "dev"}
    ) == ["Dev"]


def test_print_out_hidden_blocks_and_requirements():
    body = "\n".join(
        [
            "@if 1 == 2",
            "```run Hidden block",
            "@end",
            "```",
            "@run(true) Hidden task",
            "@end",
            "@if 1 == 1",
            "@before",
            "Have keys.",
            "@end",
            "@run(true) Shown task",
            "@end",
        ]
    )
    assert Topic("T", body).print_out(show_all_code=True, header=False) == [
        "Have keys.",
        "▶ true",
        "",
    ]


def test_include_cycle_fails_the_task():
    loop = Topic("Loop", "@include(Loop)\n@run(true) After")
    ctx = RunContext(find_topic=_lookup(loop))
    outcome = loop.run(ctx)
    assert not outcome.success and outcome.terminated
    assert outcome.errors == 1
    assert [o.task_title for o in ctx.run_log] == ["Loop"]

    first = Topic("First", "@include(Second)")
    second = Topic("Second", "@run(true) Step\n@include(First)")
    ctx = RunContext(find_topic=_lookup(first, second), force=True)
    outcome = first.run(ctx)
    assert outcome.errors == 1
    assert [(o.task_title, o.success) for o in ctx.run_log] == [("Step", True), ("First", False)]
