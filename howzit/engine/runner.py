"""
The sequential conditional engine: walks a topic's directives in order, decides
which tasks fire, and runs them.

Conditional state is kept per run, keyed by directive index. A conditional is
evaluated when it is reached, and the conditionals between a task and the next
task are evaluated again right after that task runs, so variables set by a task
decide the branches that follow it.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from rich.markup import escape
from strif import abbreviate_str

from howzit.config.logger import get_logger
from howzit.config.settings import LogLevel
from howzit.config.text_styles import (
    COLOR_POSTREQ,
    COLOR_PREREQ,
    EMOJI_FAILURE,
    EMOJI_SUCCESS,
)
from howzit.engine.condition_eval import ConditionEvaluator
from howzit.engine.task_exec import execute_task, resolve_set_var
from howzit.engine.var_context import RunContext
from howzit.errors import IncludeCycle, PrerequisitesNotMet, TopicNotFound
from howzit.model.directive_model import CHAIN_START_KINDS, Directive, DirectiveKind
from howzit.model.task_model import Task, TaskOutcome, TaskResult, TaskType
from howzit.shell_ui.shell_output import print_box

log = get_logger(__name__)

PREREQ_QUESTION = "Have the above prerequisites been met?"


@dataclass
class ConditionalState:
    evaluated: bool = False
    result: bool = False
    matched_chain: bool = False
    """For a chain head, whether any branch of the chain has matched."""
    parent_index: Optional[int] = None
    """For `@elsif`/`@else`, the index of the chain head."""
    matched_by: Optional[int] = None
    """For a chain head, the index of the branch that matched."""
    version: int = -1
    """Variable store version at the last evaluation."""


@dataclass
class RunOutcome:
    output: List[str] = field(default_factory=list)
    total: int = 0
    errors: int = 0
    terminated: bool = False
    exit_status: Optional[int] = None
    summary: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.errors == 0


def plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


def summary_line(total: int, errors: int, terminated: bool) -> str:
    if errors == 0:
        return f"{EMOJI_SUCCESS} Ran {plural(total, 'task')}"
    if terminated:
        return f"{EMOJI_FAILURE} Ran {plural(total, 'task')}, terminated due to error"
    return f"{EMOJI_FAILURE} Completed {plural(total, 'task')} with {plural(errors, 'error')}"


class SequentialRunner:
    """
    Runs one parsed directive sequence against a run context. A runner holds the
    state of a single run; the directives themselves are never modified.
    """

    def __init__(
        self,
        directives: List[Directive],
        ctx: RunContext,
        topic_title: str = "",
        source_file: Optional[Path] = None,
        prereqs: Optional[List[str]] = None,
        postreqs: Optional[List[str]] = None,
    ):
        self.directives = directives
        self.ctx = ctx
        self.topic_title = topic_title
        self.source_file = source_file
        self.prereqs = prereqs or []
        self.postreqs = postreqs or []

        self.evaluator = ConditionEvaluator(ctx)
        self.states: Dict[int, ConditionalState] = {}
        self._chain_heads: Dict[int, Optional[int]] = {}

    # Conditional state.

    def chain_head(self, index: int) -> Optional[int]:
        """
        Find the `@if`/`@unless` that opens the chain an `@elsif`/`@else` belongs to,
        scanning backward and skipping over nested, closed conditionals.
        """
        if index in self._chain_heads:
            return self._chain_heads[index]
        head = None
        depth = 0
        for j in range(index - 1, -1, -1):
            kind = self.directives[j].kind
            if kind == DirectiveKind.end:
                depth += 1
            elif kind in CHAIN_START_KINDS:
                if depth == 0:
                    head = j
                    break
                depth -= 1
        self._chain_heads[index] = head
        return head

    def path_open(self, path) -> bool:
        """
        True if every conditional on the path has evaluated true. Conditionals with
        no recorded state count as false.
        """
        for idx in path:
            state = self.states.get(idx)
            if not state or not state.evaluated or not state.result:
                return False
        return True

    def evaluate_conditional(self, index: int) -> bool:
        directive = self.directives[index]
        state = self.states.setdefault(index, ConditionalState())
        state.evaluated = True
        state.version = self.ctx.variables.version
        enclosing_open = self.path_open(directive.conditional_path)

        if directive.kind in CHAIN_START_KINDS:
            result = False
            if enclosing_open and directive.condition is not None:
                result = self.evaluator.evaluate(directive.condition)
                if directive.kind == DirectiveKind.unless:
                    result = not result
            state.result = result
            state.matched_by = index if result else None
            state.matched_chain = result
            return result

        parent = self.chain_head(index)
        state.parent_index = parent
        parent_state = self.states.get(parent) if parent is not None else None

        result = False
        if parent_state and enclosing_open:
            matched_before = parent_state.matched_by is not None and parent_state.matched_by < index
            if not matched_before:
                if directive.kind == DirectiveKind.else_:
                    result = True
                elif directive.condition is not None:
                    result = self.evaluator.evaluate(directive.condition)

            if result:
                parent_state.matched_by = index
            elif parent_state.matched_by == index:
                parent_state.matched_by = None
            parent_state.matched_chain = parent_state.matched_by is not None

        state.result = result
        state.matched_chain = result
        return result

    def evaluate_if_stale(self, index: int) -> None:
        state = self.states.get(index)
        if state and state.evaluated and state.version == self.ctx.variables.version:
            return
        self.evaluate_conditional(index)

    def reevaluate_pending(self, task_index: int) -> None:
        """
        Evaluate again the conditionals between a just-run task and the next task.
        """
        for j in range(task_index + 1, len(self.directives)):
            directive = self.directives[j]
            if directive.is_task:
                break
            if directive.is_branch:
                self.evaluate_conditional(j)

    # Tasks.

    def confirm_task(self, task: Task) -> bool:
        if not (task.optional or self.ctx.ask):
            return True
        note = ""
        if task.task_type == TaskType.include and self.ctx.find_topic:
            matches = self.ctx.find_topic(self.ctx.render(task.action))
            if matches:
                note = f" ({plural(len(matches[0].tasks), 'task')})"
        title = self.ctx.render(task.display_title(self.ctx.show_all_code))
        question = f'{task.task_type.label} "{title}"{note}'
        return self.ctx.confirm(question, task.default)

    def record(self, task: Task, result: TaskResult) -> None:
        self.ctx.run_log.append(
            TaskOutcome(
                task_title=self.ctx.render(task.display_title(self.ctx.show_all_code)),
                topic_title=self.topic_title,
                success=result.success,
                exit_status=result.exit_status,
            )
        )

    def run_task(self, task: Task) -> TaskResult:
        """
        Execute a task and record it in the run log. Included topics record their
        own tasks.
        """
        try:
            result = execute_task(task, self.ctx)
        except (TopicNotFound, IncludeCycle) as e:
            log.error("%s", escape(str(e)))
            result = TaskResult(success=False)
            self.record(task, result)
            return result

        if task.task_type != TaskType.include:
            self.record(task, result)
        return result

    # Prerequisites.

    def present_prereqs(self) -> None:
        if not self.prereqs:
            return
        print_box("\n\n".join(self.prereqs), color=COLOR_PREREQ)
        if not self.ctx.confirm(PREREQ_QUESTION, True):
            raise PrerequisitesNotMet("Prerequisites not met")

    def present_postreqs(self) -> None:
        if self.postreqs:
            print_box("\n\n".join(self.postreqs), color=COLOR_POSTREQ)

    # The run.

    def run(self, nested: bool = False) -> RunOutcome:
        """
        Run the directives. Nested runs, for includes, produce no summary line.
        Raises `PrerequisitesNotMet` if the user declines the prerequisites.
        """
        outcome = RunOutcome()
        if not any(d.is_task for d in self.directives):
            log.warning("No runnable directives found in %s", escape(self.topic_title))
        else:
            self.present_prereqs()

        try:
            self._run_directives(outcome)
        finally:
            self.present_postreqs()

        if not nested:
            outcome.summary = summary_line(outcome.total, outcome.errors, outcome.terminated)
            outcome.output.append(outcome.summary)
        return outcome

    def _run_directives(self, outcome: RunOutcome) -> None:
        self.states = {}
        current_log_level: Optional[LogLevel] = None

        for index, directive in enumerate(self.directives):
            if directive.is_conditional:
                if directive.is_branch:
                    self.evaluate_if_stale(index)
                continue

            if not self.path_open(directive.conditional_path):
                continue

            if directive.kind == DirectiveKind.log_level:
                assert directive.log_level_value is not None
                try:
                    current_log_level = LogLevel.parse(directive.log_level_value)
                except ValueError as e:
                    log.warning("%s", e)
                continue

            if directive.kind == DirectiveKind.set_var:
                assert directive.var_name is not None and directive.var_value is not None
                value = resolve_set_var(directive.var_value, self.ctx)
                log.debug("Setting %s=%s", directive.var_name, escape(abbreviate_str(value, max_len=80)))
                self.ctx.variables.set(directive.var_name, value)
                continue

            task = directive.to_task(
                parent=self.topic_title,
                source_file=self.source_file,
                current_log_level=current_log_level,
            )
            if not self.confirm_task(task):
                log.info("Skipped: %s", escape(task.title))
                continue

            result = self.run_task(task)
            outcome.total += result.total
            outcome.output.extend(result.output)

            if not result.success:
                outcome.errors += result.error_count
                outcome.exit_status = result.exit_status
                detail = f" (exit code {result.exit_status})" if result.exit_status is not None else ""
                if not self.ctx.force:
                    log.error("Error running task %s%s, ending processing", escape(task.title), detail)
                    outcome.terminated = True
                    break
                log.error("Error running task %s%s", escape(task.title), detail)

            self.reevaluate_pending(index)


## Tests


def _run(body: str, ctx: Optional[RunContext] = None) -> tuple[RunOutcome, RunContext]:
    from howzit.engine.directive_parser import parse_topic_body

    ctx = ctx or RunContext()
    directives, prereqs, postreqs = parse_topic_body(body)
    runner = SequentialRunner(directives, ctx, "Test", prereqs=prereqs, postreqs=postreqs)
    return runner.run(), ctx


def _ran(ctx: RunContext) -> List[str]:
    return [o.task_title for o in ctx.run_log]


def test_gating():
    body = """
@set_var(MODE, fast)
@if MODE == "fast"
@run(true) Fast
@unless MODE == "fast"
@run(true) Never
@end
@if 1 == 1
@run(true) Nested
@end
@end
@if MODE == "slow"
@run(true) Slow
@if 1 == 1
@run(true) Inner slow
@end
@end
@run(true) Always
"""
    outcome, ctx = _run(body)
    assert _ran(ctx) == ["Fast", "Nested", "Always"]
    assert outcome.summary == "✓ Ran 3 tasks"


def test_elsif_else_exclusive():
    calls: List[str] = []

    def find_topic(name: str):
        calls.append(name)
        return ["found"]

    body = """
@set_var(ENV, staging)
@if ENV == "prod"
@run(true) Prod
@elsif ENV == "staging"
@run(true) Staging
@elsif topic exists SideEffect
@run(true) Side
@else
@run(true) Fallback
@end
@if ENV == "nothing"
@run(true) Nothing
@else
@run(true) Else branch
@end
"""
    _outcome, ctx = _run(body, RunContext(find_topic=find_topic))
    assert _ran(ctx) == ["Staging", "Else branch"]
    assert calls == []


def test_reevaluation_after_task():
    body = """
@set_var(STEP, 1)
@if ${STEP} == "1"
@run(echo "VAR:STEP=2" >> "$HOWZIT_COMM_FILE") Step one
@end
@if ${STEP} == "2"
@run(true) Final Task
@end
"""
    outcome, ctx = _run(body)
    assert "Final Task" in _ran(ctx)
    assert ctx.variables.get("STEP") == "2"
    assert outcome.total == 2


def test_branch_switch_within_chain():
    body = """
@set_var(STATE, a)
@if STATE == "a"
@run(echo "VAR:STATE=b" >> "$HOWZIT_COMM_FILE") First
@elsif STATE == "b"
@run(true) Second
@end
@if STATE == "b"
@run(true) Third
@end
"""
    _outcome, ctx = _run(body)
    assert _ran(ctx) == ["First", "Third"]


def test_stop_on_error_and_force():
    body = "@run(true) One\n@run(exit 3) Two\n@run(true) Three"
    outcome, ctx = _run(body)
    assert _ran(ctx) == ["One", "Two"]
    assert outcome.summary == "✗ Ran 2 tasks, terminated due to error"
    assert outcome.exit_status == 3

    outcome, ctx = _run(body, RunContext(force=True))
    assert _ran(ctx) == ["One", "Two", "Three"]
    assert outcome.summary == "✗ Completed 3 tasks with 1 error"
    assert [o.success for o in ctx.run_log] == [True, False, True]


def test_set_var_quotes_and_log_level():
    body = """
@set_var(MESSAGE, "Hello, world")
@log_level(debug)
@run(test "${MESSAGE}" = "Hello, world") Check
"""
    outcome, ctx = _run(body)
    assert ctx.variables.get("MESSAGE") == "Hello, world"
    assert outcome.success and outcome.summary == "✓ Ran 1 task"


def test_optional_tasks_and_ask():
    answers: List[str] = []

    def confirm(question: str, default: bool) -> bool:
        answers.append(question)
        return default

    body = "@run?(true) Yes default\n@run!(true) No default\n@run(true) Plain"
    _outcome, ctx = _run(body, RunContext(confirm=confirm))
    assert _ran(ctx) == ["Yes default", "Plain"]
    assert answers == ['Run "Yes default"', 'Run "No default"']

    answers.clear()
    _outcome, ctx = _run(body, RunContext(confirm=confirm, ask=True))
    assert len(answers) == 3


def test_prerequisites():
    body = "@before\nVPN must be up.\n@end\n@after\nCheck logs.\n@end\n@run(true) Go"

    outcome, ctx = _run(body, RunContext(confirm=lambda q, d: True))
    assert outcome.success and _ran(ctx) == ["Go"]

    try:
        _run(body, RunContext(confirm=lambda q, d: False))
        assert False, "Should have raised PrerequisitesNotMet"
    except PrerequisitesNotMet:
        pass


def test_postreqs_shown_after_failure():
    from howzit.config.logger import record_console

    body = "@after\nRoll back the release.\n@end\n@run(exit 2) Break\n@run(true) Never"
    with record_console() as console:
        outcome, ctx = _run(body)

    assert outcome.terminated and outcome.exit_status == 2
    assert _ran(ctx) == ["Break"]
    assert "Roll back the release." in console.export_text()


def test_unclosed_before_still_runs():
    outcome, ctx = _run("@before\nHave keys.\n@run(true) One\n@run(true) Two")
    assert outcome.total == 2
    assert _ran(ctx) == ["One", "Two"]


def test_missing_include_fails_task():
    body = "@include(Nowhere)\n@run(true) After"
    outcome, ctx = _run(body, RunContext(find_topic=lambda name: []))
    assert outcome.terminated
    assert _ran(ctx) == ["Nowhere"]
    assert not ctx.run_log[0].success


def test_chain_head_lookup():
    from howzit.engine.directive_parser import parse_topic_body

    body = "@if a\n@if b\n@else\n@end\n@elsif c\n@else\n@end"
    directives, _, _ = parse_topic_body(body)
    runner = SequentialRunner(directives, RunContext())
    kinds = [d.kind for d in directives]
    assert kinds[4] == DirectiveKind.elsif and kinds[5] == DirectiveKind.else_
    assert runner.chain_head(2) == 1
    assert runner.chain_head(4) == 0
    assert runner.chain_head(5) == 0


def test_summary_line():
    assert summary_line(1, 0, False) == "✓ Ran 1 task"
    assert summary_line(0, 0, False) == "✓ Ran 0 tasks"
    assert summary_line(2, 1, True) == "✗ Ran 2 tasks, terminated due to error"
    assert summary_line(5, 2, False) == "✗ Completed 5 tasks with 2 errors"
