"""
The parsed representation of a topic body: a flat, ordered sequence of directives.
Nesting is expressed by each directive's `conditional_path`, the indices of the
enclosing conditional directives, rather than by a tree.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple

from howzit.config.settings import LogLevel
from howzit.model.task_model import Task, TaskType


class DirectiveKind(Enum):
    if_ = "if"
    unless = "unless"
    elsif = "elsif"
    else_ = "else"
    end = "end"
    task = "task"
    log_level = "log_level"
    set_var = "set_var"


CONDITIONAL_KINDS = (
    DirectiveKind.if_,
    DirectiveKind.unless,
    DirectiveKind.elsif,
    DirectiveKind.else_,
    DirectiveKind.end,
)

CHAIN_START_KINDS = (DirectiveKind.if_, DirectiveKind.unless)

BRANCH_KINDS = (DirectiveKind.if_, DirectiveKind.unless, DirectiveKind.elsif, DirectiveKind.else_)


@dataclass(frozen=True)
class TaskSpec:
    task_type: TaskType
    title: str
    action: str
    optional: bool = False
    default: bool = True
    log_level: Optional[LogLevel] = None
    include_args: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Directive:
    kind: DirectiveKind
    line_number: int = 0
    conditional_path: Tuple[int, ...] = field(default_factory=tuple)
    condition: Optional[str] = None
    task_spec: Optional[TaskSpec] = None
    log_level_value: Optional[str] = None
    var_name: Optional[str] = None
    var_value: Optional[str] = None

    @property
    def is_conditional(self) -> bool:
        return self.kind in CONDITIONAL_KINDS

    @property
    def is_branch(self) -> bool:
        return self.kind in BRANCH_KINDS

    @property
    def is_task(self) -> bool:
        return self.kind == DirectiveKind.task

    def to_task(
        self,
        parent: Optional[str] = None,
        source_file: Optional[Path] = None,
        current_log_level: Optional[LogLevel] = None,
    ) -> Task:
        """
        Materialize a runnable Task. The current log level applies only if the
        task has none of its own.
        """
        if not self.task_spec:
            raise ValueError(f"Not a task directive: {self.kind.value}")

        spec = self.task_spec
        return Task(
            task_type=spec.task_type,
            title=spec.title,
            action=spec.action,
            optional=spec.optional,
            default=spec.default,
            log_level=spec.log_level or current_log_level,
            include_args=spec.include_args,
            parent=parent,
            source_file=source_file,
        )


## Tests


def test_directive_kinds():
    d = Directive(kind=DirectiveKind.elsif, condition="x == 1", conditional_path=(0,))
    assert d.is_conditional and d.is_branch and not d.is_task

    end = Directive(kind=DirectiveKind.end)
    assert end.is_conditional and not end.is_branch

    sv = Directive(kind=DirectiveKind.set_var, var_name="A", var_value="1")
    assert not sv.is_task and not sv.is_conditional and not sv.is_branch


def test_to_task_applies_current_log_level():
    spec = TaskSpec(task_type=TaskType.run, title="Build", action="make")
    d = Directive(kind=DirectiveKind.task, task_spec=spec)
    task = d.to_task(parent="Topic", current_log_level=LogLevel.debug)
    assert task.log_level == LogLevel.debug
    assert task.parent == "Topic"

    own = Directive(
        kind=DirectiveKind.task,
        task_spec=TaskSpec(task_type=TaskType.run, title="B", action="b", log_level=LogLevel.error),
    )
    assert own.to_task(current_log_level=LogLevel.debug).log_level == LogLevel.error

    try:
        Directive(kind=DirectiveKind.end).to_task()
        assert False, "Should have raised ValueError"
    except ValueError:
        pass
