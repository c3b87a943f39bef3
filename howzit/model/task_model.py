from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

from howzit.config.settings import LogLevel


class TaskType(Enum):
    """
    The kinds of runnable directives.
    """

    block = "block"
    run = "run"
    copy = "copy"
    open = "open"
    include = "include"

    @property
    def label(self) -> str:
        return self.value.capitalize()


@dataclass(frozen=True)
class Task:
    """
    A task ready to execute, materialized from a task directive of a topic.
    """

    task_type: TaskType
    title: str
    action: str
    optional: bool = False
    default: bool = True
    log_level: Optional[LogLevel] = None
    include_args: Tuple[str, ...] = ()
    parent: Optional[str] = None
    """Title of the topic this task belongs to."""
    source_file: Optional[Path] = None
    """Build note file that defined the topic, if known."""

    def display_title(self, show_all_code: bool = False) -> str:
        if show_all_code or not self.title:
            return self.action
        return self.title

    def to_list(self) -> str:
        return f"    * {self.task_type.value}: {self.title}"

    def __str__(self) -> str:
        return self.title

    def __repr__(self) -> str:
        is_block = len(self.action.splitlines()) > 1
        return f"Task(type={self.task_type.value}, title={self.title!r}, block={is_block})"


@dataclass
class TaskResult:
    """
    What executing a task produced. `total` is the number of tasks the
    execution accounts for, which is more than one for includes.
    """

    success: bool
    total: int = 1
    exit_status: Optional[int] = None
    errors: int = 0
    """Failed sub-tasks, for includes."""
    output: List[str] = field(default_factory=list)

    @property
    def error_count(self) -> int:
        if self.success:
            return 0
        return max(self.errors, 1)


@dataclass(frozen=True)
class TaskOutcome:
    """
    One entry of the run log, appended after each executed task.
    """

    task_title: str
    topic_title: str
    success: bool
    exit_status: Optional[int] = None
