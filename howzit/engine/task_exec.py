"""
Execution of single tasks, and resolution of `@set_var` values.
"""

import os
import re
import subprocess
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

from rich.markup import escape
from strif import abbreviate_str

from howzit.config.logger import console_log_level, get_logger
from howzit.config.settings import ENV_SUPPORT_DIR
from howzit.config.text_styles import EMOJI_TASK
from howzit.engine import script_comm
from howzit.engine.script_support import execution_command, inject_helper
from howzit.engine.var_context import RunContext, strip_quotes
from howzit.errors import IncludeCycle, SetupError, TopicNotFound
from howzit.model.task_model import Task, TaskResult, TaskType
from howzit.shell_tools.native_tools import native_open, os_copy
from howzit.util.parse_shell_args import command_str

log = get_logger(__name__)

_command_substitution_re = re.compile(r"^`(?P<backtick>.*)`$|^\$\((?P<paren>.*)\)$", re.DOTALL)


def resolve_set_var(value: str, ctx: RunContext) -> str:
    """
    Resolve the value of a `@set_var`. Backtick or `$(...)` values are run as shell
    commands and their output is the value; other values have one layer of quotes
    removed and placeholders substituted.
    """
    value = value.strip()
    match = _command_substitution_re.match(value)
    if match:
        command = match.group("backtick")
        if command is None:
            command = match.group("paren")
        command = ctx.render(command)
        try:
            result = subprocess.run(command, shell=True, capture_output=True, text=True)
        except OSError as e:
            log.warning("Error executing command in @set_var: %s", e)
            return ""
        if result.returncode != 0:
            log.warning(
                "Error executing command in @set_var: `%s` exited with status %s",
                escape(command),
                result.returncode,
            )
            return ""
        return result.stdout.rstrip()

    text, _quoted = strip_quotes(value)
    return ctx.render(text)


def task_cwd(task: Task, ctx: RunContext) -> Optional[Path]:
    """
    In stack mode, a task runs in the directory of the build note that defined it,
    unless that note is a template.
    """
    if not ctx.stack_mode or not task.source_file:
        return None
    source_dir = task.source_file.expanduser().resolve().parent
    if ctx.template_folder:
        template_dir = ctx.template_folder.expanduser().resolve()
        if source_dir == template_dir or source_dir.is_relative_to(template_dir):
            return None
    return source_dir


def _run_subprocess(
    command: str | List[str],
    task: Task,
    ctx: RunContext,
    shell: bool,
    extra_env: Optional[Dict[str, str]] = None,
) -> TaskResult:
    comm_file = script_comm.create_comm_file()
    env = script_comm.comm_env(comm_file)
    env.update(extra_env or {})
    cwd = task_cwd(task, ctx)
    if cwd:
        log.debug("Running in %s", cwd)

    try:
        completed = subprocess.run(command, shell=shell, env=env, cwd=cwd)
        exit_status = completed.returncode
    except OSError as e:
        log.error("Could not run %s: %s", escape(task.title or str(command)), e)
        exit_status = 127
    finally:
        script_comm.process_and_apply(comm_file, ctx.variables)

    return TaskResult(success=exit_status == 0, exit_status=exit_status)


def _execute_run(task: Task, ctx: RunContext) -> TaskResult:
    command = ctx.render(task.action)
    log.info("%s Running %s", EMOJI_TASK, escape(ctx.render(task.display_title(ctx.show_all_code))))
    log.debug("Command: %s", escape(abbreviate_str(command, max_len=200)))
    return _run_subprocess(command, task, ctx, shell=True)


def _execute_block(task: Task, ctx: RunContext) -> TaskResult:
    script, interpreter = inject_helper(ctx.render(task.action), ctx.support_dir)
    title = task.title or "code block"
    log.info("%s Running block %s", EMOJI_TASK, escape(ctx.render(title)))

    fd, path = tempfile.mkstemp(prefix="howzit_script_")
    script_path = Path(path)
    try:
        with os.fdopen(fd, "w") as f:
            f.write(script)
        script_path.chmod(0o755)
        command = execution_command(script_path, interpreter, script)
        log.debug("Command: %s", escape(command_str(command)))

        extra_env = {}
        if ctx.support_dir:
            extra_env[ENV_SUPPORT_DIR] = str(ctx.support_dir)
        return _run_subprocess(command, task, ctx, shell=False, extra_env=extra_env)
    finally:
        script_path.unlink(missing_ok=True)


def _execute_copy(task: Task, ctx: RunContext) -> TaskResult:
    text = ctx.render(task.action)
    try:
        os_copy(text)
    except SetupError as e:
        log.warning("%s", escape(str(e)))
    return TaskResult(success=True)


def _execute_open(task: Task, ctx: RunContext) -> TaskResult:
    target = ctx.render(task.action)
    try:
        native_open(target)
    except (OSError, NotImplementedError) as e:
        log.warning("Could not open %s: %s", escape(target), e)
    return TaskResult(success=True)


def _execute_include(task: Task, ctx: RunContext) -> TaskResult:
    name = ctx.render(task.action)
    matches = ctx.find_topic(name) if ctx.find_topic else []
    if not matches:
        raise TopicNotFound(name)
    topic = matches[0]

    running = ctx.include_stack + ((task.parent,) if task.parent else ())
    if topic.title in running:
        raise IncludeCycle(running + (topic.title,))

    arguments = [ctx.render(arg) for arg in task.include_args] if task.include_args else None
    log.info("%s Including %s", EMOJI_TASK, escape(topic.title))

    outcome = topic.run(ctx.nested(arguments, including=task.parent), nested=True)
    return TaskResult(
        success=outcome.errors == 0,
        total=outcome.total,
        exit_status=outcome.exit_status,
        errors=outcome.errors,
        output=list(outcome.output),
    )


_executors = {
    TaskType.run: _execute_run,
    TaskType.block: _execute_block,
    TaskType.copy: _execute_copy,
    TaskType.open: _execute_open,
    TaskType.include: _execute_include,
}


def execute_task(task: Task, ctx: RunContext) -> TaskResult:
    """
    Run one task. The task's own log level, if any, applies while it runs.
    Raises `TopicNotFound` for an include with no matching topic, and
    `IncludeCycle` for an include of a topic that is already running.
    """
    with console_log_level(task.log_level):
        return _executors[task.task_type](task, ctx)


## Tests


def test_resolve_set_var():
    ctx = RunContext(arguments=["arg1"])
    ctx.variables.set("NAME", "world")

    assert resolve_set_var('"Hello, world"', ctx) == "Hello, world"
    assert resolve_set_var("'single'", ctx) == "single"
    assert resolve_set_var("bare text", ctx) == "bare text"
    assert resolve_set_var('"Hello, ${NAME}"', ctx) == "Hello, world"
    assert resolve_set_var("${MISSING:fallback}", ctx) == "fallback"
    assert resolve_set_var("$1", ctx) == "arg1"


def test_resolve_set_var_commands():
    ctx = RunContext()
    ctx.variables.set("WORD", "howzit")
    assert resolve_set_var("`echo ${WORD}`", ctx) == "howzit"
    assert resolve_set_var("$(printf 'a b\\n\\n')", ctx) == "a b"
    assert resolve_set_var("`exit 3`", ctx) == ""


def test_run_task_and_comm(tmp_path):
    ctx = RunContext()
    ctx.variables.set("OUT", str(tmp_path / "out.txt"))
    task = Task(
        task_type=TaskType.run,
        title="Write",
        action='echo hi > "${OUT}" && echo "VAR:STEP=2" >> "$HOWZIT_COMM_FILE"',
    )
    result = execute_task(task, ctx)
    assert result.success and result.exit_status == 0
    assert (tmp_path / "out.txt").read_text().strip() == "hi"
    assert ctx.variables.get("STEP") == "2"

    failing = Task(task_type=TaskType.run, title="Fail", action="exit 4")
    result = execute_task(failing, ctx)
    assert not result.success and result.exit_status == 4


def test_block_task(tmp_path):
    ctx = RunContext(arguments=["from-arg"], support_dir=tmp_path)
    (tmp_path / "howzit.sh").write_text(
        'set_var() { echo "VAR:$1=$2" >> "$HOWZIT_COMM_FILE"; }\n'
    )
    script = "#!/bin/bash\nset_var GREETING \"$1 ok\"\ntest -n \"$HOWZIT_SUPPORT_DIR\""
    task = Task(task_type=TaskType.block, title="", action=script)
    result = execute_task(task, ctx)
    assert result.success
    assert ctx.variables.get("GREETING") == "from-arg ok"

    plain = Task(task_type=TaskType.block, title="", action="exit 2")
    assert execute_task(plain, ctx).exit_status == 2


def test_stack_mode_cwd(tmp_path):
    note_dir = tmp_path / "project"
    template_dir = tmp_path / "templates"
    note_dir.mkdir()
    template_dir.mkdir()
    ctx = RunContext(stack_mode=True, template_folder=template_dir)

    task = Task(
        task_type=TaskType.run,
        title="pwd",
        action="pwd > here.txt",
        source_file=note_dir / "buildnotes.md",
    )
    before = os.getcwd()
    assert execute_task(task, ctx).success
    assert os.getcwd() == before
    assert (note_dir / "here.txt").exists()

    templated = Task(task_type=TaskType.run, title="t", action="true", source_file=template_dir / "a.md")
    assert task_cwd(templated, ctx) is None
    assert task_cwd(task, RunContext()) is None


def test_copy_without_clipboard(monkeypatch):
    import howzit.engine.task_exec as task_exec

    def no_clipboard(text):
        raise SetupError("No clipboard tool found")

    monkeypatch.setattr(task_exec, "os_copy", no_clipboard)
    result = execute_task(Task(task_type=TaskType.copy, title="c", action="text"), RunContext())
    assert result.success


def test_missing_include():
    ctx = RunContext(find_topic=lambda name: [])
    task = Task(task_type=TaskType.include, title="Inc", action="Nowhere")
    try:
        execute_task(task, ctx)
        assert False, "Should have raised TopicNotFound"
    except TopicNotFound as e:
        assert e.topic_name == "Nowhere"


def test_include_cycle():
    class Looping:
        title = "Loop"
        runs = 0

        def run(self, ctx, nested=False):
            Looping.runs += 1
            raise AssertionError("Should not run")

    ctx = RunContext(find_topic=lambda name: [Looping()])
    task = Task(task_type=TaskType.include, title="Inc", action="Loop", parent="Loop")
    try:
        execute_task(task, ctx)
        assert False, "Should have raised IncludeCycle"
    except IncludeCycle as e:
        assert e.chain == ("Loop", "Loop")

    nested = RunContext(find_topic=lambda name: [Looping()]).nested(including="Loop")
    task = Task(task_type=TaskType.include, title="Inc", action="Loop", parent="Other")
    try:
        execute_task(task, nested)
        assert False, "Should have raised IncludeCycle"
    except IncludeCycle as e:
        assert e.chain == ("Loop", "Other", "Loop")
    assert Looping.runs == 0
