"""
Main entry point for howzit: show or run topics from the build note in the
current directory.
"""

import sys
from pathlib import Path
from typing import List, Optional

from rich.markup import escape

from howzit.config.logger import get_logger, set_console_log_level
from howzit.config.settings import (
    APP_NAME,
    LogLevel,
    Matching,
    MultipleMatches,
    Settings,
    update_global_settings,
)
from howzit.config.setup import setup
from howzit.config.text_styles import COLOR_ERROR, COLOR_FAILURE, COLOR_HINT, COLOR_SUCCESS
from howzit.engine.var_context import RunContext
from howzit.errors import InvalidOption, NONFATAL_EXCEPTIONS, PrerequisitesNotMet
from howzit.form_input.prompt_input import confirm_func, prompt_choose
from howzit.notes.buildnote import BuildNote
from howzit.notes.run_report import format_report
from howzit.notes.topic import Topic
from howzit.shell_ui.shell_output import cprint, print_heading, print_hrule
from howzit.util.parse_shell_args import parse_shell_args, ShellArgs
from howzit.version import get_version

log = get_logger(__name__)

OPTION_ALIASES = {
    "r": "run",
    "l": "list",
    "R": "list-runnable",
    "s": "stack",
    "f": "force",
    "u": "upstream",
    "v": "version",
}

FLAG_OPTIONS = {
    "run",
    "list",
    "list_runnable",
    "list_completions",
    "list_runnable_titles",
    "stack",
    "upstream",
    "force",
    "ask",
    "default",
    "show_code",
    "version",
}

VALUE_OPTIONS = {"log_level", "matching", "multiple", "file", "grep"}

USAGE = f"""Usage: {APP_NAME} [OPTIONS] [TOPIC] [ARGS...]

Show a topic from the build note, or run its tasks with --run.

Options:
  -r, --run              Run the topic's tasks instead of showing it
  -l, --list             List all topics
  -R, --list-runnable    List topics that have tasks, with their tasks
  --list-completions     List topic titles, one per line
  --list-runnable-titles List titles of topics that have tasks
  -s, --stack            Read parent build notes and run tasks in their directories
  -u, --upstream         Read build notes from parent directories
  -f, --force            Keep running after a task fails
  --ask                  Confirm every task before running it
  --default              Answer every prompt with its default
  --show-code            Show task commands instead of titles
  --log-level=LEVEL      debug, info, warn, or error
  --matching=MODE        partial, exact, beginswith, or fuzzy
  --multiple=MODE        first, best, all, or choose
  --grep=PATTERN         Select topics whose title or body matches
  --file=PATH            Use this build note
  -v, --version          Show the version
"""


def _parse_choice(enum_type, name: str, value: str | bool):
    if not isinstance(value, str):
        raise InvalidOption(name)
    try:
        return enum_type(value.strip().lower())
    except ValueError:
        raise InvalidOption(f"{name}={value}")


def apply_options(options: dict) -> Settings:
    """
    Check options and fold them into the global settings.
    """
    for key, value in options.items():
        if key in FLAG_OPTIONS and value is not True:
            raise InvalidOption(f"{key}={value}")
        if key in VALUE_OPTIONS and not isinstance(value, str):
            raise InvalidOption(key)
        if key not in FLAG_OPTIONS | VALUE_OPTIONS:
            raise InvalidOption(key)

    with update_global_settings() as settings:
        if "log_level" in options:
            try:
                settings.console_log_level = LogLevel.parse(str(options["log_level"]))
            except ValueError:
                raise InvalidOption(f"log_level={options['log_level']}")
        if "matching" in options:
            settings.matching = _parse_choice(Matching, "matching", options["matching"])
        if "multiple" in options:
            settings.multiple_matches = _parse_choice(MultipleMatches, "multiple", options["multiple"])
        settings.stack = settings.stack or bool(options.get("stack"))
        settings.include_upstream = (
            settings.include_upstream or settings.stack or bool(options.get("upstream"))
        )
        settings.force = settings.force or bool(options.get("force"))
        settings.ask = settings.ask or bool(options.get("ask"))
        settings.default_answers = settings.default_answers or bool(options.get("default"))
        settings.show_all_code = settings.show_all_code or bool(options.get("show_code"))

    set_console_log_level(settings.console_log_level)
    return settings


def run_context(settings: Settings, note: BuildNote, arguments: List[str]) -> RunContext:
    return RunContext(
        arguments=arguments,
        metadata=note.metadata,
        stack_mode=settings.stack,
        force=settings.force,
        ask=settings.ask,
        show_all_code=settings.show_all_code,
        template_folder=settings.template_folder,
        support_dir=settings.support_dir,
        confirm=confirm_func(settings.default_answers),
        find_topic=note.find_topic,
    )


def show_topic(topic: Topic, note: BuildNote, settings: Settings) -> None:
    print_heading(topic.title)
    cprint()
    lines = topic.print_out(
        settings.show_all_code, find_topic=note.find_topic, header=False, metadata=note.metadata
    )
    for line in lines:
        cprint(line)


def run_topic(topic: Topic, ctx: RunContext) -> Optional[int]:
    """
    Run a topic, printing its summary. Returns the failing exit status, if any.
    """
    outcome = topic.run(ctx)
    for line in outcome.output:
        cprint(line, color=COLOR_SUCCESS if outcome.success else COLOR_FAILURE)
    if outcome.success:
        return None
    return outcome.exit_status or 1


def list_topics(note: BuildNote, runnable: bool, term: Optional[str]) -> None:
    if runnable:
        for line in note.list_runnable(term):
            cprint(line)
        return
    titles = [t.title for t in note.find_topic(term)]
    print_heading(f"Topics in {note.title}")
    for title in titles:
        cprint(f"- {title}")


def howzit(shell_args: ShellArgs, directory: Optional[Path] = None) -> int:
    """
    Run the command line. Returns the exit status.
    """
    options = shell_args.options
    if shell_args.show_help:
        cprint(USAGE)
        return 0
    if options.get("version"):
        cprint(f"{APP_NAME} {get_version()}")
        return 0

    settings = apply_options(options)
    note_file = options.get("file")
    note = BuildNote(
        note_file=Path(note_file).expanduser() if isinstance(note_file, str) else None,
        template_folder=settings.template_folder,
        matching=settings.matching,
        include_upstream=settings.include_upstream,
        directory=directory,
    )

    term = shell_args.args[0] if shell_args.args else None
    arguments = shell_args.args[1:]

    if options.get("list_completions"):
        cprint(note.list_completions())
        return 0
    if options.get("list_runnable_titles"):
        cprint(note.list_runnable_completions())
        return 0
    if options.get("list") or options.get("list_runnable"):
        list_topics(note, bool(options.get("list_runnable")), term)
        return 0

    grep_pattern = options.get("grep")
    if isinstance(grep_pattern, str):
        topics = note.grep(grep_pattern)
        if term:
            topics = [t for t in topics if t in note.find_topic(term)]
        if not topics:
            log.warning("No topics match: %s", escape(grep_pattern))
            return 1
    elif term:
        topics = note.select_topics(term, settings.multiple_matches, choose=prompt_choose)
    else:
        list_topics(note, False, None)
        return 0

    if not options.get("run"):
        for i, topic in enumerate(topics):
            if i:
                print_hrule()
            show_topic(topic, note, settings)
        return 0

    ctx = run_context(settings, note, arguments)
    exit_status = 0
    for topic in topics:
        failed = run_topic(topic, ctx)
        if failed is not None:
            exit_status = failed
            if not settings.force:
                break

    report = format_report(ctx.run_log)
    if report:
        cprint()
        for line in report:
            cprint(line)
    return exit_status


def main():
    setup()
    try:
        shell_args = parse_shell_args(sys.argv[1:], aliases=OPTION_ALIASES, options_first=True)
        status = howzit(shell_args)
    except PrerequisitesNotMet as e:
        log.error("%s", escape(str(e)))
        status = 1
    except NONFATAL_EXCEPTIONS as e:
        log.error(f"[{COLOR_ERROR}]Error:[/{COLOR_ERROR}] %s", escape(str(e)))
        log.info(f"[{COLOR_HINT}]Run `{APP_NAME} --help` for usage.[/{COLOR_HINT}]")
        status = 1
    sys.exit(status)


## Tests


def _note(tmp_path: Path) -> Path:
    note = tmp_path / "buildnotes.md"
    note.write_text(
        "\n".join(
            [
                "# Test Project",
                "",
                "## Build [target:all]",
                "",
                "@run(test -n \"${target}\") Check target",
                "",
                "## Fail",
                "",
                "@run(exit 3) Broken",
                "@run(true) Never",
                "",
                "## Notes",
                "",
                "Just prose.",
                "",
            ]
        )
    )
    return note


def _args(*argv: str) -> ShellArgs:
    return parse_shell_args(list(argv), aliases=OPTION_ALIASES, options_first=True)


def _reset_settings():
    with update_global_settings() as settings:
        settings.stack = False
        settings.include_upstream = False
        settings.force = False
        settings.ask = False
        settings.default_answers = False
        settings.show_all_code = False
        settings.matching = Matching.partial
        settings.multiple_matches = MultipleMatches.first


def test_run_and_exit_status(tmp_path):
    _note(tmp_path)
    try:
        assert howzit(_args("-r", "--default", "build", "release"), directory=tmp_path) == 0
        assert howzit(_args("--run", "--default", "fail"), directory=tmp_path) == 3
        assert howzit(_args("notes"), directory=tmp_path) == 0
        assert howzit(_args("--list"), directory=tmp_path) == 0
        assert howzit(_args("--list-completions"), directory=tmp_path) == 0
        assert howzit(_args("-R", "build"), directory=tmp_path) == 0
    finally:
        _reset_settings()


def test_invalid_options(tmp_path):
    _note(tmp_path)
    try:
        for argv in (["--bogus"], ["--run=yes"], ["--matching=sorta"], ["--log-level"]):
            try:
                howzit(_args(*argv), directory=tmp_path)
                assert False, f"Should have raised InvalidOption: {argv}"
            except InvalidOption:
                pass
    finally:
        _reset_settings()


def test_apply_options():
    try:
        settings = apply_options({"stack": True, "matching": "Exact", "multiple": "all"})
        assert settings.stack and settings.include_upstream
        assert settings.matching == Matching.exact
        assert settings.multiple_matches == MultipleMatches.all
    finally:
        _reset_settings()


def test_show_uses_note_metadata(tmp_path):
    from howzit.config.logger import record_console

    (tmp_path / "buildnotes.md").write_text(
        "\n".join(
            [
                "env: production",
                "",
                "# Metadata Project",
                "",
                "## Deploy",
                "",
                '@if env == "staging"',
                "Staging only.",
                "@end",
                '@if env == "production"',
                "Production notes.",
                "@end",
                "",
            ]
        )
    )
    try:
        with record_console() as console:
            assert howzit(_args("deploy"), directory=tmp_path) == 0
    finally:
        _reset_settings()
    output = console.export_text()
    assert "Production notes." in output
    assert "Staging only." not in output


if __name__ == "__main__":
    main()
