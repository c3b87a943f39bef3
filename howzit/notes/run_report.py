"""
Summary of a run: one line per executed task, between rules.
"""

from typing import List

from rich.text import Text

from howzit.config.text_styles import (
    COLOR_FAILURE,
    COLOR_KEY,
    COLOR_SUCCESS,
    COLOR_TASK,
    COLOR_TASK_TITLE,
    EMOJI_REPORT_FAILURE,
    EMOJI_SUCCESS,
    REPORT_BOTTOM_CHAR,
    REPORT_TOP_CHAR,
)
from howzit.model.task_model import TaskOutcome


def format_line(entry: TaskOutcome, prefix_topic: bool) -> Text:
    symbol = (
        Text(EMOJI_SUCCESS, style=COLOR_SUCCESS)
        if entry.success
        else Text(EMOJI_REPORT_FAILURE, style=COLOR_FAILURE)
    )
    parts: List[str | Text | tuple] = [("- [", COLOR_TASK), symbol, ("] ", COLOR_TASK)]
    if prefix_topic and entry.topic_title:
        parts.append((f"{entry.topic_title}: ", COLOR_KEY))
    parts.append((entry.task_title, COLOR_TASK_TITLE))
    if not entry.success:
        reason = f"exit code {entry.exit_status}" if entry.exit_status is not None else "failed"
        parts.append((f" (Failed: {reason})", COLOR_FAILURE))
    return Text.assemble(*parts)


def format_report(entries: List[TaskOutcome]) -> List[Text]:
    """
    The report lines, or an empty list if nothing ran. Topic titles are shown
    when tasks from more than one topic ran.
    """
    if not entries:
        return []
    prefix_topic = len({e.topic_title for e in entries}) > 1
    lines = [format_line(entry, prefix_topic) for entry in entries]
    for line in lines:
        line.rstrip()
    width = max(len(line.plain) for line in lines)
    return (
        [Text(REPORT_TOP_CHAR * width, style=COLOR_TASK)]
        + lines
        + [Text(REPORT_BOTTOM_CHAR * width, style=COLOR_TASK)]
    )


def report_text(entries: List[TaskOutcome]) -> str:
    return "\n".join(line.plain for line in format_report(entries))


## Tests


def test_report_single_topic():
    entries = [
        TaskOutcome("Build", "Release", True),
        TaskOutcome("Upload", "Release", False, exit_status=2),
        TaskOutcome("Notify", "Release", False),
    ]
    assert report_text(entries).splitlines() == [
        "=" * len("- [X] Upload (Failed: exit code 2)"),
        "- [✓] Build",
        "- [X] Upload (Failed: exit code 2)",
        "- [X] Notify (Failed: failed)",
        "-" * len("- [X] Upload (Failed: exit code 2)"),
    ]


def test_report_multiple_topics():
    entries = [TaskOutcome("One", "Setup", True), TaskOutcome("Two", "Deploy", True)]
    lines = report_text(entries).splitlines()
    assert lines[1:3] == ["- [✓] Setup: One", "- [✓] Deploy: Two"]
    assert lines[0] == "=" * len("- [✓] Deploy: Two")


def test_empty_report():
    assert report_text([]) == ""
