import sys
from typing import List

from InquirerPy.prompts.checkbox import CheckboxPrompt
from InquirerPy.prompts.confirm import ConfirmPrompt
from InquirerPy.utils import InquirerPyStyle

from howzit.config.logger import get_logger
from howzit.config.text_styles import PROMPT_FORM
from howzit.engine.var_context import answer_default, ConfirmFunc

log = get_logger(__name__)

custom_style = InquirerPyStyle(
    {
        "questionmark": "ansibrightgreen",
        "answermark": "ansibrightblack",
        "answer": "ansicyan",
        "input": "ansicyan",
        "question": "ansibrightwhite bold",
        "answered_question": "ansibrightblack",
        "instruction": "ansibrightblack",
        "long_instruction": "ansibrightblack",
    }
)


def yes_no_hint(default: bool) -> str:
    return "[Y/n]" if default else "[y/N]"


def prompt_yes_no(question: str, default: bool = True) -> bool:
    """
    Ask a yes/no question. Without a terminal, the default is the answer.
    Ctrl-C exits with status 1.
    """
    if not sys.stdin.isatty():
        log.debug("Not a terminal, answering %s: %s", yes_no_hint(default), question)
        return default
    try:
        return bool(
            ConfirmPrompt(
                message=question.strip(),
                default=default,
                qmark=PROMPT_FORM,
                amark=PROMPT_FORM,
                style=custom_style,
            ).execute()
        )
    except EOFError:
        return default
    except KeyboardInterrupt:
        log.message("Cancelled")
        sys.exit(1)


def confirm_func(ask_defaults: bool) -> ConfirmFunc:
    """
    The confirmation callback for a run: interactive, or always the default answer.
    """
    return answer_default if ask_defaults else prompt_yes_no


def prompt_choose(titles: List[str], message: str = "Select topics") -> List[str]:
    """
    Pick one or more of several matching topics. Without a terminal, the first is
    chosen.
    """
    if not titles:
        return []
    if not sys.stdin.isatty():
        log.debug("Not a terminal, choosing first match: %s", titles[0])
        return titles[:1]
    try:
        chosen = CheckboxPrompt(
            message=message,
            choices=titles,
            qmark=PROMPT_FORM,
            amark=PROMPT_FORM,
            instruction="(space to mark, enter to select)",
            style=custom_style,
        ).execute()
    except EOFError:
        return titles[:1]
    except KeyboardInterrupt:
        log.message("Cancelled")
        sys.exit(1)
    return list(chosen or [])


## Tests


def test_non_tty_uses_default(monkeypatch):
    class FakeStdin:
        def isatty(self):
            return False

    monkeypatch.setattr(sys, "stdin", FakeStdin())
    assert prompt_yes_no("Continue?", default=True)
    assert not prompt_yes_no("Continue?", default=False)
    assert confirm_func(True)("Continue?", False) is False
    assert confirm_func(False) is prompt_yes_no
    assert prompt_choose(["Deploy", "Deploy docs"]) == ["Deploy"]
    assert prompt_choose([]) == []
