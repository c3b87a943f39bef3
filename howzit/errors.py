"""
Unified hierarchy of error types. These inherit from standard errors like
ValueError and FileNotFoundError but are more fine-grained.
"""

from typing import Tuple, Type


class HowzitRuntimeError(ValueError):
    """Base class for howzit runtime errors."""

    pass


class UnexpectedError(HowzitRuntimeError):
    """For unexpected errors or runtime check failures."""

    pass


class SelfExplanatoryError(HowzitRuntimeError):
    """Common errors that arise from 'normal' problems that are largely self-explanatory,
    i.e., no stack trace should be necessary when reporting to the user."""

    pass


class InvalidInput(SelfExplanatoryError):
    """Raised when the wrong kind of input is given on the command line or in a note."""

    pass


class InvalidOption(InvalidInput):
    """Raised when a command-line option is invalid."""

    def __init__(self, option_name: str):
        super().__init__(f"Invalid option: {repr(option_name)}")


class TopicNotFound(InvalidInput):
    """Raised when no topic matches a search or an `@include` target."""

    def __init__(self, topic_name: str):
        super().__init__(f"Topic not found: {topic_name}")
        self.topic_name = topic_name


class IncludeCycle(InvalidInput):
    """Raised when an `@include` would include a topic that is already running."""

    def __init__(self, chain: Tuple[str, ...]):
        super().__init__(f"Include cycle: {' -> '.join(chain)}")
        self.chain = chain


class NoteFileNotFound(InvalidInput, FileNotFoundError):
    """Raised when no build note file can be located."""

    pass


class EmptyNoteFile(InvalidInput):
    """Raised when a build note file has no content or no topics."""

    pass


class PrerequisitesNotMet(SelfExplanatoryError):
    """Raised when the user declines to confirm a topic's prerequisites."""

    pass


class SetupError(SelfExplanatoryError):
    """Raised when a tool is not installed or something in the environment
    isn't set up right."""

    pass


def _nonfatal_exceptions() -> Tuple[Type[Exception], ...]:
    return (
        SelfExplanatoryError,
        FileNotFoundError,
        IOError,
    )


NONFATAL_EXCEPTIONS = _nonfatal_exceptions()
"""Exceptions that are not fatal and usually don't merit a full stack trace."""


def is_fatal(exception: Exception) -> bool:
    for e in NONFATAL_EXCEPTIONS:
        if isinstance(exception, e):
            return False
    return True


## Tests


def test_is_fatal():
    assert not is_fatal(TopicNotFound("Deploy"))
    assert not is_fatal(PrerequisitesNotMet("declined"))
    assert not is_fatal(NoteFileNotFound("no note"))
    assert is_fatal(UnexpectedError("boom"))
    assert is_fatal(KeyError("x"))


def test_topic_not_found_message():
    e = TopicNotFound("Release Build")
    assert str(e) == "Topic not found: Release Build"
    assert e.topic_name == "Release Build"
    assert isinstance(e, ValueError)


def test_include_cycle_message():
    e = IncludeCycle(("Build", "Deploy", "Build"))
    assert str(e) == "Include cycle: Build -> Deploy -> Build"
    assert not is_fatal(e)
