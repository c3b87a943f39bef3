"""
The file-based side channel from a running task back to howzit.

Before a task runs, a fresh temp file is created and its path is passed to the
subprocess in `HOWZIT_COMM_FILE`. The task may append lines of the form

    LOG:<info|warn|error|debug>:<message>
    VAR:<NAME>=<value>

and after it exits the file is read, applied, and deleted.
"""

import os
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List

from rich.markup import escape

from howzit.config.logger import get_logger
from howzit.config.settings import ENV_COMM_FILE, LogLevel
from howzit.engine.var_context import VariableStore

log = get_logger(__name__)

_log_line_re = re.compile(r"^LOG:(info|warn|error|debug):(.+)$", re.IGNORECASE)
_var_line_re = re.compile(r"^VAR:([A-Za-z0-9_]+)=(.*)$", re.IGNORECASE)


@dataclass(frozen=True)
class CommLog:
    level: str
    message: str

    @property
    def log_level(self) -> LogLevel:
        return LogLevel.parse(self.level)


@dataclass
class CommResult:
    logs: List[CommLog] = field(default_factory=list)
    vars: Dict[str, str] = field(default_factory=dict)


def create_comm_file() -> Path:
    """
    Create an empty communication file for one task run.
    """
    fd, path = tempfile.mkstemp(prefix="howzit_comm_")
    os.close(fd)
    return Path(path)


def comm_env(comm_file: Path) -> Dict[str, str]:
    """
    Environment for a task subprocess. The parent environment is not modified.
    """
    env = dict(os.environ)
    env[ENV_COMM_FILE] = str(comm_file)
    return env


def parse_comm_text(text: str) -> CommResult:
    result = CommResult()
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        if match := _log_line_re.match(line):
            result.logs.append(CommLog(match.group(1).lower(), match.group(2)))
        elif match := _var_line_re.match(line):
            result.vars[match.group(1)] = match.group(2)
    return result


def process(comm_file: Path) -> CommResult:
    """
    Read and delete the communication file. Missing file means nothing was sent.
    """
    if not comm_file.exists():
        return CommResult()
    try:
        return parse_comm_text(comm_file.read_text(errors="replace"))
    except OSError as e:
        log.warning("Error reading communication file: %s", e)
        return CommResult()
    finally:
        comm_file.unlink(missing_ok=True)


def apply(result: CommResult, variables: VariableStore) -> None:
    """
    Route received log lines to the console and merge received variables.
    """
    for entry in result.logs:
        log.log(entry.log_level, escape(entry.message))
    if result.vars:
        log.debug("Variables from task: %s", result.vars)
        variables.update(result.vars)


def process_and_apply(comm_file: Path, variables: VariableStore) -> CommResult:
    result = process(comm_file)
    apply(result, variables)
    return result


## Tests


def test_process_round_trip():
    comm_file = create_comm_file()
    comm_file.write_text("LOG:info:hi\nVAR:X=1\n")

    result = process(comm_file)
    assert result.logs == [CommLog("info", "hi")]
    assert result.vars == {"X": "1"}
    assert not comm_file.exists()


def test_parse_comm_text():
    text = "\n".join(
        [
            "LOG:WARN:Careful: disk is 90% full",
            "log:debug:lower case prefix",
            "VAR:TEST_VAR=first",
            "VAR:test_var=second",
            "VAR:TEST_VAR=last wins",
            "VAR:EMPTY=",
            "VAR:BAD-NAME=x",
            "LOG:verbose:not a level",
            "random output",
            "",
        ]
    )
    result = parse_comm_text(text)
    assert result.logs == [
        CommLog("warn", "Careful: disk is 90% full"),
        CommLog("debug", "lower case prefix"),
    ]
    assert result.vars == {"TEST_VAR": "last wins", "test_var": "second", "EMPTY": ""}
    assert result.logs[0].log_level == LogLevel.warning


def test_missing_file_and_apply(tmp_path):
    assert process(tmp_path / "nope") == CommResult()

    comm_file = tmp_path / "comm"
    comm_file.write_text("VAR:STEP=2\nLOG:info:step done\n")
    store = VariableStore({"STEP": "1"})
    process_and_apply(comm_file, store)
    assert store.get("STEP") == "2"
    assert store.version == 1
    assert not comm_file.exists()


def test_comm_env_leaves_environment_alone(tmp_path):
    env = comm_env(tmp_path / "comm")
    assert env[ENV_COMM_FILE] == str(tmp_path / "comm")
    assert os.environ.get(ENV_COMM_FILE) != str(tmp_path / "comm")
