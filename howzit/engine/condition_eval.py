"""
Evaluation of the small condition language used by `@if`, `@unless`, and `@elsif`.

A condition is one of:

- a special predicate: `file exists PATH`, `dir exists PATH`, `topic exists NAME`,
  `file contents PATH OP VALUE`, `git dirty`, `git clean`, `cwd`/`working directory`
- a regex match: `LHS =~ /PATTERN/` (case-insensitive)
- a comparison: `LHS OP RHS` with OP one of `== != > >= < <=`
- a string predicate: `LHS *= RHS` (contains), `^=` (starts with), `$=` (ends with),
  `**=` (fuzzy, characters in order)
- a bare operand, true if it resolves to a non-empty value

Any condition may be negated with a leading `not ` or `!`. Evaluation never raises;
anything malformed is simply false.
"""

import os
import re
import shutil
import subprocess
from pathlib import Path
from typing import Any, Dict, Optional

import regex

from howzit.config.logger import get_logger
from howzit.engine.var_context import RunContext, VariableStore

log = get_logger(__name__)

Number = int | float

_negation_re = re.compile(r"^(not\s+|!(?!=))", re.IGNORECASE)
_file_contents_re = re.compile(
    r"^file\s+contents\s+(.+?)\s+(\*\*=|\*=|\^=|\$=|==|!=|=~)\s*(.+)$", re.IGNORECASE
)
_exists_re = re.compile(r"^(file|dir|topic)\s+exists\s+(.+)$", re.IGNORECASE)
_git_re = re.compile(r"^git\s+(dirty|clean)$", re.IGNORECASE)
_cwd_re = re.compile(r"^(cwd|working\s+directory)$", re.IGNORECASE)
_regex_match_re = re.compile(r"^(.+?)\s*=~\s*/(.+)/$")
_comparison_re = re.compile(r"^(.+?)\s*(==|!=|>=|<=|>|<)\s*(.+)$")
_string_op_re = re.compile(r"^(.+?)\s*(\*\*=|\*=|\^=|\$=)\s*(.+)$")

_quoted_re = re.compile(r"^([\"'])(.*)\1$", re.DOTALL)
_braced_re = re.compile(r"^\$\{([^}:]+)(?::([^}]*))?\}$")
_positional_re = re.compile(r"^\$(\d+)$")
_int_re = re.compile(r"^-?\d+$")
_float_re = re.compile(r"^-?\d+\.\d+$")


def numeric_value(value: Optional[str]) -> Optional[Number]:
    """
    Parse an integer or decimal, with optional leading `-`. Anything else is None.
    """
    if value is None:
        return None
    text = str(value).strip()
    if _int_re.match(text):
        return int(text)
    if _float_re.match(text):
        return float(text)
    return None


def fuzzy_match(text: str, search: str) -> bool:
    """
    True if all characters of `search` appear in `text` in order.
    """
    pattern = ".*?".join(re.escape(c) for c in search)
    return re.search(pattern, text, re.DOTALL) is not None


def git_dirty() -> bool:
    """
    True if the working tree has unstaged changes. No git, or not a repository,
    counts as clean.
    """
    if not shutil.which("git"):
        return False
    try:
        result = subprocess.run(
            ["git", "diff", "--quiet"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
    except OSError as e:
        log.debug("Could not run git: %s", e)
        return False
    return result.returncode == 1


class ConditionEvaluator:
    """
    Evaluates conditions against a run context: positional arguments, named
    variables, note metadata, and the environment.
    """

    def __init__(self, context: Optional[RunContext] = None):
        self.context = context or RunContext()

    @property
    def variables(self) -> VariableStore:
        return self.context.variables

    def evaluate(self, condition: str) -> bool:
        condition = condition.strip()

        negated = False
        match = _negation_re.match(condition)
        if match:
            negated = True
            condition = condition[match.end() :].strip()

        result = self._evaluate_condition(condition)
        log.debug("Condition %r evaluated to %s", condition, result != negated)
        return not result if negated else result

    def resolve(self, expr: str) -> Optional[str]:
        """
        Resolve an operand to a value: quoted literal, positional argument,
        named variable, metadata, environment variable. None if undefined.
        """
        expr = expr.strip()

        match = _quoted_re.match(expr)
        if match:
            return match.group(2)

        default = None
        match = _braced_re.match(expr)
        if match:
            expr, default = match.group(1).strip(), match.group(2)

        match = _positional_re.match(expr)
        if match:
            idx = int(match.group(1)) - 1
            arguments = self.context.arguments
            if 0 <= idx < len(arguments):
                return arguments[idx]

        if expr in self.variables:
            return self.variables[expr]

        metadata = self.context.metadata
        if expr in metadata:
            return metadata[expr]
        if expr.lower() in metadata:
            return metadata[expr.lower()]

        if expr in os.environ:
            return os.environ[expr]
        if expr.upper() in os.environ:
            return os.environ[expr.upper()]

        if _cwd_re.match(expr):
            return os.getcwd()

        return default

    def _resolve_or_literal(self, expr: str) -> str:
        value = self.resolve(expr)
        return expr.strip() if value is None else value

    def _evaluate_condition(self, condition: str) -> bool:
        if match := _file_contents_re.match(condition):
            return self._file_contents(*match.groups())
        if match := _exists_re.match(condition):
            return self._exists(match.group(1).lower(), match.group(2))
        if match := _git_re.match(condition):
            dirty = git_dirty()
            return dirty if match.group(1).lower() == "dirty" else not dirty
        if _cwd_re.match(condition):
            return True

        if match := _regex_match_re.match(condition):
            return self._regex_match(match.group(1), match.group(2))

        if match := _comparison_re.match(condition):
            return self._compare(*match.groups())

        if match := _string_op_re.match(condition):
            left, op, right = match.groups()
            left_val = self.resolve(left)
            right_val = self._resolve_or_literal(right)
            if left_val is None:
                return False
            return _string_op(left_val, op, right_val)

        value = self.resolve(condition)
        return value is not None and value != ""

    def _exists(self, kind: str, target: str) -> bool:
        if kind == "topic":
            name = self._resolve_or_literal(target)
            find_topic = self.context.find_topic
            return bool(find_topic and find_topic(name))

        path = Path(self._resolve_or_literal(target)).expanduser()
        if kind == "file":
            return path.is_file()
        return path.is_dir()

    def _regex_match(self, left: str, pattern: str) -> bool:
        left_val = self.resolve(left)
        if left_val is None:
            return False
        try:
            return regex.search(pattern.strip(), left_val, flags=regex.IGNORECASE) is not None
        except regex.error as e:
            log.debug("Invalid regex in condition: /%s/: %s", pattern, e)
            return False

    def _compare(self, left: str, op: str, right: str) -> bool:
        left_val = self.resolve(left)
        if left_val is None and numeric_value(left) is not None:
            left_val = left.strip()
        right_val = self.resolve(right)
        if right_val is None and numeric_value(right) is not None:
            right_val = right.strip()

        left_num = numeric_value(left_val)
        right_num = numeric_value(right_val)
        if left_num is not None and right_num is not None:
            return _numeric_op(left_num, op, right_num)

        equal = (left_val is None) == (right_val is None) and (
            left_val is None or left_val == right_val
        )
        if op == "==":
            return equal
        if op == "!=":
            return not equal
        # Ordering is only defined for numbers.
        return False

    def _file_contents(self, path_expr: str, op: str, value_expr: str) -> bool:
        path = Path(self._resolve_or_literal(path_expr)).expanduser()
        search = self._resolve_or_literal(value_expr)
        if not path.is_file():
            return False
        try:
            contents = path.read_text().strip()
        except (OSError, UnicodeDecodeError) as e:
            log.debug("Could not read %s: %s", path, e)
            return False

        if op == "==":
            return contents == search
        if op == "!=":
            return contents != search
        if op == "=~":
            pattern = search
            if len(pattern) >= 2 and pattern.startswith("/") and pattern.endswith("/"):
                pattern = pattern[1:-1]
            try:
                return regex.search(pattern, contents, flags=regex.IGNORECASE) is not None
            except regex.error:
                return False
        return _string_op(contents, op, search)


def _numeric_op(left: Number, op: str, right: Number) -> bool:
    if op == "==":
        return left == right
    if op == "!=":
        return left != right
    if op == ">":
        return left > right
    if op == ">=":
        return left >= right
    if op == "<":
        return left < right
    if op == "<=":
        return left <= right
    return False


def _string_op(left: str, op: str, right: str) -> bool:
    if op == "*=":
        return right in left
    if op == "^=":
        return left.startswith(right)
    if op == "$=":
        return left.endswith(right)
    if op == "**=":
        return fuzzy_match(left, right)
    return False


def evaluate(condition: str, context: RunContext | Dict[str, Any] | None = None) -> bool:
    """
    Evaluate a condition. `context` is a RunContext, or a plain dict with an
    optional `metadata` mapping.
    """
    if not isinstance(context, RunContext):
        metadata = (context or {}).get("metadata") or {}
        context = RunContext(metadata=dict(metadata))
    return ConditionEvaluator(context).evaluate(condition)


## Tests


def _ctx(**variables) -> RunContext:
    return RunContext(variables=VariableStore(variables))


def test_numeric_and_string_comparisons():
    assert evaluate("5 == 5", {})
    assert evaluate("5 != 6", {})
    assert evaluate("10 > 9", {})
    assert evaluate("-1 < 0.5", {})
    assert evaluate("2.0 == 2", {})
    assert evaluate('"abc" == "abc"', {})
    assert not evaluate('"abc" > "abd"', {})
    assert not evaluate('"abc" <= "abd"', {})
    assert evaluate('"abc" != "abd"', {})
    assert not evaluate("1.2.3 > 1", {})


def test_variables_in_comparisons():
    ctx = _ctx(STEP="2", NAME="release")
    assert evaluate('${STEP} == "2"', ctx)
    assert evaluate("STEP == 2", ctx)
    assert evaluate("STEP >= 2", ctx)
    assert not evaluate("STEP > 2", ctx)
    assert evaluate('NAME == "release"', ctx)
    assert evaluate("MISSING == MISSING_TOO", ctx)
    assert not evaluate('MISSING == "x"', ctx)
    assert evaluate('MISSING != "x"', ctx)


def test_existence_checks():
    ctx = _ctx(defined_var="yes", empty_var="")
    assert not evaluate("undefined_var_for_test", ctx)
    assert evaluate("defined_var", ctx)
    assert not evaluate("empty_var", ctx)
    assert evaluate("not undefined_var_for_test", ctx)
    assert evaluate("!undefined_var_for_test", ctx)
    assert not evaluate("!defined_var", ctx)


def test_string_predicates():
    ctx = _ctx(BRANCH="feature/login-form")
    assert evaluate("BRANCH *= login", ctx)
    assert evaluate('BRANCH ^= "feature/"', ctx)
    assert evaluate("BRANCH $= form", ctx)
    assert evaluate("BRANCH **= ftlgn", ctx)
    assert not evaluate("BRANCH ^= main", ctx)
    assert not evaluate("NOPE_UNDEFINED *= x", ctx)


def test_regex_match():
    ctx = _ctx(VERSION="v2.10.1")
    assert evaluate(r"VERSION =~ /^V\d+\./", ctx)
    assert not evaluate("VERSION =~ /beta/", ctx)
    assert not evaluate("UNDEFINED_THING =~ /.*/", ctx)
    assert not evaluate("VERSION =~ /([/", ctx)


def test_resolution_order(monkeypatch):
    monkeypatch.setenv("HOWZIT_TEST_ENV", "from_env")
    monkeypatch.setenv("LOWER_TO_UPPER", "upper")
    ctx = RunContext(
        arguments=["first"],
        variables=VariableStore({"shared": "named"}),
        metadata={"shared": "meta", "project": "demo"},
    )
    evaluator = ConditionEvaluator(ctx)
    assert evaluator.resolve("$1") == "first"
    assert evaluator.resolve("$2") is None
    assert evaluator.resolve("shared") == "named"
    assert evaluator.resolve("PROJECT") == "demo"
    assert evaluator.resolve("HOWZIT_TEST_ENV") == "from_env"
    assert evaluator.resolve("lower_to_upper") == "upper"
    assert evaluator.resolve("'quoted'") == "quoted"
    assert evaluator.resolve("${shared}") == "named"
    assert evaluator.resolve("${unset_thing:dflt}") == "dflt"
    assert evaluator.resolve("nothing_here_at_all") is None


def test_missing_positional_falls_through():
    ctx = RunContext(
        arguments=["only"],
        variables=VariableStore({"$2": "named"}),
        metadata={"$3": "meta"},
    )
    evaluator = ConditionEvaluator(ctx)
    assert evaluator.resolve("$2") == "named"
    assert evaluator.resolve("$3") == "meta"
    assert evaluator.resolve("${4:fallback}") == "fallback"
    assert evaluator.resolve("$4") is None
    assert evaluate('$3 == "meta"', ctx)


def test_metadata_from_plain_dict():
    assert evaluate('project == "demo"', {"metadata": {"project": "demo"}})
    assert evaluate("project", {"metadata": {"project": "demo"}})


def test_special_predicates(tmp_path, monkeypatch):
    (tmp_path / "notes.txt").write_text("hello world\n")
    (tmp_path / "subdir").mkdir()
    monkeypatch.chdir(tmp_path)
    ctx = _ctx(TARGET=str(tmp_path / "notes.txt"))

    assert evaluate("file exists notes.txt", ctx)
    assert not evaluate("file exists subdir", ctx)
    assert evaluate("dir exists subdir", ctx)
    assert not evaluate("dir exists notes.txt", ctx)
    assert evaluate("file exists TARGET", ctx)
    assert evaluate("cwd", ctx)
    assert evaluate("working directory", ctx)
    assert evaluate(f"cwd $= {tmp_path.name}", ctx)

    assert evaluate("file contents notes.txt ^= hello", ctx)
    assert evaluate("file contents notes.txt == 'hello world'", ctx)
    assert evaluate("file contents notes.txt =~ /WORLD$/", ctx)
    assert evaluate("file contents notes.txt **= hwd", ctx)
    assert not evaluate("file contents missing.txt *= hello", ctx)


def test_topic_exists():
    ctx = RunContext(find_topic=lambda name: ["match"] if name == "Deploy" else [])
    assert evaluate("topic exists Deploy", ctx)
    assert not evaluate("topic exists Other", ctx)
    assert not evaluate("topic exists Deploy", {})


def test_git_unavailable_is_clean(monkeypatch):
    monkeypatch.setattr(shutil, "which", lambda name: None)
    assert not evaluate("git dirty", {})
    assert evaluate("git clean", {})


def test_numeric_value():
    assert numeric_value("42") == 42
    assert numeric_value("-3.5") == -3.5
    assert numeric_value(" 7 ") == 7
    assert numeric_value("1e5") is None
    assert numeric_value("0x10") is None
    assert numeric_value("") is None
    assert numeric_value(None) is None
