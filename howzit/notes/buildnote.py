"""
A build note: the markdown file of topics for a project, with its metadata header,
file includes, templates, and (optionally) notes from parent directories.
"""

import os
import re
import shutil
import subprocess
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from howzit.config.logger import get_logger
from howzit.config.settings import Matching, MultipleMatches
from howzit.engine.condition_eval import fuzzy_match
from howzit.errors import EmptyNoteFile, InvalidInput, NoteFileNotFound, TopicNotFound
from howzit.notes.topic import Topic

log = get_logger(__name__)

_note_name_re = re.compile(r"^(build|howzit)[^/]*\.(md|markdown|txt)$", re.IGNORECASE)
_metadata_line_re = re.compile(r"^(?P<key>\S[^:]*?):\s*(?P<value>.*)$")
_title_re = re.compile(r"^#\s+(?P<title>.+?)\s*$", re.MULTILINE)
_section_split_re = re.compile(r"^##+", re.MULTILINE)
_file_include_re = re.compile(r"@include\((?P<path>[^)]*?)\)")
_template_subtopics_re = re.compile(r"^(?P<name>.*?)\s*\[(?P<subtopics>.*?)\]\s*$")


def is_build_note(name: str) -> bool:
    return bool(_note_name_re.match(name))


def glob_note(directory: Path) -> Optional[Path]:
    """
    The first build note in a directory: a file named `build*` or `howzit*` with a
    `.md`, `.markdown`, or `.txt` extension.
    """
    try:
        names = sorted(os.listdir(directory))
    except OSError:
        return None
    for name in names:
        path = directory / name
        if is_build_note(name) and path.is_file():
            return path
    return None


def git_toplevel(directory: Path) -> Optional[Path]:
    if not shutil.which("git"):
        return None
    result = subprocess.run(
        ["git", "rev-parse", "--show-toplevel"],
        cwd=directory,
        capture_output=True,
        text=True,
    )
    top = result.stdout.strip()
    if result.returncode != 0 or not top:
        return None
    return Path(top)


def glob_upstream(directory: Path, exclude: Optional[Path] = None) -> List[Path]:
    """
    Build notes in parent directories, outermost first.
    """
    notes = []
    current = directory.resolve().parent
    while True:
        note = glob_note(current)
        if note and note.resolve() != (exclude.resolve() if exclude else None):
            notes.append(note)
        if current.parent == current:
            break
        current = current.parent
    return list(reversed(notes))


def find_note_file(directory: Optional[Path] = None, include_upstream: bool = False) -> Optional[Path]:
    """
    Locate the build note: the current directory, then the git top level, then
    (with `include_upstream`) the nearest parent directory that has one.
    """
    directory = directory or Path.cwd()
    note = glob_note(directory)
    if not note:
        top = git_toplevel(directory)
        if top:
            note = glob_note(top)
    if not note and include_upstream:
        upstream = glob_upstream(directory)
        if upstream:
            note = upstream[-1]
    return note.resolve() if note else None


def short_path(path: Path) -> str:
    home = str(Path.home())
    text = str(path)
    if text == home or text.startswith(home + os.sep):
        return "~" + text[len(home) :]
    return text


def normalize_metadata(metadata: Dict[str, str]) -> Dict[str, str]:
    normalized = {}
    for key, value in metadata.items():
        if re.match(r"^templ\w+$", key):
            key = "template"
        elif re.match(r"^req\w+$", key):
            key = "required"
        normalized[key] = value
    return normalized


def parse_metadata(content: str) -> Dict[str, str]:
    """
    Metadata is `key: value` lines before the first heading. Keys are lower-cased.
    Indented lines continue the previous value.
    """
    leader = _section_split_re.split(content, maxsplit=1)[0]
    leader = re.split(r"^#", leader, maxsplit=1, flags=re.MULTILINE)[0]
    metadata: Dict[str, str] = {}
    key = None
    for line in leader.splitlines():
        if not line.strip():
            continue
        match = _metadata_line_re.match(line)
        if match:
            key = match.group("key").strip().lower()
            metadata[key] = match.group("value").strip()
        elif key and line[0].isspace():
            metadata[key] = f"{metadata[key]}\n{line.strip()}".strip()
    return normalize_metadata(metadata)


def render_metadata(text: str, metadata: Dict[str, str]) -> str:
    """
    Replace `[%key]` and `[%key:default]` with metadata values, or the default.
    """
    for key, value in metadata.items():
        text = re.sub(rf"\[%{re.escape(key)}(:.*?)?\]", lambda _m, v=value: v, text)
    return re.sub(r"\[%(.*?):(.*?)\]", lambda m: m.group(2), text)


def note_title(content: str, path: Path) -> str:
    match = _title_re.search(content)
    return match.group("title") if match else path.stem


def split_sections(content: str) -> List[Tuple[str, str]]:
    """
    Split note text on `##` headings into `(title, body)` pairs.
    """
    sections = []
    for section in _section_split_re.split(content)[1:]:
        if not section.strip():
            continue
        title, _, body = section.partition("\n")
        sections.append((title.strip(), body.strip()))
    return sections


def include_files(content: str, base_dir: Path) -> str:
    """
    Replace `@include(path)` of an existing file with that file's topics, each
    title prefixed with the file's short path. Other includes are topic includes and
    are left alone.
    """

    def replace_include(match: re.Match) -> str:
        arg = match.group("path").strip()
        if not arg:
            return match.group(0)
        path = Path(arg).expanduser()
        if not path.is_absolute():
            path = base_dir / path
        if not path.is_file():
            return match.group(0)

        included = path.read_text()
        prefix = f"{short_path(path.parent)}/{path.name}:"
        sections = _section_split_re.split(included)[1:]
        if not sections:
            return included
        return "".join(f"##{_prefix_title(section, prefix)}" for section in sections)

    return _file_include_re.sub(replace_include, content)


def _prefix_title(section: str, prefix: str) -> str:
    return re.sub(r"^( *)(?=\S)", lambda m: f" {prefix}", section, count=1)


class BuildNote:
    """
    The topics of a project's build note. Topic lookups honor the `matching` mode.
    """

    def __init__(
        self,
        note_file: Optional[Path] = None,
        template_folder: Optional[Path] = None,
        matching: Matching = Matching.partial,
        include_upstream: bool = False,
        directory: Optional[Path] = None,
    ):
        self.template_folder = template_folder
        self.matching = matching

        found = note_file or find_note_file(directory, include_upstream=include_upstream)
        if not found:
            raise NoteFileNotFound(f"No build note found in {short_path(directory or Path.cwd())}")
        self.note_file = Path(found).expanduser().resolve()

        content = self.note_file.read_text()
        if not content.strip():
            raise EmptyNoteFile(f"No content found in build note ({short_path(self.note_file)})")

        self.metadata = parse_metadata(content)
        self.title = note_title(content, self.note_file)
        self.topics: List[Topic] = self.read_note(self.note_file)

        if include_upstream:
            for path in glob_upstream(self.note_file.parent, exclude=self.note_file):
                for topic in self.read_note(path, upstream=True):
                    if not self.has_bare_title(topic.bare_title):
                        self.topics.append(topic)

        if not self.topics:
            raise EmptyNoteFile(f"Note file found but no topics detected in {short_path(self.note_file)}")

    def read_note(self, path: Path, upstream: bool = False) -> List[Topic]:
        content = include_files(path.read_text(), path.parent)
        metadata = self.metadata if path == self.note_file else parse_metadata(content)

        topics = []
        for title, body in split_sections(content):
            if upstream:
                prefix = short_path(path.parent)
                title = f"{prefix}:{title}"
                body = f"_from {prefix}_\n\n{body}"
            topics.append(Topic(title, render_metadata(body, self.metadata), source_file=path))

        if not upstream:
            for topic in self.template_topics(metadata):
                if not any(t.bare_title.lower() == topic.bare_title.lower() for t in topics):
                    topics.append(topic)
        return topics

    def template_topics(self, metadata: Dict[str, str]) -> List[Topic]:
        """
        Topics from the templates named in `template:` metadata. A template may be
        limited to some of its topics with `name [Topic One|Other*]`.
        """
        if "template" not in metadata or not self.template_folder:
            return []

        topics: List[Topic] = []
        for template in re.split(r"\s*,\s*", metadata["template"].strip()):
            if not template:
                continue
            name, subtopics = template, None
            match = _template_subtopics_re.match(template)
            if match:
                name = match.group("name")
                subtopics = [s.strip() for s in match.group("subtopics").split("|") if s.strip()]

            file_name = name if name.lower().endswith(".md") else f"{name}.md"
            path = self.template_folder / file_name
            if not path.is_file():
                log.warning("Template not found: %s", short_path(path))
                continue

            template_content = path.read_text()
            self.check_requirements(name, parse_metadata(template_content))

            template_name = path.stem
            for title, body in split_sections(template_content):
                if subtopics and not any(_subtopic_matches(s, title) for s in subtopics):
                    continue
                topics.append(
                    Topic(
                        f"{template_name}:{title}",
                        render_metadata(body, self.metadata),
                        source_file=path,
                        parent=template_name,
                    )
                )
        return topics

    def check_requirements(self, template: str, template_metadata: Dict[str, str]) -> None:
        required = template_metadata.get("required", "")
        for key in re.split(r"\s*,\s*", required.strip()):
            if key and key.lower() not in self.metadata:
                raise InvalidInput(
                    f"Missing required metadata key from template '{template}': "
                    f"please define `{key.lower()}` in the build note"
                )

    def has_bare_title(self, bare_title: str) -> bool:
        return any(t.bare_title.lower() == bare_title.lower() for t in self.topics)

    def _title_matcher(self, term: str) -> Callable[[str], bool]:
        term_lower = term.lower()
        if self.matching == Matching.exact:
            return lambda title: title.lower() == term_lower
        if self.matching == Matching.beginswith:
            return lambda title: title.lower().startswith(term_lower)
        if self.matching == Matching.fuzzy:
            return lambda title: fuzzy_match(title.lower(), term_lower)
        return lambda title: term_lower in title.lower()

    def find_topic(self, term: Optional[str] = None) -> List[Topic]:
        """
        Topics whose title matches the term, exact title matches first. Prefixed
        titles (from includes, templates, and upstream notes) also match on the bare
        title.
        """
        if not term:
            return list(self.topics)
        term = term.strip()
        matches_title = self._title_matcher(term)
        matches = [t for t in self.topics if matches_title(t.title) or matches_title(t.bare_title)]
        exact = [
            t
            for t in matches
            if t.title.lower() == term.lower() or t.bare_title.lower() == term.lower()
        ]
        return exact + [t for t in matches if t not in exact]

    def select_topics(
        self,
        term: str,
        multiple_matches: MultipleMatches = MultipleMatches.first,
        choose: Optional[Callable[[List[str]], List[str]]] = None,
    ) -> List[Topic]:
        """
        Resolve a search term to the topics to show or run. Raises `TopicNotFound`
        if nothing matches.
        """
        matches = self.find_topic(term)
        if not matches:
            raise TopicNotFound(term)
        if len(matches) == 1 or multiple_matches == MultipleMatches.first:
            return matches[:1]
        if multiple_matches == MultipleMatches.best:
            return [min(matches, key=lambda t: len(t.title))]
        if multiple_matches == MultipleMatches.all or not choose:
            return matches
        chosen = choose([t.title for t in matches])
        return [t for t in matches if t.title in chosen]

    def grep(self, pattern: str) -> List[Topic]:
        return [t for t in self.topics if t.grep(pattern)]

    def list_topics(self) -> List[str]:
        return [t.title for t in self.topics]

    def list_completions(self) -> str:
        return "\n".join(self.list_topics())

    def runnable_topics(self, term: Optional[str] = None) -> List[Topic]:
        return [t for t in self.find_topic(term) if t.tasks]

    def list_runnable_completions(self) -> str:
        return "\n".join(t.title for t in self.runnable_topics())

    def list_runnable(self, term: Optional[str] = None) -> List[str]:
        """
        Runnable topics, each followed by a `* type: title` line per task.
        """
        output = []
        for topic in self.runnable_topics(term):
            output.append(f"- {topic.title}")
            output.extend(task.to_list() for task in topic.tasks)
        return output

    def __repr__(self) -> str:
        return f"BuildNote({short_path(self.note_file)!r}, topics={len(self.topics)})"


def _subtopic_matches(pattern: str, title: str) -> bool:
    rx = ".*?".join(re.escape(part) for part in pattern.split("*"))
    return re.match(rf"^(.*?:)?{rx}$", title, re.IGNORECASE) is not None


## Tests

_sample_note = """project: Demo App
template: base [Lint|Test*]
owner: ops

# Demo App Notes

Intro text that isn't a topic.

## Build [target:all]

Builds [%project] for [%owner:nobody] on [%branch:main].

@run(make $1) Make it

## Deploy

@include(Build [release])
@run(echo deployed) Announce

## Release notes

Nothing runnable.
"""

_template_note = """required: project

## Lint

@run(ruff check .)

## Test everything

@run(pytest)

## Build

Template build, shadowed by the note's own.
"""


def _write_note(tmp_path: Path) -> Path:
    (tmp_path / "templates").mkdir()
    (tmp_path / "templates" / "base.md").write_text(_template_note)
    note = tmp_path / "buildnotes.md"
    note.write_text(_sample_note)
    return note


def test_metadata_and_title(tmp_path):
    note = BuildNote(_write_note(tmp_path), template_folder=tmp_path / "templates")
    assert note.metadata == {"project": "Demo App", "template": "base [Lint|Test*]", "owner": "ops"}
    assert note.title == "Demo App Notes"
    build = note.find_topic("Build")[0]
    assert build.title == "Build"
    assert "Builds Demo App for ops on main." in build.content
    assert build.source_file == tmp_path / "buildnotes.md"


def test_templates(tmp_path):
    note = BuildNote(_write_note(tmp_path), template_folder=tmp_path / "templates")
    assert note.list_topics() == ["Build", "Deploy", "Release notes", "base:Lint", "base:Test everything"]
    lint = note.find_topic("lint")[0]
    assert lint.parent == "base"
    assert lint.bare_title == "Lint"


def test_missing_required_metadata(tmp_path):
    note_file = _write_note(tmp_path)
    note_file.write_text(_sample_note.replace("project: Demo App\n", ""))
    try:
        BuildNote(note_file, template_folder=tmp_path / "templates")
        assert False, "Should have raised InvalidInput"
    except InvalidInput as e:
        assert "project" in str(e)


def test_find_topic_modes(tmp_path):
    note_file = _write_note(tmp_path)
    folder = tmp_path / "templates"

    partial = BuildNote(note_file, template_folder=folder)
    assert [t.title for t in partial.find_topic("lea")] == ["Release notes"]
    assert [t.title for t in partial.find_topic("build")] == ["Build"]
    assert len(partial.find_topic()) == 5

    exact = BuildNote(note_file, template_folder=folder, matching=Matching.exact)
    assert [t.title for t in exact.find_topic("lint")] == ["base:Lint"]
    assert exact.find_topic("Lin") == []

    begins = BuildNote(note_file, template_folder=folder, matching=Matching.beginswith)
    assert [t.title for t in begins.find_topic("re")] == ["Release notes"]

    fuzzy = BuildNote(note_file, template_folder=folder, matching=Matching.fuzzy)
    assert [t.title for t in fuzzy.find_topic("rlnts")] == ["Release notes"]


def test_select_topics(tmp_path):
    note = BuildNote(_write_note(tmp_path), template_folder=tmp_path / "templates")
    assert [t.title for t in note.find_topic("e")] == [
        "Deploy",
        "Release notes",
        "base:Lint",
        "base:Test everything",
    ]
    assert [t.title for t in note.select_topics("e", MultipleMatches.first)] == ["Deploy"]
    assert note.select_topics("not", MultipleMatches.best)[0].title == "Release notes"
    assert note.select_topics("t", MultipleMatches.best)[0].title == "base:Lint"
    assert len(note.select_topics("e", MultipleMatches.all)) == 4
    chosen = note.select_topics("e", MultipleMatches.choose, choose=lambda titles: ["Release notes"])
    assert [t.title for t in chosen] == ["Release notes"]
    assert [t.title for t in note.select_topics("deploy", MultipleMatches.choose)] == ["Deploy"]
    try:
        note.select_topics("zzz")
        assert False, "Should have raised TopicNotFound"
    except TopicNotFound:
        pass


def test_listings_and_grep(tmp_path):
    note = BuildNote(_write_note(tmp_path), template_folder=tmp_path / "templates")
    assert note.list_runnable() == [
        "- Build",
        "    * run: Make it",
        "- Deploy",
        "    * include: Build",
        "    * run: Announce",
        "- base:Lint",
        "    * run: ruff check .",
        "- base:Test everything",
        "    * run: pytest",
    ]
    assert note.list_runnable_completions().splitlines()[0] == "Build"
    assert [t.title for t in note.grep("deployed")] == ["Deploy"]


def test_file_include(tmp_path):
    shared = tmp_path / "shared.md"
    shared.write_text("# Shared\n\n## Setup\n\n@run(echo setup)\n\n## Teardown\n\nBye.\n")
    note_file = tmp_path / "howzit.md"
    note_file.write_text(f"## Main\n\nMain topic.\n\n@include({shared})\n")

    note = BuildNote(note_file)
    prefix = f"{short_path(tmp_path)}/shared.md:"
    assert note.list_topics() == ["Main", f"{prefix}Setup", f"{prefix}Teardown"]
    assert note.find_topic("setup")[0].tasks[0].action == "echo setup"


def test_note_discovery(tmp_path):
    project = tmp_path / "project"
    sub = project / "sub"
    sub.mkdir(parents=True)
    (project / "README.md").write_text("# Readme\n")
    (project / "buildnotes.md").write_text("## Parent topic\n\n@run(true)\n\n## Shared\n\nParent.\n")
    (sub / "Howzit.markdown").write_text("## Child topic\n\nChild.\n\n## Shared\n\nChild.\n")

    assert glob_note(project) == project / "buildnotes.md"
    assert find_note_file(sub) == (sub / "Howzit.markdown").resolve()
    assert is_build_note("build.txt") and not is_build_note("notes.md")

    note = BuildNote(directory=sub, include_upstream=True)
    prefix = short_path(project.resolve())
    assert f"{prefix}:Parent topic" in note.list_topics()
    assert [t.title for t in note.find_topic("shared")] == ["Shared"]
    parent_topic = note.find_topic("parent topic")[0]
    assert parent_topic.source_file == (project / "buildnotes.md").resolve()
    assert parent_topic.content.startswith(f"_from {prefix}_")


def test_missing_and_empty_notes(tmp_path):
    empty_dir = tmp_path / "empty"
    empty_dir.mkdir()
    try:
        BuildNote(directory=empty_dir)
        assert False, "Should have raised NoteFileNotFound"
    except NoteFileNotFound:
        pass

    blank = tmp_path / "buildnotes.md"
    blank.write_text("   \n")
    try:
        BuildNote(blank)
        assert False, "Should have raised EmptyNoteFile"
    except EmptyNoteFile:
        pass


def test_render_metadata():
    meta = {"name": "x\\1"}
    assert render_metadata("[%name] [%name:dflt] [%other:fallback] [%missing]", meta) == (
        "x\\1 x\\1 fallback [%missing]"
    )
