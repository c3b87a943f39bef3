from importlib import metadata
from pathlib import Path
import subprocess
import tomllib

from howzit.config.settings import APP_NAME


def get_pyproject_version() -> str:
    pyproject_path = Path(__file__).parent.parent / "pyproject.toml"
    pyproject_data = tomllib.loads(pyproject_path.read_text())
    return pyproject_data["tool"]["poetry"]["version"]


def get_git_hash() -> str:
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--short", "HEAD"],
            cwd=Path(__file__).parent,
            capture_output=True,
            text=True,
            check=True,
        )
        return result.stdout.strip()
    except (subprocess.CalledProcessError, FileNotFoundError):
        return "unknown"


def get_version() -> str:
    try:
        # For development: use pyproject version + git hash.
        version = get_pyproject_version()
        git_hash = get_git_hash()
        return f"{version}+{git_hash}"
    except (OSError, KeyError, tomllib.TOMLDecodeError):
        # Get the version from the installed package metadata.
        return metadata.version(APP_NAME)


if __name__ == "__main__":
    print(get_version())
