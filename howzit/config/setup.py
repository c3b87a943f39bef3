from cachetools import cached
from dotenv import find_dotenv, load_dotenv

from howzit.config.logger import logging_setup


@cached(cache={})
def setup():
    """
    One-time setup of environment and logging. Idempotent.
    """
    env_setup()

    logging_setup()


def env_setup() -> str | None:
    """
    Load a `.env` file from the current directory or its parents, if there is one.
    Values already in the environment win.
    """
    dotenv_path = find_dotenv(usecwd=True)
    if dotenv_path:
        load_dotenv(dotenv_path)
    return dotenv_path
