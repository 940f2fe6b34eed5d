"""Environment variable loading for Threadsense entrypoints.

Loads a ``.env`` file with python-dotenv before configuration is read.
Call ``load_env()`` at the top of an entrypoint or in ``tests/conftest.py``.

The file is searched in the current working directory first, then in the
project root (the first parent holding ``pyproject.toml`` or ``.git``).
Variables already set in the shell take precedence over ``.env`` values.
"""

import logging
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv as _load_dotenv

logger = logging.getLogger(__name__)

_env_loaded = False


def find_project_root(start_path: Optional[Path] = None) -> Optional[Path]:
    """Return the closest parent holding pyproject.toml or .git, if any."""
    current = start_path or Path.cwd()
    for parent in [current, *current.parents]:
        if (parent / "pyproject.toml").exists() or (parent / ".git").exists():
            return parent
    return None


def find_env_file(filename: str = ".env") -> Optional[Path]:
    cwd_env = Path.cwd() / filename
    if cwd_env.exists():
        return cwd_env

    project_root = find_project_root()
    if project_root:
        root_env = project_root / filename
        if root_env.exists():
            return root_env

    return None


def load_env(env_file: Optional[str] = None, override: bool = False, verbose: bool = False) -> bool:
    """Load environment variables from a .env file.

    Args:
        env_file: Explicit path to a .env file. Searches standard locations if None.
        override: If True, .env values replace variables already in the environment.
        verbose: If True, log which file is being loaded.

    Returns:
        True if a .env file was found and loaded, False otherwise.
    """
    global _env_loaded

    dotenv_path = Path(env_file) if env_file else find_env_file()
    if dotenv_path is None or not dotenv_path.exists():
        if verbose:
            logger.info("No .env file found, using environment variables only")
        return False

    if verbose:
        logger.info("Loading environment file", extra={"path": str(dotenv_path)})

    _load_dotenv(dotenv_path=dotenv_path, override=override)
    _env_loaded = True
    return True


def is_loaded() -> bool:
    return _env_loaded
