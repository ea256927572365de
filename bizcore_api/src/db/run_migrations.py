"""
Programmatic Alembic migration runner.

Runs migrations without an alembic.ini by pointing the script location at this
package's migrations directory. The API calls main(["upgrade", "head"]) at startup.

Usage examples:
    python -m src.db.run_migrations upgrade head
    python -m src.db.run_migrations downgrade -1
    python -m src.db.run_migrations current
"""

import logging
import sys
from pathlib import Path
from typing import Callable, Dict, List

from alembic import command
from alembic.config import Config

from src.db.config import get_settings

logger = logging.getLogger(__name__)

# Commands with the default arguments used when none are given
_COMMANDS: Dict[str, tuple[Callable[..., None], List[str]]] = {
    "upgrade": (command.upgrade, ["head"]),
    "downgrade": (command.downgrade, ["-1"]),
    "history": (command.history, []),
    "current": (command.current, []),
    "heads": (command.heads, []),
}


# PUBLIC_INTERFACE
def build_config() -> Config:
    """Return an Alembic Config bound to this package's migrations and the configured database."""
    cfg = Config()
    cfg.set_main_option("script_location", str(Path(__file__).resolve().parent / "migrations"))
    # Offline mode reads this URL; env.py builds its own async engine when online.
    cfg.set_main_option("sqlalchemy.url", get_settings().sync_database_url)
    return cfg


# PUBLIC_INTERFACE
def main(argv: List[str] | None = None) -> None:
    """
    Run an Alembic command with programmatic configuration.

    Parameters:
        argv: command and its arguments, e.g. ["upgrade", "head"]. Defaults to sys.argv[1:].
    Raises:
        ValueError: no command, or a command this runner does not support.
    """
    args = list(sys.argv[1:] if argv is None else argv)
    if not args:
        raise ValueError("No Alembic arguments provided. Example: upgrade head")

    cmd, other = args[0], args[1:]
    if cmd not in _COMMANDS:
        raise ValueError(f"Unsupported Alembic command: {cmd}")

    func, defaults = _COMMANDS[cmd]
    logger.info("alembic %s %s", cmd, " ".join(other or defaults))
    func(build_config(), *(other or defaults))


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    try:
        main()
    except ValueError as exc:
        logger.error("%s", exc)
        sys.exit(2)
