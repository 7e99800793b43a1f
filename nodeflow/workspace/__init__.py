"""
Workspace scripts - named script templates handed to the sandbox.

Scripts are plain text resources; they are read, never imported.
"""

from pathlib import Path
from typing import List, Optional
import logging

from nodeflow.config import settings
from nodeflow.engine.errors import ScriptNotFoundError


logger = logging.getLogger(__name__)

BUNDLED_SCRIPTS_DIR = Path(__file__).parent / "scripts"
SCRIPT_SUFFIX = ".py"


def scripts_dir(override: Optional[str] = None) -> Path:
    """Directory holding workspace scripts (``SCRIPTS_DIR`` or the bundled one)."""
    configured = override or settings.SCRIPTS_DIR
    return Path(configured) if configured else BUNDLED_SCRIPTS_DIR


def list_scripts(directory: Optional[str] = None) -> List[str]:
    """Names of the available scripts, sorted."""
    root = scripts_dir(directory)
    if not root.is_dir():
        return []
    return sorted(p.stem for p in root.glob(f"*{SCRIPT_SUFFIX}") if not p.name.startswith("_"))


def load_script(name: str, directory: Optional[str] = None) -> str:
    """
    Read a script by name.

    Args:
        name: Script name without suffix, e.g. "data_pipeline"
        directory: Overrides the configured scripts directory

    Raises:
        ScriptNotFoundError: If no such script exists
    """
    root = scripts_dir(directory)
    path = (root / f"{name}{SCRIPT_SUFFIX}").resolve()
    if path.parent != root.resolve() or not path.is_file():
        raise ScriptNotFoundError(f"Script '{name}' not found in {root}")
    logger.debug(f"Loaded workspace script: {name}")
    return path.read_text(encoding="utf-8")


__all__ = ["BUNDLED_SCRIPTS_DIR", "list_scripts", "load_script", "scripts_dir"]
