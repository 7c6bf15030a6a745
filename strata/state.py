"""
Local run state: per-stack directories under the strata home.
"""

import os
import re
from pathlib import Path
from typing import Optional

STACK_DIR_NAME = re.compile(r"^[A-Za-z][A-Za-z0-9-]{0,127}$")


def get_strata_home(state_dir: Optional[str] = None) -> Path:
    """
    Get the Strata home directory.

    Args:
        state_dir: Explicit directory; falls back to STRATA_HOME, then .strata

    Returns:
        Path: Strata home directory
    """
    home = state_dir or os.environ.get("STRATA_HOME", ".strata")
    return Path(home).resolve()


def get_stack_dir(stack_name: str, state_dir: Optional[str] = None) -> Path:
    """
    Get the run-state directory for a stack.

    Raises:
        ValueError: If the stack name cannot be used as a directory name
    """
    if not STACK_DIR_NAME.match(stack_name):
        raise ValueError(f"Invalid stack name: {stack_name}")

    return get_strata_home(state_dir) / stack_name


def create_stack_dir(stack_name: str, state_dir: Optional[str] = None) -> Path:
    stack_dir = get_stack_dir(stack_name, state_dir)
    stack_dir.mkdir(parents=True, exist_ok=True)
    return stack_dir
