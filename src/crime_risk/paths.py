"""
Canonical path resolution for the crime risk project.

Every script imports its directories from here; nothing builds '../' paths.
The project root is found by walking upward to `.project-root` (primary)
or one of the fallback markers.
"""

from pathlib import Path
from typing import Optional

# Markers to detect project root (in priority order)
ROOT_MARKERS = [".project-root", "pyproject.toml", ".git"]


def find_project_root(start_path: Optional[Path] = None) -> Path:
    """
    Find the project root by searching upward for marker files.

    Args:
        start_path: Starting directory for search. Defaults to this file's location.

    Returns:
        Path to project root directory.

    Raises:
        FileNotFoundError: If no root marker is found.
    """
    if start_path is None:
        start_path = Path(__file__).resolve().parent

    current = start_path

    while current != current.parent:
        for marker in ROOT_MARKERS:
            if (current / marker).exists():
                return current
        current = current.parent

    for marker in ROOT_MARKERS:
        if (current / marker).exists():
            return current

    raise FileNotFoundError(
        f"Could not find project root. Searched for markers {ROOT_MARKERS} "
        f"starting from {start_path}"
    )


# =============================================================================
# Canonical paths (resolved at import time)
# =============================================================================

PROJECT_ROOT = find_project_root()

CONFIG_DIR = PROJECT_ROOT / "configs"

# Data directories
DATA_DIR = PROJECT_ROOT / "data"
RAW_DIR = DATA_DIR / "raw"
PROCESSED_DIR = DATA_DIR / "processed"

# Processed subdirectories, one per pipeline stage
GEO_DIR = PROCESSED_DIR / "geo"
FISHNET_DIR = PROCESSED_DIR / "fishnet"
MODEL_DIR = PROCESSED_DIR / "model"
DENSITY_DIR = PROCESSED_DIR / "density"
METADATA_DIR = PROCESSED_DIR / "metadata"

LOGS_DIR = PROJECT_ROOT / "logs"

# Reports
REPORTS_DIR = PROJECT_ROOT / "reports"
FIGURES_DIR = REPORTS_DIR / "figures"
TABLES_DIR = REPORTS_DIR / "tables"

SRC_DIR = PROJECT_ROOT / "src"
SCRIPTS_DIR = PROJECT_ROOT / "scripts"
TESTS_DIR = PROJECT_ROOT / "tests"


def ensure_dirs_exist() -> None:
    """Create all canonical directories if they don't exist."""
    dirs = [
        CONFIG_DIR,
        RAW_DIR,
        GEO_DIR, FISHNET_DIR, MODEL_DIR, DENSITY_DIR, METADATA_DIR,
        LOGS_DIR,
        FIGURES_DIR, TABLES_DIR,
    ]
    for d in dirs:
        d.mkdir(parents=True, exist_ok=True)


if __name__ == "__main__":
    print(f"PROJECT_ROOT:  {PROJECT_ROOT}")
    print(f"RAW_DIR:       {RAW_DIR}")
    print(f"PROCESSED_DIR: {PROCESSED_DIR}")
    print(f"CONFIG_DIR:    {CONFIG_DIR}")
    print(f"LOGS_DIR:      {LOGS_DIR}")
