"""
Utility functions for migration summaries and reports.
"""

import json
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any, List

from tabulate import tabulate

from image_migrator.logging_utils import get_logger
from image_migrator.work_planner import WorkItem

logger = get_logger(__name__)


def _platform_cell(item: WorkItem) -> str:
    if not item.multi_arch:
        return "single"
    return ", ".join(item.platforms) or "all (unspecified)"


def format_work_table(items: List[WorkItem]) -> str:
    """Render work items as a grid table."""
    headers = ["Repository", "Tag", "Platforms"]
    rows = [[item.repo, item.tag, _platform_cell(item)] for item in items]
    return tabulate(rows, headers=headers, tablefmt="grid")


def _normalize(data: Any) -> Any:
    """Recursively convert values json cannot serialize."""
    if isinstance(data, dict):
        return {str(k): _normalize(v) for k, v in data.items()}
    if isinstance(data, (list, tuple)):
        return [_normalize(v) for v in data]
    if isinstance(data, (set, frozenset)):
        return sorted(_normalize(v) for v in data)
    if isinstance(data, (datetime, date)):
        return data.isoformat()
    if isinstance(data, Enum):
        return data.value
    return data


def save_json(path: str, data: Any) -> str:
    """
    Write JSON data to a file with indentation.

    Args:
        path: Path to save the JSON file
        data: Data to save

    Returns:
        Path to the saved file
    """
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    with open(p, "w") as f:
        json.dump(_normalize(data), f, indent=2)
    logger.info(f"Report saved to {p}")
    return str(p)
