"""
Writer — serialize run outputs to JSON files.

Filesystem layout per build mode:
    <ci_dir>/build_ci_report.json
    <ci_dir>/objects/<stem>-ci.stamp.json
"""
import json
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from build_ci.io.schema import RunReport, UnitStamp

REPORT_NAME = "build_ci_report.json"


def _dump(model) -> str:
    return json.dumps(model.model_dump(mode="json"), indent=2, sort_keys=True) + "\n"


def write_report(report: RunReport, ci_dir: Path) -> Path:
    """
    Write build_ci_report.json into *ci_dir*.

    Creates *ci_dir* if it does not exist.  Returns the report path.
    """
    ci_dir.mkdir(parents=True, exist_ok=True)
    path = ci_dir / REPORT_NAME
    path.write_text(_dump(report))
    return path


def write_stamp(stamp: UnitStamp, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(_dump(stamp))
    return path


def read_stamp(path: Path) -> Optional[UnitStamp]:
    """Load a stamp; a missing or unreadable stamp is treated as absent."""
    if not path.is_file():
        return None
    try:
        return UnitStamp.model_validate_json(path.read_text())
    except (ValidationError, ValueError, OSError):
        return None
