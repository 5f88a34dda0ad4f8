# Copyright (c) 2025-2026 Gowtham Adamane Rao. All Rights Reserved.
#
# Licensed under the Prosperity Public License 3.0.0 (the "License").
# You may not use this file except in compliance with the License.
# You may obtain a copy of the License in the LICENSE file at the root
# of this repository, or at: https://prosperitylicense.com/versions/3.0.0
#
# Commercial use beyond a 30-day trial requires a separate license.
"""
Lab attribute rollups: collapse the many raw LOINC scale, system and time
aspect values into a handful of canonical labels.

The tables are JSON lists of objects with a `raw_value` key and a label key
(`label` for scale, `label` or `system_category` for system, `time_bucket`
for time aspect). They are read once when the engine is built and are
read-only afterwards.
"""
import json
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, TypeVar

from pydantic import BaseModel
from rich.console import Console

console = Console()

DEFAULT_ROLLUP_DIR = Path(__file__).parent / "data" / "lab_attribute_rollups"

SCALE_FILE = "rollup_scale_type.json"
SYSTEM_FILE = "rollup_system.json"
TIME_FILE = "rollup_time_aspect.json"

RowT = TypeVar("RowT", bound=BaseModel)


def _normalize_key(value: str) -> str:
    return value.strip().lower()


def _load_table(path: Path, label_keys: Iterable[str]) -> Dict[str, str]:
    """Reads one rollup file into a normalized raw value -> label mapping. A missing or bad file yields an empty table."""
    if not path.exists():
        console.log(f"[yellow]Rollup table {path.name} not found in {path.parent}. No rollup will be applied.[/yellow]")
        return {}
    try:
        entries = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        console.log(f"[yellow]Could not read rollup table {path.name}: {e}. No rollup will be applied.[/yellow]")
        return {}

    table = {}
    for entry in entries if isinstance(entries, list) else []:
        if not isinstance(entry, dict) or not entry.get("raw_value"):
            continue
        label = next((entry[k] for k in label_keys if entry.get(k)), None)
        if label:
            table.setdefault(_normalize_key(entry["raw_value"]), label)
    return table


class RollupTables:
    """
    The three lab attribute lookup tables.
    Lookups are case-insensitive and ignore surrounding whitespace. Only whole
    values are matched; anything without an entry passes through unchanged.
    """

    def __init__(
        self,
        scale: Optional[Mapping[str, str]] = None,
        system: Optional[Mapping[str, str]] = None,
        time: Optional[Mapping[str, str]] = None,
    ):
        self.scale = {_normalize_key(k): v for k, v in (scale or {}).items()}
        self.system = {_normalize_key(k): v for k, v in (system or {}).items()}
        self.time = {_normalize_key(k): v for k, v in (time or {}).items()}

    @classmethod
    def empty(cls) -> "RollupTables":
        return cls()

    @classmethod
    def from_directory(cls, directory: Optional[Path] = None) -> "RollupTables":
        """Loads the tables from `directory`, defaulting to the tables shipped with the package."""
        directory = Path(directory) if directory else DEFAULT_ROLLUP_DIR
        tables = cls(
            scale=_load_table(directory / SCALE_FILE, ("label", "canonical")),
            system=_load_table(directory / SYSTEM_FILE, ("label", "system_category", "canonical")),
            time=_load_table(directory / TIME_FILE, ("time_bucket", "label")),
        )
        console.log(
            f"Loaded lab rollups: {len(tables.scale)} scale, {len(tables.system)} system, "
            f"{len(tables.time)} time aspect entries."
        )
        return tables

    def _roll(self, table: Dict[str, str], value: Optional[str]) -> Optional[str]:
        if value is None or not table:
            return value
        return table.get(_normalize_key(value), value)

    def roll_scale(self, value: Optional[str]) -> Optional[str]:
        return self._roll(self.scale, value)

    def roll_system(self, value: Optional[str]) -> Optional[str]:
        return self._roll(self.system, value)

    def roll_time(self, value: Optional[str]) -> Optional[str]:
        return self._roll(self.time, value)

    def apply(self, rows: Iterable[RowT]) -> List[RowT]:
        """Returns copies of `rows` with scale, system and time replaced by their canonical labels."""
        return [
            row.model_copy(update={
                "scale": self.roll_scale(getattr(row, "scale", None)),
                "system": self.roll_system(getattr(row, "system", None)),
                "time": self.roll_time(getattr(row, "time", None)),
            })
            for row in rows
        ]
