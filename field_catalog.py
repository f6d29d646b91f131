from __future__ import annotations

import logging
import re
from bisect import bisect_left
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Sequence, Tuple

CURRENT = "current"
# Entries in a step beyond magnitude 1; about one month for a 5-day catalog.
COARSE_STEP_ENTRIES = 6
DATE_SPEC_RE = re.compile(r"^(\d{4})/(\d{2})/(\d{2})$")
ENTRY_PREFIX_RE = re.compile(r"^(\d{4})(\d{2})(\d{2})")
LOGGER = logging.getLogger("earth_fields.catalog")


def date_spec_prefix(date: str) -> str:
    """Turns a yyyy/MM/dd date spec into the yyyyMMdd prefix used by catalog entries."""
    match = DATE_SPEC_RE.match(date)
    if not match:
        raise ValueError(f"Date must be 'current' or yyyy/MM/dd, got {date!r}")
    return "".join(match.groups())


def to_date_spec(date: datetime) -> str:
    if date.tzinfo is not None:
        date = date.astimezone(timezone.utc)
    return date.strftime("%Y/%m/%d")


def entry_date(entry: str | None) -> datetime | None:
    if not entry:
        return None
    match = ENTRY_PREFIX_RE.match(entry)
    if not match:
        return None
    year, month, day = (int(part) for part in match.groups())
    try:
        return datetime(year, month, day, tzinfo=timezone.utc)
    except ValueError:
        return None


def step_offset(step: int) -> int:
    if step > 1:
        return COARSE_STEP_ENTRIES
    if step < -1:
        return -COARSE_STEP_ENTRIES
    return step


@dataclass(frozen=True)
class Catalog:
    """Read-only, chronologically ascending list of dated archive entries."""

    entries: Tuple[str, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "entries", tuple(self.entries))
        for previous, current in zip(self.entries, self.entries[1:]):
            if current < previous:
                raise ValueError(f"Catalog is not sorted: {previous!r} precedes {current!r}")

    @classmethod
    def from_payload(cls, payload: object) -> "Catalog":
        if not isinstance(payload, Sequence) or isinstance(payload, (str, bytes)):
            raise ValueError("Catalog payload must be a list of entry names")
        entries = list(payload)
        if not all(isinstance(entry, str) for entry in entries):
            raise ValueError("Catalog entries must be strings")
        return cls(tuple(entries))

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def latest(self) -> str | None:
        return self.entries[-1] if self.entries else None

    def lookup(self, date: str, offset: int = 0) -> str | None:
        """
        Returns the entry effective on or before the date ("current" means the latest entry),
        moved by offset positions. None when the resulting position falls outside the catalog.
        """
        offset = int(offset or 0)
        if date == CURRENT:
            index = len(self.entries) - 1 + offset
        else:
            prefix = date_spec_prefix(date)
            index = bisect_left(self.entries, prefix)
            if not (index < len(self.entries) and self.entries[index].startswith(prefix)):
                index -= 1
            index += offset
        if 0 <= index < len(self.entries):
            return self.entries[index]
        LOGGER.debug("Catalog miss date=%s offset=%d size=%d", date, offset, len(self.entries))
        return None

    def date_for(self, date: str, offset: int = 0) -> datetime | None:
        return entry_date(self.lookup(date, offset))

    def step(self, date: datetime | None, step: int) -> datetime | None:
        if date is None:
            return None
        return self.date_for(to_date_spec(date), step_offset(step))


def load_catalog(loader, path: str) -> Catalog:
    catalog = Catalog.from_payload(loader.load_payload(path))
    LOGGER.info("Loaded catalog path=%s entries=%d latest=%s", path, len(catalog), catalog.latest)
    return catalog
