from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable, List, Sequence

from .models import ATTENDEE_FIELDS, Attendee


def csv_stream(rows: Iterable[Iterable[Any]]) -> Iterable[bytes]:
    """
    Encode rows as CRLF-terminated CSV lines. Strings are always quoted,
    numbers are bare, None is an empty cell. Both the HTTP download and the
    file export go through here so they share one dialect.
    """
    for row in rows:
        cells: List[str] = []
        for value in row:
            if value is None:
                cells.append("")
            elif isinstance(value, str):
                cells.append('"' + value.replace('"', '""') + '"')
            else:
                cells.append(str(value))
        yield (",".join(cells) + "\r\n").encode("utf-8")


def attendee_rows(attendees: Sequence[Attendee]) -> Iterable[List[Any]]:
    yield list(ATTENDEE_FIELDS)
    for a in attendees:
        yield a.as_row()


def write_attendees_csv(attendees: Sequence[Attendee], out: Path) -> int:
    """Write the attendee list to `out`; returns the number of data rows."""
    out.parent.mkdir(parents=True, exist_ok=True)
    with open(out, "wb") as f:
        for chunk in csv_stream(attendee_rows(attendees)):
            f.write(chunk)
    return len(attendees)
