"""Service for parsing a pasted exam schedule into exam candidates."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date

from exambot.domain.models import IssueSeverity, ParsedExam, ParseIssue

# Either "12 jan" or "12/01" / "12-01", then separators, an optional time such
# as "9u30" or "14h", and the rest of the line as the exam name.
_EXAM_PATTERN = re.compile(
    r"(?:(\d{1,2}) (\w*)|(\d{1,2})[/-](\d{1,2}))[:\- ]+(?:\d{1,2}[hu]\d{0,2})?[ ]*(.*)"
)

_MONTHS = {
    "jan": 1,
    "januari": 1,
    "january": 1,
    "feb": 2,
    "februari": 2,
    "february": 2,
    "mar": 3,
    "maart": 3,
    "march": 3,
    "apr": 4,
    "april": 4,
    "mei": 5,
    "may": 5,
    "jun": 6,
    "juni": 6,
    "june": 6,
    "jul": 7,
    "juli": 7,
    "july": 7,
    "aug": 8,
    "augustus": 8,
    "sep": 9,
    "september": 9,
    "oct": 10,
    "okt": 10,
    "october": 10,
    "oktober": 10,
    "nov": 11,
    "november": 11,
    "dec": 12,
    "december": 12,
}


@dataclass
class _Piece:
    text: str
    line: int
    column: int


def _split(schedule: str) -> list[_Piece]:
    """Split on newlines when there are any, otherwise on commas."""
    pieces: list[_Piece] = []
    if "\n" in schedule:
        for line_nr, raw in enumerate(schedule.split("\n")):
            cleaned = raw.replace("```", "")
            stripped = cleaned.lstrip()
            pieces.append(
                _Piece(stripped.rstrip(), line_nr, len(cleaned) - len(stripped))
            )
    else:
        column = 0
        for raw in schedule.split(","):
            cleaned = raw.replace("`", "")
            stripped = cleaned.lstrip()
            pieces.append(
                _Piece(stripped.rstrip(), 0, column + len(cleaned) - len(stripped))
            )
            column += len(raw) + 1
    return [p for p in pieces if p.text]


def _infer_year(month: int, day: int, today: date) -> int:
    """Pick the year that puts the date today or later."""
    if month > today.month or (month == today.month and day >= today.day):
        return today.year
    return today.year + 1


def _error(piece: _Piece, message: str, start: int, end: int) -> ParseIssue:
    return ParseIssue(
        severity=IssueSeverity.ERROR,
        line=piece.line,
        column=piece.column + start,
        message=message,
        part=piece.text,
        mark_start=start,
        mark_end=end,
    )


def parse_schedule(
    schedule: str, today: date
) -> tuple[list[ParsedExam], list[ParseIssue]]:
    """Parse free text into exams, collecting issues instead of raising.

    Pieces that don't look like an exam produce a warning; pieces with an
    unknown month or an impossible date produce an error. Either way parsing
    continues with the next piece.
    """
    exams: list[ParsedExam] = []
    issues: list[ParseIssue] = []

    for piece in _split(schedule):
        match = _EXAM_PATTERN.search(piece.text)
        if match is None:
            issues.append(
                ParseIssue(
                    severity=IssueSeverity.WARNING,
                    line=piece.line,
                    column=piece.column,
                    message="Could not match an exam.",
                    part=piece.text,
                )
            )
            continue

        day_group = 1 if match.group(1) is not None else 3
        day = int(match.group(day_group))
        date_start = match.start(day_group)

        if match.group(2) is not None:
            month = _MONTHS.get(match.group(2).lower())
            if month is None:
                issues.append(
                    _error(piece, "Could not parse month.", match.start(2), match.end(2))
                )
                continue
            date_end = match.end(2)
        else:
            month = int(match.group(4))
            if not 1 <= month <= 12:
                issues.append(
                    _error(piece, "Invalid month.", match.start(4), match.end(4))
                )
                continue
            date_end = match.end(4)

        try:
            exam_day = date(_infer_year(month, day, today), month, day)
        except ValueError:
            issues.append(_error(piece, "Invalid date", date_start, date_end))
            continue

        exams.append(ParsedExam(day=exam_day, name=match.group(5).strip()))

    return exams, issues
