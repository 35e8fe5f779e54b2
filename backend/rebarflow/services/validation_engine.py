"""
Validation engine — fixed engineering rule set over normalized bar-list rows.

Rules (per row):
  bar size   missing / not RSIC canonical          → blocker
  grade      missing (defaults to 400W) / unknown  → warning
  quantity   absent or ≤ 0                         → blocker
  length     absent or ≤ 0, or > 18 000 mm         → warning
  mark       missing                               → warning

The engine is pure: it never touches the database. The pipeline replaces the
session's stored issues with whatever `validate_rows` returns.
"""
import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, Iterable, List, Optional

from rebarflow.services.normalizer import VALID_BAR_SIZES, VALID_GRADES, DEFAULT_GRADE

logger = logging.getLogger("rebarflow-validation")

BLOCKER = "blocker"
WARNING = "warning"

MAX_STOCK_LENGTH_MM = 18000


@dataclass
class Issue:
    row_id: Optional[str]
    field: str
    severity: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ValidationSummary:
    total_rows: int
    blockers: int
    warnings: int

    @property
    def can_approve(self) -> bool:
        return self.blockers == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_rows": self.total_rows,
            "blockers": self.blockers,
            "warnings": self.warnings,
            "can_approve": self.can_approve,
        }


def _effective(row: Any, mapped_attr: str, raw_attr: str) -> Optional[str]:
    value = getattr(row, mapped_attr, None) or getattr(row, raw_attr, None)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def validate_row(row: Any) -> List[Issue]:
    """Apply every rule to a single row (ORM object or any attribute bag)."""
    issues: List[Issue] = []
    row_id = getattr(row, "id", None)
    label = f"Row {getattr(row, 'row_index', '?')}"

    bar_size = _effective(row, "bar_size_mapped", "bar_size")
    if not bar_size:
        issues.append(Issue(row_id, "bar_size", BLOCKER, f"{label}: Missing bar size"))
    elif bar_size.upper() not in VALID_BAR_SIZES:
        issues.append(Issue(
            row_id, "bar_size", BLOCKER,
            f'{label}: Invalid bar size "{bar_size}". Expected: {", ".join(VALID_BAR_SIZES)}',
        ))

    grade = _effective(row, "grade_mapped", "grade")
    if not grade:
        issues.append(Issue(row_id, "grade", WARNING, f"{label}: Missing grade, will default to {DEFAULT_GRADE}"))
    elif grade.upper() not in VALID_GRADES:
        issues.append(Issue(row_id, "grade", WARNING, f'{label}: Unrecognized grade "{grade}"'))

    quantity = getattr(row, "quantity", None)
    if quantity is None or quantity <= 0:
        issues.append(Issue(row_id, "quantity", BLOCKER, f"{label}: Invalid quantity ({quantity})"))

    length = getattr(row, "total_length_mm", None)
    if length is None or length <= 0:
        issues.append(Issue(row_id, "total_length_mm", WARNING, f"{label}: Missing or zero length"))
    elif length > MAX_STOCK_LENGTH_MM:
        issues.append(Issue(
            row_id, "total_length_mm", WARNING,
            f"{label}: Length {length:g}mm exceeds typical max ({MAX_STOCK_LENGTH_MM}mm)",
        ))

    if not (getattr(row, "mark", None) or "").strip():
        issues.append(Issue(row_id, "mark", WARNING, f"{label}: Missing mark number"))

    return issues


def validate_rows(rows: Iterable[Any]) -> tuple[List[Issue], ValidationSummary]:
    rows = list(rows)
    issues: List[Issue] = []
    for row in rows:
        issues.extend(validate_row(row))
    blockers = sum(1 for i in issues if i.severity == BLOCKER)
    summary = ValidationSummary(
        total_rows=len(rows),
        blockers=blockers,
        warnings=len(issues) - blockers,
    )
    return issues, summary
