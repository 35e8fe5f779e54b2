"""
Bar-size / grade / shape normalizer.

Maps free-text values returned by the extraction collaborator onto the RSIC
vocabulary used on the shop floor. Resolution order per field:

  1. tenant MappingRule (case-insensitive exact match)
  2. canonical enumeration
  3. field heuristic  (bar size: leading "<n> M"; grade: digits + "W")

A heuristic hit is reported back as a learned rule so the caller can persist
it (is_auto=True) and later rows skip the heuristic. Unresolvable values are
passed through unchanged and left for the validation engine to flag.
"""
import re
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger("rebarflow-normalizer")

# RSIC Canada bar sizes
VALID_BAR_SIZES = ["10M", "15M", "20M", "25M", "30M", "35M", "45M", "55M"]
VALID_GRADES = ["300W", "400W", "500W"]
DEFAULT_GRADE = "400W"

MAPPED_FIELDS = ("bar_size", "grade", "shape_type")

_BAR_SIZE_RE = re.compile(r"^(\d+)\s*M")
_NON_DIGITS_RE = re.compile(r"[^0-9]")


def normalize_key(value: Optional[str]) -> str:
    """Rule lookup key: trimmed, upper-cased."""
    return (value or "").strip().upper()


def guess_bar_size(raw: str) -> Optional[str]:
    match = _BAR_SIZE_RE.match(raw)
    if not match:
        return None
    candidate = f"{int(match.group(1))}M"
    return candidate if candidate in VALID_BAR_SIZES else None


def guess_grade(raw: str) -> Optional[str]:
    candidate = f"{_NON_DIGITS_RE.sub('', raw)}W"
    return candidate if candidate in VALID_GRADES else None


@dataclass
class LearnedRule:
    source_field: str
    source_value: str
    mapped_value: str


@dataclass
class RowMapping:
    bar_size_mapped: Optional[str]
    grade_mapped: Optional[str]
    shape_code_mapped: Optional[str]
    learned: List[LearnedRule] = field(default_factory=list)


class BarNormalizer:
    """
    Stateless apart from the rule lookup it is built with. Learned rules are
    folded into the lookup as they are discovered, so one instance can map a
    whole session and report each new rule once.
    """

    def __init__(self, rules: Iterable[Tuple[str, str, str]] = ()):
        self._lookup: Dict[str, Dict[str, str]] = {f: {} for f in MAPPED_FIELDS}
        for source_field, source_value, mapped_value in rules:
            self._lookup.setdefault(source_field, {})[normalize_key(source_value)] = mapped_value
        self._learned: Dict[Tuple[str, str], LearnedRule] = {}

    @property
    def learned_rules(self) -> List[LearnedRule]:
        return list(self._learned.values())

    def _learn(self, source_field: str, key: str, mapped: str) -> LearnedRule:
        rule = LearnedRule(source_field, key, mapped)
        self._lookup[source_field][key] = mapped
        self._learned[(source_field, key)] = rule
        return rule

    def resolve_bar_size(self, raw: Optional[str]) -> Tuple[Optional[str], Optional[LearnedRule]]:
        key = normalize_key(raw)
        if key in self._lookup["bar_size"]:
            return self._lookup["bar_size"][key], None
        if key in VALID_BAR_SIZES:
            return key, None
        guessed = guess_bar_size(key)
        if guessed:
            return guessed, self._learn("bar_size", key, guessed)
        return (key or None), None

    def resolve_grade(self, raw: Optional[str]) -> Tuple[Optional[str], Optional[LearnedRule]]:
        key = normalize_key(raw)
        if key in self._lookup["grade"]:
            return self._lookup["grade"][key], None
        if key in VALID_GRADES:
            return key, None
        guessed = guess_grade(key)
        if guessed:
            return guessed, self._learn("grade", key, guessed)
        return (key or None), None

    def resolve_shape(self, raw: Optional[str]) -> Optional[str]:
        key = normalize_key(raw)
        if key in self._lookup["shape_type"]:
            return self._lookup["shape_type"][key]
        return key or None

    def map_row(self, bar_size: Optional[str], grade: Optional[str], shape_type: Optional[str]) -> RowMapping:
        size_mapped, size_rule = self.resolve_bar_size(bar_size)
        grade_mapped, grade_rule = self.resolve_grade(grade)
        return RowMapping(
            bar_size_mapped=size_mapped,
            grade_mapped=grade_mapped,
            shape_code_mapped=self.resolve_shape(shape_type),
            learned=[r for r in (size_rule, grade_rule) if r is not None],
        )
