"""Deterministic slot extraction from free text.

Every extractor attaches a confidence to what it finds. Values at or above
``min_confidence`` are merged into the session slots directly; weaker ones are
returned as hints for the model to confirm with the renter.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Tuple

from ..models import Slots

logger = logging.getLogger(__name__)

KNOWN_LOCATIONS = {
    "phoenix": "Phoenix",
    "phx": "Phoenix",
    "sky harbor": "Phoenix",
    "scottsdale": "Scottsdale",
    "tempe": "Tempe",
    "mesa": "Mesa",
    "chandler": "Chandler",
    "gilbert": "Gilbert",
    "glendale": "Glendale",
    "peoria": "Peoria",
    "surprise": "Surprise",
    "goodyear": "Goodyear",
    "tucson": "Tucson",
    "flagstaff": "Flagstaff",
    "sedona": "Sedona",
    "las vegas": "Las Vegas",
    "los angeles": "Los Angeles",
    "san diego": "San Diego",
    "denver": "Denver",
}

CATEGORY_SYNONYMS: Dict[str, Tuple[str, ...]] = {
    "SUV": ("suv", "suvs", "crossover", "crossovers"),
    "TRUCK": ("truck", "trucks", "pickup", "pickups"),
    "SEDAN": ("sedan", "sedans"),
    "LUXURY": ("luxury",),
    "ELECTRIC": ("electric", "ev", "evs", "tesla"),
    "CONVERTIBLE": ("convertible", "convertibles"),
    "MINIVAN": ("minivan", "minivans", "van", "vans"),
    "SPORTS": ("sports car", "sports cars", "sporty"),
    "ECONOMY": ("economy", "compact", "cheap car"),
}

MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}
WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
NUMBER_WORDS = {
    "a": 1, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "ten": 10, "fourteen": 14,
}
ORDINALS = {
    "first": 1, "1st": 1, "second": 2, "2nd": 2, "third": 3, "3rd": 3,
    "fourth": 4, "4th": 4, "fifth": 5, "5th": 5, "sixth": 6, "6th": 6,
}

ISO_DATE_RE = re.compile(r"\b(\d{4}-\d{2}-\d{2})\b")
MONTH_DAY_RE = re.compile(
    r"\b(jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?|aug(?:ust)?|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)\.?\s+(\d{1,2})(?:st|nd|rd|th)?"
    r"(?:\s*(?:-|to|through|until)\s*(\d{1,2})(?:st|nd|rd|th)?\b)?",
    re.IGNORECASE,
)
WEEKDAY_RE = re.compile(r"\b(this |next )?(" + "|".join(WEEKDAYS) + r")\b", re.IGNORECASE)
DURATION_RE = re.compile(
    r"\bfor\s+(\d+|" + "|".join(NUMBER_WORDS) + r")\s+(day|days|night|nights|week|weeks)\b",
    re.IGNORECASE,
)
BUDGET_RE = re.compile(
    r"\b(?:under|below|less than|max(?:imum)?(?: of)?|up to|no more than|at most|budget(?: of| is)?)"
    r"\s*(\$)?\s*(\d+(?:\.\d{1,2})?)\s*(?:dollars?|bucks)?"
    r"\s*(/\s*day|/\s*night|per day|per night|a day|a night|daily)?",
    re.IGNORECASE,
)
RATE_RE = re.compile(r"\$\s*(\d+(?:\.\d{1,2})?)\s*(?:/|per|a)\s*(?:day|night)\b", re.IGNORECASE)
NO_DEPOSIT_RE = re.compile(r"\b(no|without(?: a| any)?|zero|\$?0)\s+(?:security\s+)?deposit\b", re.IGNORECASE)
LOCATION_FALLBACK_RE = re.compile(r"\b(?:in|at|near|around)\s+([A-Z][a-zA-Z]+(?:\s+[A-Z][a-zA-Z]+)?)")
SELECTION_TAG_RE = re.compile(r"\[id:([^\]\s]+)\]")
SELECTION_ORDINAL_RE = re.compile(
    r"\b(" + "|".join(ORDINALS) + r")\s+(?:one|option|car|vehicle)\b"
    r"|\b(?:option|number|#)\s*(\d)\b",
    re.IGNORECASE,
)

_NOT_PLACES = {w.capitalize() for w in WEEKDAYS} | {
    "January", "February", "March", "April", "May", "June", "July", "August",
    "September", "October", "November", "December",
    "The", "A", "An", "My", "Your", "This", "Next", "Total", "Cash",
}


@dataclass
class ParsedIntent:
    """Result of parsing one user message against the prior slots."""

    slots: Slots
    extracted: Dict[str, Any] = field(default_factory=dict)
    confidence: Dict[str, float] = field(default_factory=dict)
    hints: Dict[str, Any] = field(default_factory=dict)
    selection_id: Optional[str] = None
    selection_index: Optional[int] = None

    @property
    def constraint_count(self) -> int:
        return len(self.extracted) + len(self.hints)


def _upcoming_saturday(today: date) -> date:
    if today.weekday() == 6:
        return today - timedelta(days=1)
    return today + timedelta(days=(5 - today.weekday()) % 7)


def _next_weekday(after: date, weekday: int) -> date:
    delta = (weekday - after.weekday()) % 7
    return after + timedelta(days=delta or 7)


def _month_day(month: int, day: int, today: date) -> Optional[date]:
    try:
        candidate = date(today.year, month, day)
    except ValueError:
        return None
    if candidate < today:
        try:
            candidate = date(today.year + 1, month, day)
        except ValueError:
            return None
    return candidate


def extract_dates(text: str, today: date) -> Tuple[Optional[date], Optional[date], float]:
    """Return (start, end, confidence) found in text, relative to ``today``."""
    lower = text.lower()
    start: Optional[date] = None
    end: Optional[date] = None
    confidence = 1.0

    iso = [date.fromisoformat(m) for m in ISO_DATE_RE.findall(text) if _valid_iso(m)]
    if iso:
        start = iso[0]
        end = iso[1] if len(iso) > 1 else None
    elif MONTH_DAY_RE.search(text):
        matches = list(MONTH_DAY_RE.finditer(text))
        first = matches[0]
        month = MONTHS[first.group(1)[:3].lower()]
        start = _month_day(month, int(first.group(2)), today)
        if first.group(3):
            end = _month_day(month, int(first.group(3)), start or today)
        elif len(matches) > 1:
            second = matches[1]
            end = _month_day(MONTHS[second.group(1)[:3].lower()], int(second.group(2)), start or today)
    elif "next weekend" in lower:
        saturday = _upcoming_saturday(today) + timedelta(days=7)
        start, end = saturday, saturday + timedelta(days=2)
    elif "this weekend" in lower or "the weekend" in lower:
        saturday = _upcoming_saturday(today)
        start, end = max(saturday, today), saturday + timedelta(days=2)
    elif "tomorrow" in lower:
        start = today + timedelta(days=1)
    elif "today" in lower or "tonight" in lower:
        start = today
    else:
        days = [m for m in WEEKDAY_RE.finditer(lower)]
        if days:
            start = _next_weekday(today, WEEKDAYS.index(days[0].group(2)))
            if len(days) > 1:
                end = _next_weekday(start, WEEKDAYS.index(days[1].group(2)))
            confidence = 0.9

    duration = DURATION_RE.search(lower)
    if start and duration:
        count_raw = duration.group(1)
        count = int(count_raw) if count_raw.isdigit() else NUMBER_WORDS[count_raw]
        unit_days = 7 if duration.group(2).startswith("week") else 1
        end = start + timedelta(days=count * unit_days)

    if start and end and end < start:
        end = None
    return start, end, confidence


def _valid_iso(value: str) -> bool:
    try:
        date.fromisoformat(value)
        return True
    except ValueError:
        return False


def extract_location(text: str) -> Tuple[Optional[str], float]:
    lower = text.lower()
    for alias in sorted(KNOWN_LOCATIONS, key=len, reverse=True):
        if re.search(rf"\b{re.escape(alias)}\b", lower):
            return KNOWN_LOCATIONS[alias], 1.0
    match = LOCATION_FALLBACK_RE.search(text)
    if match:
        place = match.group(1).strip()
        if place.split()[0] not in _NOT_PLACES:
            return place, 0.6
    return None, 0.0


def extract_category(text: str) -> Optional[str]:
    lower = text.lower()
    for category, words in CATEGORY_SYNONYMS.items():
        for word in words:
            if re.search(rf"\b{re.escape(word)}\b", lower):
                return category
    return None


def extract_budget(text: str) -> Tuple[Optional[float], float]:
    match = BUDGET_RE.search(text)
    if match:
        amount = float(match.group(2))
        explicit = bool(match.group(1) or match.group(3))
        return amount, 1.0 if explicit else 0.6
    match = RATE_RE.search(text)
    if match:
        return float(match.group(1)), 0.9
    return None, 0.0


class IntentParser:
    """Maps free text plus prior slots to updated slots, without calling a model."""

    def __init__(self, min_confidence: float = 0.75) -> None:
        self._min_confidence = min_confidence

    def parse(self, text: str, prior: Slots, today: date) -> ParsedIntent:
        found: Dict[str, Tuple[Any, float]] = {}

        location, conf = extract_location(text)
        if location:
            found["location"] = (location, conf)

        start, end, conf = extract_dates(text, today)
        if start:
            found["start_date"] = (start, conf)
        if end:
            found["end_date"] = (end, conf)

        category = extract_category(text)
        if category:
            found["vehicle_category"] = (category, 1.0)

        budget, conf = extract_budget(text)
        if budget is not None:
            found["budget_ceiling"] = (budget, conf)

        if NO_DEPOSIT_RE.search(text):
            found["no_deposit"] = (True, 1.0)

        accepted = {k: v for k, (v, c) in found.items() if c >= self._min_confidence}
        hints = {k: v for k, (v, c) in found.items() if c < self._min_confidence}

        slots = prior.merged(Slots(**accepted))
        if (
            "start_date" in accepted
            and "end_date" not in accepted
            and slots.end_date is not None
            and slots.end_date < slots.start_date
        ):
            slots.end_date = None

        intent = ParsedIntent(
            slots=slots,
            extracted=accepted,
            confidence={k: c for k, (_, c) in found.items()},
            hints=hints,
        )

        tag = SELECTION_TAG_RE.search(text)
        if tag:
            intent.selection_id = tag.group(1)
        else:
            ordinal = SELECTION_ORDINAL_RE.search(text)
            if ordinal:
                word, digit = ordinal.group(1), ordinal.group(2)
                intent.selection_index = ORDINALS[word.lower()] if word else int(digit)

        if accepted or hints:
            logger.debug("Parsed slots: accepted=%s hints=%s", sorted(accepted), sorted(hints))
        return intent


def describe_relaxation(relaxed: List[str]) -> str:
    labels = {
        "price": "price limit",
        "category": "vehicle type",
        "radius": "search distance",
        "dates": "exact dates",
    }
    return ", ".join(labels.get(d, d) for d in relaxed)
