"""Utility functions for the ExamFlow backend."""

import math
import uuid
from datetime import datetime, timezone
from typing import Any, Optional


SUBJECT_ALIASES = {
    "math": "mathematics",
    "maths": "mathematics",
    "mathematics": "mathematics",
    "phy": "physics",
    "physics": "physics",
    "chem": "chemistry",
    "chemistry": "chemistry",
    "bio": "biology",
    "biology": "biology",
}

SECTION_LABELS = {1: "Section A", 2: "Section B", 3: "Section C"}


def utcnow() -> datetime:
    """Naive UTC timestamp, as stored by pymongo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id(prefix: str) -> str:
    """Short random identifier like ``result_1a2b3c4d5e6f``."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def elapsed_ms(started: datetime, finished: datetime) -> int:
    return int((finished - started).total_seconds() * 1000)


def safe_percentage(part: float, whole: float, decimals: int = 2) -> float:
    """Percentage that tolerates zero, negative or non-finite inputs."""
    try:
        part = float(part)
        whole = float(whole)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(part) or not math.isfinite(whole) or whole <= 0:
        return 0.0
    return round((part / whole) * 100, decimals)


def normalize_subject(subject: Any) -> str:
    """Lowercase, trim and map common aliases (maths -> mathematics)."""
    if subject is None:
        return ""
    key = " ".join(str(subject).split()).lower()
    return SUBJECT_ALIASES.get(key, key)


def normalize_standard(standard: Any) -> str:
    if standard is None:
        return ""
    return str(standard).strip()


def section_label(section: Any, fallback: Optional[str] = None) -> str:
    """Map numeric sections to "Section A/B/C"; anything else to the exam section or "All"."""
    try:
        number = int(section)
    except (TypeError, ValueError):
        number = None
    if number in SECTION_LABELS:
        return SECTION_LABELS[number]
    if isinstance(section, str) and section.strip().lower().startswith("section "):
        return section.strip().title()
    if fallback:
        return fallback
    return "All"
