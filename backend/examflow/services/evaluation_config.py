"""
Numerical evaluation configuration.

Tolerances are chosen per exam stream, with subject-specific overrides.
All lookups are case-insensitive. Subjects go through the same alias
normalization as marking rules (maths -> mathematics).
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..utils import normalize_subject

ABSOLUTE = "absolute"
PERCENTAGE = "percentage"


@dataclass(frozen=True)
class EvaluationConfig:
    tolerance: float
    tolerance_type: str = ABSOLUTE
    description: str = ""

    def as_dict(self) -> Dict[str, Any]:
        return {
            "tolerance": self.tolerance,
            "tolerance_type": self.tolerance_type,
            "description": self.description,
        }


SAFE_DEFAULT = EvaluationConfig(0.1, ABSOLUTE, "Safe default - standard absolute tolerance")

STREAM_DEFAULTS: Dict[str, EvaluationConfig] = {
    "jee": EvaluationConfig(0.01, ABSOLUTE, "JEE - high precision numerical evaluation"),
    "neet": EvaluationConfig(0.05, ABSOLUTE, "NEET - moderate precision"),
    "mht-cet": EvaluationConfig(0.02, ABSOLUTE, "MHT-CET - moderate precision"),
    "cbse": EvaluationConfig(0.1, ABSOLUTE, "CBSE - standard board precision"),
    "practice": EvaluationConfig(0.2, ABSOLUTE, "Practice tests - lenient evaluation"),
    "state board": EvaluationConfig(0.1, ABSOLUTE, "State Board - standard precision"),
}

SUBJECT_OVERRIDES: Dict[str, Dict[str, EvaluationConfig]] = {
    "physics": {
        "jee": EvaluationConfig(2, PERCENTAGE, "JEE Physics - percentage tolerance"),
        "neet": EvaluationConfig(0.05, ABSOLUTE, "NEET Physics - absolute tolerance"),
        "default": EvaluationConfig(0.1, ABSOLUTE, "Physics default"),
    },
    "chemistry": {
        "jee": EvaluationConfig(0.01, ABSOLUTE, "JEE Chemistry - stoichiometry precision"),
        "neet": EvaluationConfig(0.02, ABSOLUTE, "NEET Chemistry - moderate precision"),
        "default": EvaluationConfig(0.05, ABSOLUTE, "Chemistry default"),
    },
    "mathematics": {
        "jee": EvaluationConfig(0.001, ABSOLUTE, "JEE Mathematics - very high precision"),
        "cbse": EvaluationConfig(0.01, ABSOLUTE, "CBSE Mathematics - high precision"),
        "default": EvaluationConfig(0.01, ABSOLUTE, "Mathematics default"),
    },
    "biology": {
        "neet": EvaluationConfig(0.1, ABSOLUTE, "NEET Biology"),
        "default": EvaluationConfig(0.1, ABSOLUTE, "Biology default"),
    },
}


def is_valid_config(config: Optional[EvaluationConfig]) -> bool:
    if config is None:
        return False
    if isinstance(config.tolerance, bool) or not isinstance(config.tolerance, (int, float)):
        return False
    if not math.isfinite(config.tolerance) or config.tolerance < 0:
        return False
    return config.tolerance_type in (ABSOLUTE, PERCENTAGE)


def resolve_config(stream: Optional[str], subject: Optional[str]) -> EvaluationConfig:
    """Stream default, then the subject override for that stream (or the subject default)."""
    stream_key = (stream or "").strip().lower()
    config = STREAM_DEFAULTS.get(stream_key, SAFE_DEFAULT)

    overrides = SUBJECT_OVERRIDES.get(normalize_subject(subject))
    if overrides:
        config = overrides.get(stream_key) or overrides.get("default") or config

    if not is_valid_config(config):
        return SAFE_DEFAULT
    return config
