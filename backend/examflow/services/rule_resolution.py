"""
Marking rule resolution.

Picks exactly one marking rule per question. Database rules are grouped by
which constraints they carry (question type, subject, section, standard);
groups are tried from most to least specific and the first group with a
matching rule wins. After the database rules come the built-in stream
defaults, the exam's own negative marking, and finally +4/-1.

Within one group the winner is the rule with the highest priority, then the
most recently created one.
"""

import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from pydantic import ValidationError

from ..cache import TTLCache
from ..config.settings import Settings
from ..models import (
    Exam,
    MarkingRule,
    PartialMarkingRules,
    Question,
    QuestionType,
    ResolutionLevel,
    ResolvedRule,
    RuleSource,
)
from ..utils import normalize_standard, normalize_subject, section_label, utcnow
from .stores import MarkingRuleStore

logger = logging.getLogger(__name__)

TYPE, SUBJECT, SECTION, STANDARD = "type", "subject", "section", "standard"

# Constraint set carried by the rules of each level, most specific first.
LEVEL_CONSTRAINTS: List[Tuple[ResolutionLevel, FrozenSet[str]]] = [
    (ResolutionLevel.TYPE_SUBJECT_SECTION_STANDARD, frozenset({TYPE, SUBJECT, SECTION, STANDARD})),
    (ResolutionLevel.TYPE_SUBJECT_SECTION, frozenset({TYPE, SUBJECT, SECTION})),
    (ResolutionLevel.TYPE_SUBJECT_STANDARD, frozenset({TYPE, SUBJECT, STANDARD})),
    (ResolutionLevel.TYPE_SUBJECT, frozenset({TYPE, SUBJECT})),
    (ResolutionLevel.TYPE_SECTION_STANDARD, frozenset({TYPE, SECTION, STANDARD})),
    (ResolutionLevel.TYPE_SECTION, frozenset({TYPE, SECTION})),
    (ResolutionLevel.TYPE_STANDARD, frozenset({TYPE, STANDARD})),
    (ResolutionLevel.TYPE_ONLY, frozenset({TYPE})),
    (ResolutionLevel.SUBJECT_SECTION_STANDARD, frozenset({SUBJECT, SECTION, STANDARD})),
    (ResolutionLevel.SUBJECT_SECTION, frozenset({SUBJECT, SECTION})),
    (ResolutionLevel.SUBJECT_STANDARD, frozenset({SUBJECT, STANDARD})),
    (ResolutionLevel.SUBJECT_ONLY, frozenset({SUBJECT})),
    (ResolutionLevel.SECTION_STANDARD, frozenset({SECTION, STANDARD})),
    (ResolutionLevel.SECTION_ONLY, frozenset({SECTION})),
    (ResolutionLevel.STANDARD_ONLY, frozenset({STANDARD})),
    (ResolutionLevel.EXAM_WIDE, frozenset()),
]

LEVEL_BY_CONSTRAINTS = {constraints: level for level, constraints in LEVEL_CONSTRAINTS}

# ============ BUILT-IN DEFAULTS ============

JEE_PARTIAL = PartialMarkingRules()

# stream -> question type -> (positive, negative, partial marking)
STREAM_TYPE_DEFAULTS: Dict[str, Dict[QuestionType, Tuple[float, float, bool]]] = {
    "jee": {
        QuestionType.MCQ: (4, 1, False),
        QuestionType.NUMERICAL: (4, 1, False),
        QuestionType.MCMA: (4, 2, True),
    },
    "neet": {
        QuestionType.MCQ: (4, 1, False),
    },
}

# stream -> subject -> (positive, negative)
STREAM_SUBJECT_DEFAULTS: Dict[str, Dict[str, Tuple[float, float]]] = {
    "mht-cet": {
        "physics": (1, 0),
        "chemistry": (1, 0),
        "mathematics": (2, 0),
        "biology": (1, 0),
    },
}

# stream -> (positive, negative) for anything the two tables above miss
STREAM_WIDE_DEFAULTS: Dict[str, Tuple[float, float]] = {
    "jee": (4, 1),
    "jee_main": (4, 1),
    "jee_advanced": (4, 1),
    "neet": (4, 1),
    "mht-cet": (1, 0),
    "cbse": (4, 1),
}

SYSTEM_POSITIVE_MARKS = 4
SYSTEM_NEGATIVE_MARKS = 1


@dataclass
class RuleSet:
    """Active database rules for one exam's stream, parsed and grouped by level."""
    stream: str
    by_level: Dict[ResolutionLevel, List[MarkingRule]] = field(default_factory=dict)
    skipped: int = 0
    loaded_at: datetime = field(default_factory=utcnow)

    @property
    def size(self) -> int:
        return sum(len(rules) for rules in self.by_level.values())

    @classmethod
    def from_documents(cls, stream: str, docs: List[Dict[str, Any]]) -> "RuleSet":
        rule_set = cls(stream=stream)
        for doc in docs:
            try:
                rule = MarkingRule.model_validate(doc)
            except ValidationError as e:
                rule_set.skipped += 1
                logger.warning(f"Skipping malformed marking rule {doc.get('rule_id')}: {e.error_count()} error(s)")
                continue
            level = LEVEL_BY_CONSTRAINTS[constraints_of(rule)]
            rule_set.by_level.setdefault(level, []).append(rule)
        return rule_set


def constraints_of(rule: MarkingRule) -> FrozenSet[str]:
    present = set()
    if rule.question_type is not None:
        present.add(TYPE)
    if rule.subject is not None:
        present.add(SUBJECT)
    if rule.section is not None:
        present.add(SECTION)
    if rule.standard is not None:
        present.add(STANDARD)
    return frozenset(present)


@dataclass(frozen=True)
class QuestionContext:
    """Normalized values a rule is matched against."""
    question_type: QuestionType
    subject: str
    section: str
    standard: str

    @classmethod
    def of(cls, exam: Exam, question: Question) -> "QuestionContext":
        return cls(
            question_type=question.question_type,
            subject=normalize_subject(question.subject),
            section=section_label(question.section, exam.section).lower(),
            standard=normalize_standard(exam.standard),
        )

    def matches(self, rule: MarkingRule) -> bool:
        if rule.question_type is not None and rule.question_type != self.question_type:
            return False
        if rule.subject is not None and normalize_subject(rule.subject) != self.subject:
            return False
        if rule.section is not None and section_label(rule.section).lower() != self.section:
            return False
        if rule.standard is not None and normalize_standard(rule.standard) != self.standard:
            return False
        return True


def tie_break_key(rule: MarkingRule):
    created = rule.created_at or datetime.min
    return (rule.priority, created)


class RuleResolver:
    """Resolves marking rules with a per-question cache and a per-exam rule set cache."""

    def __init__(self, store: MarkingRuleStore, settings: Settings):
        self.store = store
        self.rule_cache = TTLCache(
            ttl_seconds=settings.RULE_CACHE_TTL_SECONDS,
            max_size=settings.RULE_CACHE_MAX_SIZE,
        )
        self.rule_set_cache = TTLCache(
            ttl_seconds=settings.RULE_CACHE_TTL_SECONDS,
            max_size=settings.RULE_SET_CACHE_MAX_SIZE,
            evict_count=10,
        )
        self.level_usage: Counter = Counter()
        self.resolutions = 0
        self.fallbacks = 0

    # ============ RULE SETS ============

    async def load_rule_set(self, exam: Exam) -> RuleSet:
        """
        Fetch (or reuse) the active rules for the exam's stream.

        Store failures propagate to the caller.
        """
        key = (exam.stream, exam.exam_id)
        cached = self.rule_set_cache.get(key)
        if cached is not None:
            return cached

        started = time.perf_counter()
        docs = await self.store.active_rules(exam.stream)
        rule_set = RuleSet.from_documents(exam.stream, docs)
        self.rule_set_cache.set(key, rule_set)

        logger.info(
            f"Loaded {rule_set.size} marking rules for stream {exam.stream!r} "
            f"(exam {exam.exam_id}) in {(time.perf_counter() - started) * 1000:.1f}ms"
        )
        return rule_set

    async def resolve_for(self, exam: Exam, question: Question) -> ResolvedRule:
        rule_set = await self.load_rule_set(exam)
        return self.resolve(exam, question, rule_set)

    # ============ RESOLUTION ============

    def resolve(self, exam: Exam, question: Question, rule_set: Optional[RuleSet]) -> ResolvedRule:
        """Resolve one question's rule. Never raises; falls back to the system default."""
        self.resolutions += 1
        try:
            context = QuestionContext.of(exam, question)
            cache_key = (exam.exam_id, context.question_type.value, context.subject, context.section, question.question_id)

            cached = self.rule_cache.get(cache_key)
            if cached is not None:
                self.level_usage[cached.level.value] += 1
                return cached

            resolved = self._resolve_uncached(exam, question, context, rule_set)
            self.rule_cache.set(cache_key, resolved)
            self.level_usage[resolved.level.value] += 1
            return resolved

        except Exception as e:
            self.fallbacks += 1
            logger.error(
                f"Rule resolution failed for exam {getattr(exam, 'exam_id', None)}, "
                f"question {getattr(question, 'question_id', None)}: {e}",
                exc_info=True,
            )
            return self._system_default(QuestionType.MCQ, RuleSource.FALLBACK)

    def _resolve_uncached(
        self,
        exam: Exam,
        question: Question,
        context: QuestionContext,
        rule_set: Optional[RuleSet],
    ) -> ResolvedRule:
        if rule_set is not None:
            for level, _ in LEVEL_CONSTRAINTS:
                candidates = [r for r in rule_set.by_level.get(level, []) if context.matches(r)]
                if candidates:
                    winner = max(candidates, key=tie_break_key)
                    return self._from_rule(winner, level, context.question_type)

        stream_default = self._stream_default(exam, context)
        if stream_default is not None:
            return stream_default

        if exam.negative_marks is not None:
            positive = question.marks if question.marks else SYSTEM_POSITIVE_MARKS
            negative = abs(exam.negative_marks)
            return ResolvedRule(
                positive_marks=positive,
                negative_marks=negative,
                question_type=context.question_type,
                description=f"Exam default: +{positive:g}/-{negative:g}",
                level=ResolutionLevel.EXAM_FALLBACK,
                source=RuleSource.EXAM_DEFAULT,
            )

        return self._system_default(context.question_type, RuleSource.SYSTEM_DEFAULT)

    @staticmethod
    def _from_rule(rule: MarkingRule, level: ResolutionLevel, question_type: QuestionType) -> ResolvedRule:
        negative = abs(rule.negative_marks)
        return ResolvedRule(
            positive_marks=rule.positive_marks,
            negative_marks=negative,
            partial_marking_enabled=rule.partial_marking_enabled,
            partial_marking_rules=rule.partial_marking_rules,
            question_type=question_type,
            description=rule.description or f"{rule.stream} rule: +{rule.positive_marks:g}/-{negative:g}",
            level=level,
            source=RuleSource.DATABASE,
            rule_id=rule.rule_id,
        )

    @staticmethod
    def _stream_default(exam: Exam, context: QuestionContext) -> Optional[ResolvedRule]:
        stream_key = exam.stream.strip().lower()

        by_type = STREAM_TYPE_DEFAULTS.get(stream_key, {})
        if context.question_type in by_type:
            positive, negative, partial = by_type[context.question_type]
            return ResolvedRule(
                positive_marks=positive,
                negative_marks=negative,
                partial_marking_enabled=partial,
                partial_marking_rules=JEE_PARTIAL if partial else None,
                question_type=context.question_type,
                description=f"{exam.stream} {context.question_type.value} default: +{positive:g}/-{negative:g}",
                level=ResolutionLevel.STREAM_DEFAULT,
                source=RuleSource.STREAM_DEFAULT,
            )

        by_subject = STREAM_SUBJECT_DEFAULTS.get(stream_key, {})
        if context.subject in by_subject:
            positive, negative = by_subject[context.subject]
            return ResolvedRule(
                positive_marks=positive,
                negative_marks=negative,
                question_type=context.question_type,
                description=f"{exam.stream} {context.subject} default: +{positive:g}/-{negative:g}",
                level=ResolutionLevel.STREAM_DEFAULT,
                source=RuleSource.STREAM_DEFAULT,
            )

        if stream_key in STREAM_WIDE_DEFAULTS:
            positive, negative = STREAM_WIDE_DEFAULTS[stream_key]
            return ResolvedRule(
                positive_marks=positive,
                negative_marks=negative,
                question_type=context.question_type,
                description=f"{exam.stream} default: +{positive:g}/-{negative:g}",
                level=ResolutionLevel.STREAM_DEFAULT,
                source=RuleSource.STREAM_DEFAULT,
            )
        return None

    @staticmethod
    def _system_default(question_type: QuestionType, source: RuleSource) -> ResolvedRule:
        return ResolvedRule(
            positive_marks=SYSTEM_POSITIVE_MARKS,
            negative_marks=SYSTEM_NEGATIVE_MARKS,
            question_type=question_type,
            description=f"System default: +{SYSTEM_POSITIVE_MARKS}/-{SYSTEM_NEGATIVE_MARKS}",
            level=ResolutionLevel.SYSTEM_DEFAULT,
            source=source,
        )

    # ============ MAINTENANCE ============

    def clear_caches(self):
        self.rule_cache.clear()
        self.rule_set_cache.clear()

    def metrics(self) -> Dict[str, Any]:
        return {
            "resolutions": self.resolutions,
            "fallbacks": self.fallbacks,
            "rule_cache": self.rule_cache.stats(),
            "rule_set_cache": self.rule_set_cache.stats(),
            "level_usage": dict(self.level_usage),
        }
