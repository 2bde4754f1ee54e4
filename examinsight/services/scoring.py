"""
Booklet-based scoring of multiple-choice answer sheets.

Students sit different physical booklets (A/B/C/D) whose questions are printed in
different orders. Every booklet is mapped back onto the canonical answer key
before comparison, so all variants share one logical key.

Nets are exact: ``net = correct - wrong / 3`` in ``Fraction``. The floor at zero
is applied once per subject, and every rounded number leaves this module through
``quantize`` so all consumers agree on the last digit.
"""
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from fractions import Fraction
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..core.errors import (
    InvalidAnswerKey,
    InvalidOption,
    InvalidRotation,
    LengthMismatch,
    UnknownBooklet,
)

logger = logging.getLogger(__name__)

DEFAULT_OPTIONS: Tuple[str, ...] = ("A", "B", "C", "D", "E")
BLANK_MARKERS = frozenset({"", " ", "-", "."})
MULTI_MARK = "*"
CANONICAL_BOOKLET = "A"
WRONG_PENALTY = Fraction(1, 3)
NET_DECIMALS = 4

CORRECT = "correct"
WRONG = "wrong"
BLANK = "blank"


# ============= Rounding policy =============

def reported_net(raw: Fraction) -> Fraction:
    """Subject-level floor: a subject net never goes below zero."""
    return raw if raw > 0 else Fraction(0)


def quantize(value, places: int = NET_DECIMALS) -> float:
    """Round half-up to ``places`` decimals. Accepts Fraction, int or float."""
    if isinstance(value, Fraction):
        dec = Decimal(value.numerator) / Decimal(value.denominator)
    else:
        dec = Decimal(str(value))
    step = Decimal(1).scaleb(-places)
    return float(dec.quantize(step, rounding=ROUND_HALF_UP))


def net_of(correct: int, wrong: int) -> Fraction:
    return Fraction(correct) - wrong * WRONG_PENALTY


def normalize_mark(mark: Optional[str]) -> str:
    if mark is None:
        return ""
    mark = str(mark)
    return "" if mark in BLANK_MARKERS else mark.strip().upper()


# ============= Answer key and booklets =============

@dataclass(frozen=True)
class KeyItem:
    index: int
    subject: str
    correct: str
    topic: Optional[str] = None
    outcome: Optional[str] = None


@dataclass(frozen=True)
class AnswerKey:
    """Canonical answer key for one exam, in canonical (booklet A) order."""
    exam_id: str
    items: Tuple[KeyItem, ...]
    exam_type: str = "LGS"
    options: Tuple[str, ...] = DEFAULT_OPTIONS
    prerequisites: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)
    topic_names: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if not self.items:
            raise InvalidAnswerKey(f"Answer key for exam {self.exam_id} has no questions")
        for position, item in enumerate(self.items):
            if item.index != position:
                raise InvalidAnswerKey(f"Question indices must be contiguous from 0; got {item.index} at {position}")
            if not item.subject:
                raise InvalidAnswerKey(f"Question {position + 1} has no subject")
            if item.correct not in self.options:
                raise InvalidAnswerKey(f"Question {position + 1} has correct option '{item.correct}'")

    def __len__(self) -> int:
        return len(self.items)

    def subjects(self) -> "OrderedDict[str, int]":
        """Subject code -> question count, in first-appearance order."""
        counts: "OrderedDict[str, int]" = OrderedDict()
        for item in self.items:
            counts[item.subject] = counts.get(item.subject, 0) + 1
        return counts

    def topic_of(self, index: int) -> Optional[str]:
        return self.items[index].topic

    def to_dict(self) -> dict:
        return {
            "exam_id": self.exam_id,
            "exam_type": self.exam_type,
            "options": "".join(self.options),
            "items": [
                {"index": i.index, "subject": i.subject, "correct": i.correct, "topic": i.topic, "outcome": i.outcome}
                for i in self.items
            ],
            "prerequisites": {k: list(v) for k, v in sorted(self.prerequisites.items())},
            "topic_names": dict(sorted(self.topic_names.items())),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AnswerKey":
        return cls(
            exam_id=data["exam_id"],
            exam_type=data.get("exam_type", "LGS"),
            options=tuple(data.get("options") or DEFAULT_OPTIONS),
            items=tuple(
                KeyItem(index=int(i["index"]), subject=i["subject"], correct=normalize_mark(i["correct"]),
                        topic=i.get("topic"), outcome=i.get("outcome"))
                for i in data["items"]
            ),
            prerequisites={k: tuple(v) for k, v in (data.get("prerequisites") or {}).items()},
            topic_names=dict(data.get("topic_names") or {}),
        )


@dataclass(frozen=True)
class BookletRotationMap:
    """Booklet variant -> permutation with ``permutation[canonical_index] = booklet_index``."""
    permutations: Mapping[str, Tuple[int, ...]]

    @classmethod
    def identity(cls, length: int, variants: Iterable[str] = (CANONICAL_BOOKLET,)) -> "BookletRotationMap":
        return cls({v: tuple(range(length)) for v in variants})

    @classmethod
    def from_question_numbers(cls, numbers: Mapping[str, Sequence[int]]) -> "BookletRotationMap":
        """Build from 1-based per-variant question numbers listed in canonical order."""
        return cls({variant: tuple(n - 1 for n in nums) for variant, nums in numbers.items()})

    def variants(self) -> Tuple[str, ...]:
        return tuple(sorted(self.permutations))

    def validate(self, length: int) -> None:
        """Every permutation must be a bijection over ``range(length)``."""
        if CANONICAL_BOOKLET in self.permutations and tuple(self.permutations[CANONICAL_BOOKLET]) != tuple(range(length)):
            raise InvalidRotation(f"Booklet {CANONICAL_BOOKLET} must be the identity permutation")
        for variant, perm in self.permutations.items():
            if len(perm) != length or sorted(perm) != list(range(length)):
                raise InvalidRotation(f"Booklet {variant} is not a permutation of {length} questions")

    def permutation(self, variant: str) -> Tuple[int, ...]:
        variant = (variant or "").strip().upper()
        try:
            return tuple(self.permutations[variant])
        except KeyError:
            raise UnknownBooklet(variant, self.variants()) from None

    def to_canonical(self, variant: str, answers: Sequence[str]) -> List[str]:
        perm = self.permutation(variant)
        return [answers[perm[c]] for c in range(len(perm))]

    def to_booklet(self, variant: str, canonical_answers: Sequence[str]) -> List[str]:
        """Inverse of ``to_canonical``: lay canonical answers out in booklet order."""
        perm = self.permutation(variant)
        booklet = [""] * len(perm)
        for c, b in enumerate(perm):
            booklet[b] = canonical_answers[c]
        return booklet

    def to_dict(self) -> Dict[str, List[int]]:
        return {k: list(v) for k, v in sorted(self.permutations.items())}


@dataclass(frozen=True)
class RawAnswerSheet:
    student_id: str
    booklet: str
    answers: Tuple[str, ...]
    student_name: Optional[str] = None
    class_name: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "student_id": self.student_id,
            "booklet": self.booklet,
            "answers": list(self.answers),
            "student_name": self.student_name,
            "class_name": self.class_name,
        }


# ============= Results =============

@dataclass(frozen=True)
class SubjectScore:
    subject: str
    question_count: int
    correct: int
    wrong: int
    blank: int

    @property
    def raw_net(self) -> Fraction:
        return net_of(self.correct, self.wrong)

    @property
    def net(self) -> Fraction:
        return reported_net(self.raw_net)

    @property
    def success_rate(self) -> float:
        return self.correct / self.question_count if self.question_count else 0.0

    def to_dict(self) -> dict:
        return {
            "subject": self.subject,
            "question_count": self.question_count,
            "correct": self.correct,
            "wrong": self.wrong,
            "blank": self.blank,
            "net": quantize(self.net),
            "success_rate": quantize(self.success_rate),
        }


@dataclass(frozen=True)
class ScoredResult:
    exam_id: str
    student_id: str
    booklet: str
    subjects: Tuple[SubjectScore, ...]
    outcomes: Tuple[str, ...]  # per canonical question: correct / wrong / blank

    @property
    def correct(self) -> int:
        return sum(s.correct for s in self.subjects)

    @property
    def wrong(self) -> int:
        return sum(s.wrong for s in self.subjects)

    @property
    def blank(self) -> int:
        return sum(s.blank for s in self.subjects)

    @property
    def question_count(self) -> int:
        return len(self.outcomes)

    @property
    def net(self) -> Fraction:
        """Sum of the floored subject nets."""
        return sum((s.net for s in self.subjects), Fraction(0))

    def subject(self, code: str) -> SubjectScore:
        for s in self.subjects:
            if s.subject == code:
                return s
        raise KeyError(code)

    def to_dict(self) -> dict:
        return {
            "exam_id": self.exam_id,
            "student_id": self.student_id,
            "booklet": self.booklet,
            "correct": self.correct,
            "wrong": self.wrong,
            "blank": self.blank,
            "net": quantize(self.net),
            "subjects": [s.to_dict() for s in self.subjects],
        }


# ============= Engine =============

class BookletScoringEngine:
    """Side-effect free scorer. Raises ValidationError subclasses on malformed input."""

    def score(self, sheet: RawAnswerSheet, answer_key: AnswerKey, rotation: BookletRotationMap) -> ScoredResult:
        if len(sheet.answers) != len(answer_key):
            raise LengthMismatch(len(answer_key), len(sheet.answers), sheet.student_id)

        marks = [normalize_mark(m) for m in sheet.answers]
        for position, mark in enumerate(marks):
            if mark and mark != MULTI_MARK and mark not in answer_key.options:
                raise InvalidOption(position, mark)

        rotation.validate(len(answer_key))
        canonical = rotation.to_canonical(sheet.booklet, marks)

        tallies: "OrderedDict[str, List[int]]" = OrderedDict(
            (code, [0, 0, 0]) for code in answer_key.subjects()
        )
        outcomes = []
        for item, mark in zip(answer_key.items, canonical):
            tally = tallies[item.subject]
            if not mark:
                tally[2] += 1
                outcomes.append(BLANK)
            elif mark == item.correct:
                tally[0] += 1
                outcomes.append(CORRECT)
            else:
                # a multi-mark is never correct
                tally[1] += 1
                outcomes.append(WRONG)

        counts = answer_key.subjects()
        subjects = tuple(
            SubjectScore(subject=code, question_count=counts[code], correct=c, wrong=w, blank=b)
            for code, (c, w, b) in tallies.items()
        )
        return ScoredResult(
            exam_id=answer_key.exam_id,
            student_id=sheet.student_id,
            booklet=(sheet.booklet or "").strip().upper(),
            subjects=subjects,
            outcomes=tuple(outcomes),
        )

    def score_many(
        self, sheets: Iterable[RawAnswerSheet], answer_key: AnswerKey, rotation: BookletRotationMap
    ) -> Tuple[List[ScoredResult], Dict[str, str]]:
        """Score a batch. Returns (results, {student_id: validation message}) so one bad sheet doesn't sink the exam."""
        results, rejected = [], {}
        for sheet in sheets:
            try:
                results.append(self.score(sheet, answer_key, rotation))
            except (LengthMismatch, UnknownBooklet, InvalidOption) as e:
                logger.warning(f"Rejected sheet {sheet.student_id} for exam {answer_key.exam_id}: {e}")
                rejected[sheet.student_id] = str(e)
        return results, rejected
