"""
Parsers for answer-key spreadsheets and fixed-width optical reader exports.
"""
import csv
import io
import logging
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..core.errors import InvalidAnswerKey
from .scoring import (
    CANONICAL_BOOKLET,
    DEFAULT_OPTIONS,
    AnswerKey,
    BookletRotationMap,
    KeyItem,
    RawAnswerSheet,
    normalize_mark,
)

logger = logging.getLogger(__name__)

# header aliases, compared after folding case and diacritics
SUBJECT_HEADERS = ("subject", "ders", "ders kodu", "subject code", "brans")
ANSWER_HEADERS = ("answer", "correct", "cevap", "dogru cevap", "anahtar", "correct option")
TOPIC_HEADERS = ("topic", "konu", "topic id", "konu kodu")
OUTCOME_HEADERS = ("outcome", "kazanim", "kazanim kodu", "outcome code")
BOOKLET_COLUMN = re.compile(r"^(?:(?:booklet|kitapcik|soru no|question)\s*)?([a-d])(?:\s*(?:kitapcik|soru no|booklet|no))?$")


def _fold(text: str) -> str:
    text = unicodedata.normalize("NFKD", str(text).replace("ı", "i").replace("İ", "I"))
    text = "".join(c for c in text if not unicodedata.combining(c))
    return re.sub(r"[\s_\-]+", " ", text).strip().lower()


def _find_column(headers: Iterable[str], aliases: Sequence[str]) -> Optional[str]:
    folded = {_fold(h): h for h in headers}
    for alias in aliases:
        if alias in folded:
            return folded[alias]
    return None


def _booklet_columns(headers: Iterable[str]) -> Dict[str, str]:
    columns = {}
    for h in headers:
        m = BOOKLET_COLUMN.match(_fold(h))
        if m:
            columns[m.group(1).upper()] = h
    return columns


def parse_answer_key_rows(
    exam_id: str,
    rows: Sequence[Mapping[str, object]],
    exam_type: str = "LGS",
    options: Tuple[str, ...] = DEFAULT_OPTIONS,
) -> Tuple[AnswerKey, BookletRotationMap]:
    """Build an answer key and rotation map from spreadsheet rows.

    Each row is one question: subject, correct option (as printed in booklet A),
    optional topic/outcome code and the question's number in each booklet. Rows
    may come in any order; they are sorted by the booklet A number. Without
    booklet number columns the row order is the canonical order and only
    booklet A is known.
    """
    if not rows:
        raise InvalidAnswerKey(f"Answer key for exam {exam_id} has no rows")
    headers = list(rows[0].keys())
    subject_col = _find_column(headers, SUBJECT_HEADERS)
    answer_col = _find_column(headers, ANSWER_HEADERS)
    if subject_col is None or answer_col is None:
        raise InvalidAnswerKey(f"Answer key needs subject and answer columns; got {headers}")
    topic_col = _find_column(headers, TOPIC_HEADERS)
    outcome_col = _find_column(headers, OUTCOME_HEADERS)
    booklet_cols = _booklet_columns(headers)

    def number(row, col, line):
        try:
            return int(str(row[col]).strip())
        except (TypeError, ValueError):
            raise InvalidAnswerKey(f"Row {line}: '{row[col]}' is not a question number for column {col}") from None

    parsed = []
    for line, row in enumerate(rows, start=1):
        subject = str(row.get(subject_col) or "").strip().upper()
        correct = normalize_mark(row.get(answer_col))
        if not subject and not correct:
            continue
        numbers = {b: number(row, col, line) for b, col in booklet_cols.items()}
        parsed.append((numbers.get(CANONICAL_BOOKLET, line), subject, correct, row, numbers))

    parsed.sort(key=lambda p: p[0])
    items = tuple(
        KeyItem(
            index=i,
            subject=subject,
            correct=correct,
            topic=(str(row[topic_col]).strip() or None) if topic_col and row.get(topic_col) else None,
            outcome=(str(row[outcome_col]).strip() or None) if outcome_col and row.get(outcome_col) else None,
        )
        for i, (_, subject, correct, row, _) in enumerate(parsed)
    )
    key = AnswerKey(exam_id=exam_id, items=items, exam_type=exam_type, options=options)

    if booklet_cols:
        rotation = BookletRotationMap.from_question_numbers(
            {b: [p[4][b] for p in parsed] for b in booklet_cols}
        )
        if CANONICAL_BOOKLET not in booklet_cols:
            rotation = BookletRotationMap({**rotation.permutations, CANONICAL_BOOKLET: tuple(range(len(items)))})
    else:
        rotation = BookletRotationMap.identity(len(items))
    rotation.validate(len(items))
    logger.info(f"Parsed answer key for {exam_id}: {len(items)} questions, booklets {', '.join(rotation.variants())}")
    return key, rotation


def parse_answer_key_csv(exam_id: str, text: str, exam_type: str = "LGS", delimiter: str = None) -> Tuple[AnswerKey, BookletRotationMap]:
    if delimiter is None:
        first = text.splitlines()[0] if text else ""
        delimiter = ";" if first.count(";") > first.count(",") else ","
    rows = list(csv.DictReader(io.StringIO(text), delimiter=delimiter))
    return parse_answer_key_rows(exam_id, rows, exam_type=exam_type)


# ============= Optical reader exports =============

@dataclass(frozen=True)
class FieldSpan:
    """1-based inclusive character span, as printed on optical form templates."""
    start: int
    end: int

    def cut(self, line: str) -> str:
        return line[self.start - 1:self.end]


@dataclass(frozen=True)
class OpticalTemplate:
    student_no: FieldSpan
    name: FieldSpan
    booklet: FieldSpan
    answers: FieldSpan
    class_name: Optional[FieldSpan] = None


# common 90-question LGS form
LGS_TEMPLATE = OpticalTemplate(
    student_no=FieldSpan(1, 10),
    name=FieldSpan(11, 30),
    class_name=FieldSpan(31, 34),
    booklet=FieldSpan(35, 35),
    answers=FieldSpan(36, 125),
)


@dataclass
class OpticalParseResult:
    sheets: List[RawAnswerSheet] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


def parse_optical_txt(text: str, template: OpticalTemplate = LGS_TEMPLATE, question_count: Optional[int] = None) -> OpticalParseResult:
    """Parse fixed-width lines into answer sheets.

    Lines that are too short or lack a student number are reported in ``errors``
    and skipped. Short answer spans are padded with blanks up to
    ``question_count`` when given.
    """
    result = OpticalParseResult()
    seen = set()
    for line_no, raw in enumerate(text.splitlines(), start=1):
        line = raw.rstrip("\r\n")
        if not line.strip():
            continue
        if len(line) < template.booklet.end:
            result.errors.append(f"Line {line_no}: too short ({len(line)} chars)")
            continue
        student_no = template.student_no.cut(line).strip()
        if not student_no:
            result.errors.append(f"Line {line_no}: missing student number")
            continue
        if student_no in seen:
            result.errors.append(f"Line {line_no}: duplicate student number {student_no}")
            continue
        seen.add(student_no)

        answers = list(template.answers.cut(line))
        expected = question_count or (template.answers.end - template.answers.start + 1)
        answers = (answers + [""] * expected)[:expected]
        result.sheets.append(RawAnswerSheet(
            student_id=student_no,
            booklet=template.booklet.cut(line).strip().upper() or CANONICAL_BOOKLET,
            answers=tuple(normalize_mark(a) for a in answers),
            student_name=template.name.cut(line).strip() or None,
            class_name=(template.class_name.cut(line).strip() or None) if template.class_name else None,
        ))
    logger.info(f"Parsed {len(result.sheets)} optical rows, {len(result.errors)} rejected")
    return result
