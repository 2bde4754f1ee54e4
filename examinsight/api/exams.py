from dataclasses import replace
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ..bootstrap import Services
from ..core.errors import ValidationError
from ..services.parsers import parse_answer_key_rows, parse_optical_txt
from ..services.scoring import RawAnswerSheet, normalize_mark
from .deps import get_services, result_response

router = APIRouter()


class AnswerKeyUpload(BaseModel):
    exam_type: Optional[str] = None
    options: str = "ABCDE"
    rows: List[Dict[str, Any]]
    prerequisites: Dict[str, List[str]] = Field(default_factory=dict)
    topic_names: Dict[str, str] = Field(default_factory=dict)


class AnswerKeyOut(BaseModel):
    exam_id: str
    exam_type: str
    question_count: int
    subjects: Dict[str, int]
    booklets: List[str]
    invalidated: int


@router.put("/{exam_id}/answer-key", response_model=AnswerKeyOut)
def put_answer_key(exam_id: str, payload: AnswerKeyUpload, services: Services = Depends(get_services)):
    try:
        key, rotation = parse_answer_key_rows(exam_id, payload.rows, exam_type=payload.exam_type or services.settings.DEFAULT_EXAM_TYPE, options=tuple(payload.options.upper()))
        key = replace(
            key,
            prerequisites={k: tuple(v) for k, v in payload.prerequisites.items()},
            topic_names=dict(payload.topic_names),
        )
    except ValidationError as e:
        raise HTTPException(422, str(e))
    services.repository.save_answer_key(key, rotation)
    invalidated = services.orchestrator.invalidate_exam(exam_id, "answer key updated")
    return AnswerKeyOut(
        exam_id=exam_id,
        exam_type=key.exam_type,
        question_count=len(key),
        subjects=dict(key.subjects()),
        booklets=list(rotation.variants()),
        invalidated=invalidated,
    )


class SheetIn(BaseModel):
    student_id: str
    booklet: str = "A"
    answers: List[str] | str
    student_name: Optional[str] = None
    class_name: Optional[str] = None


class SheetsUpload(BaseModel):
    sheets: List[SheetIn] = Field(default_factory=list)
    optical_txt: Optional[str] = None


class SheetsOut(BaseModel):
    saved: int
    rejected: List[str]
    invalidated: int


@router.post("/{exam_id}/sheets", response_model=SheetsOut)
def post_sheets(exam_id: str, payload: SheetsUpload, services: Services = Depends(get_services)):
    found = services.repository.get_answer_key(exam_id)
    if found is None:
        raise HTTPException(404, f"No answer key for exam {exam_id}")
    key, _ = found

    sheets = [
        RawAnswerSheet(
            student_id=s.student_id,
            booklet=s.booklet.strip().upper(),
            answers=tuple(normalize_mark(a) for a in s.answers),
            student_name=s.student_name,
            class_name=s.class_name,
        )
        for s in payload.sheets
    ]
    rejected: List[str] = []
    if payload.optical_txt:
        parsed = parse_optical_txt(payload.optical_txt, question_count=len(key))
        sheets.extend(parsed.sheets)
        rejected.extend(parsed.errors)

    saved = services.repository.save_sheets(exam_id, sheets)
    invalidated = services.orchestrator.invalidate_exam(exam_id, "answer sheets updated") if saved else 0
    return SheetsOut(saved=saved, rejected=rejected, invalidated=invalidated)


@router.get("/{exam_id}/statistics")
def get_statistics(exam_id: str, services: Services = Depends(get_services)):
    return result_response(services.orchestrator.exam_statistics(exam_id))
