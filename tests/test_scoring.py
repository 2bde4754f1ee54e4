from fractions import Fraction

import pytest

from examinsight.core.errors import InvalidAnswerKey, InvalidOption, InvalidRotation, LengthMismatch, UnknownBooklet
from examinsight.services.scoring import (
    BLANK,
    CORRECT,
    WRONG,
    AnswerKey,
    BookletRotationMap,
    BookletScoringEngine,
    KeyItem,
    RawAnswerSheet,
    quantize,
)

from .conftest import CORRECT as KEY_ANSWERS
from .conftest import make_key, sheet

engine = BookletScoringEngine()


def single_subject_key(n=30, subject="MAT"):
    return AnswerKey(exam_id="X", exam_type="LGS", items=tuple(KeyItem(i, subject, "A") for i in range(n)))


def test_net_is_correct_minus_a_third_of_wrong():
    key = single_subject_key()
    answers = ["A"] * 20 + ["B"] * 9 + [""]
    r = engine.score(RawAnswerSheet("s1", "A", tuple(answers)), key, BookletRotationMap.identity(30))
    assert (r.correct, r.wrong, r.blank) == (20, 9, 1)
    assert r.net == Fraction(17)
    assert r.to_dict()["net"] == 17.0


def test_fractional_net_is_quantized_half_up(answer_key, rotation):
    # TUR 3 correct 1 wrong, MAT 1 correct 3 wrong (raw 0), FEN 2 correct
    r = engine.score(sheet("s4", "BBCDDDDDAB"), answer_key, rotation)
    assert r.subject("TUR").net == Fraction(8, 3)
    assert r.subject("MAT").net == 0
    assert r.net == Fraction(14, 3)
    assert r.to_dict()["net"] == 4.6667
    assert quantize(Fraction(1, 8), 2) == 0.13


def test_negative_subject_net_is_floored_at_zero(answer_key, rotation):
    r = engine.score(sheet("s", "ABCDBCDAAB"), answer_key, rotation)
    assert r.subject("MAT").raw_net == Fraction(-4, 3)
    assert r.subject("MAT").net == 0
    # the floor applies per subject, so the total is TUR + FEN only
    assert r.net == Fraction(6)


def test_length_mismatch(answer_key, rotation):
    with pytest.raises(LengthMismatch) as exc:
        engine.score(sheet("s", "ABC"), answer_key, rotation)
    assert exc.value.expected == 10
    assert exc.value.actual == 3


def test_unknown_booklet(answer_key, rotation):
    with pytest.raises(UnknownBooklet) as exc:
        engine.score(sheet("s", KEY_ANSWERS, booklet="E"), answer_key, rotation)
    assert exc.value.known == ("A", "B")


def test_invalid_option(answer_key, rotation):
    with pytest.raises(InvalidOption) as exc:
        engine.score(sheet("s", "ABCDZBCDAB"), answer_key, rotation)
    assert exc.value.position == 4


def test_lowercase_and_blank_markers_are_accepted(answer_key, rotation):
    r = engine.score(sheet("s", ["a", "b", " ", "-", ".", "", "c", "d", "a", "b"]), answer_key, rotation)
    assert r.correct == 6
    assert r.blank == 4
    assert r.wrong == 0


def test_multi_mark_counts_as_wrong(answer_key, rotation):
    r = engine.score(sheet("s", "*BCDABCDAB"), answer_key, rotation)
    assert r.outcomes[0] == WRONG
    assert r.wrong == 1


def test_booklet_answers_map_back_to_canonical_order(answer_key, rotation):
    canonical = list("ABCD-BCDAC")
    booklet_b = rotation.to_booklet("B", canonical)
    assert booklet_b == list(reversed(canonical))

    a = engine.score(sheet("s", canonical), answer_key, rotation)
    b = engine.score(sheet("s", booklet_b, booklet="B"), answer_key, rotation)
    assert a.outcomes == b.outcomes
    assert a.net == b.net
    assert b.booklet == "B"


def test_rotation_round_trip(rotation):
    answers = list("ABCDEABCDE")
    for variant in rotation.variants():
        assert rotation.to_canonical(variant, rotation.to_booklet(variant, answers)) == answers


def test_booklet_a_must_be_identity(answer_key):
    bad = BookletRotationMap({"A": tuple(reversed(range(10)))})
    with pytest.raises(InvalidRotation):
        engine.score(sheet("s", KEY_ANSWERS), answer_key, bad)


def test_rotation_must_be_a_permutation(answer_key):
    bad = BookletRotationMap({"A": tuple(range(10)), "B": (0,) * 10})
    with pytest.raises(InvalidRotation):
        engine.score(sheet("s", KEY_ANSWERS, booklet="B"), answer_key, bad)


def test_answer_key_rejects_unknown_correct_option():
    with pytest.raises(InvalidAnswerKey):
        AnswerKey(exam_id="X", items=(KeyItem(0, "MAT", "F"),))


def test_net_never_decreases_as_answers_become_correct(answer_key, rotation):
    answers = ["B"] * 10
    previous = engine.score(sheet("s", answers), answer_key, rotation).net
    for i, correct in enumerate(KEY_ANSWERS):
        answers[i] = correct
        current = engine.score(sheet("s", answers), answer_key, rotation).net
        assert current >= previous
        previous = current
    assert previous == Fraction(10)


def test_net_grows_as_blanks_become_correct(answer_key, rotation):
    answers = ["-"] * 10
    previous = engine.score(sheet("s", answers), answer_key, rotation)
    for i, correct in enumerate(KEY_ANSWERS):
        answers[i] = correct
        current = engine.score(sheet("s", answers), answer_key, rotation)
        assert current.wrong == 0
        assert current.net > previous.net
        previous = current
    assert previous.net == Fraction(10)


def test_net_never_grows_as_blanks_become_wrong(answer_key, rotation):
    answers = ["-"] * 10
    previous = engine.score(sheet("s", answers), answer_key, rotation)
    for i, correct in enumerate(KEY_ANSWERS):
        answers[i] = "A" if correct != "A" else "B"
        current = engine.score(sheet("s", answers), answer_key, rotation)
        assert current.correct == 0
        assert current.net <= previous.net
        previous = current
    assert previous.wrong == 10
    assert previous.net == 0


def test_perfect_and_empty_sheets(answer_key, rotation):
    perfect = engine.score(sheet("s", KEY_ANSWERS), answer_key, rotation)
    empty = engine.score(sheet("s", "-" * 10), answer_key, rotation)
    assert set(perfect.outcomes) == {CORRECT}
    assert set(empty.outcomes) == {BLANK}
    assert empty.net == 0


def test_score_many_keeps_going_past_bad_sheets(answer_key, rotation):
    sheets = [sheet("ok", KEY_ANSWERS), sheet("short", "AB"), sheet("odd", KEY_ANSWERS, booklet="Q")]
    results, rejected = engine.score_many(sheets, answer_key, rotation)
    assert [r.student_id for r in results] == ["ok"]
    assert set(rejected) == {"short", "odd"}


def test_answer_key_dict_round_trip():
    key = make_key()
    assert AnswerKey.from_dict(key.to_dict()) == key
