"""
Deterministic coaching text built straight from a snapshot payload.

Served whenever the language model is unavailable, so it must never fail on a
sparse payload.
"""
from typing import List, Optional

GREETINGS = {
    "student": "Hi!",
    "parent": "Dear parent,",
    "teacher": "Dear teacher,",
}

CLOSINGS = {
    "student": "Small, steady steps add up. Keep going!",
    "parent": "Your encouragement at home makes a real difference.",
    "teacher": "Targeted review of the listed topics should give the quickest gains.",
}


def _topic_names(payload: dict, topics: List[str], limit: int = 3) -> List[str]:
    names = {t["topic"]: t.get("name") or t["topic"] for t in (payload.get("topics") or {}).get("topics", [])}
    return [names.get(t, t) for t in topics[:limit]]


def _percentile(payload: dict) -> Optional[float]:
    exam = (payload.get("normalized") or {}).get("exam") or {}
    return exam.get("percentile") if exam.get("kind") == "normalized" else None


def performance_summary(role: str, payload: dict) -> str:
    score = payload.get("score") or {}
    net = float(score.get("net") or 0.0)
    composite = payload.get("composite") or {}
    scaled = composite.get("scaled_score") if composite.get("kind") == "composite" else None
    percentile = _percentile(payload)

    parts = []
    if role == "student":
        parts.append(f"You scored {net:.2f} net in this exam")
    elif role == "parent":
        parts.append(f"Your child scored {net:.2f} net in this exam")
    else:
        parts.append(f"The student scored {net:.2f} net")
    if scaled is not None:
        parts.append(f"for a scaled score of {scaled:.2f}")
    sentence = " ".join(parts) + "."
    if percentile is not None:
        sentence += f" That is ahead of about {percentile:.0f}% of participants."
    rank = (payload.get("rank") or {})
    if role != "student" and rank.get("class"):
        sentence += f" Class rank: {rank['class']} of {rank.get('class_size')}."
    return sentence


def strengths_section(role: str, payload: dict) -> str:
    strengths = _topic_names(payload, (payload.get("topics") or {}).get("strengths", []))
    if not strengths:
        if role == "student":
            return "We need a few more results to pin down your strongest topics."
        return "More data is needed to identify strong topics."
    listed = ", ".join(strengths)
    if role == "student":
        return f"Your strongest topics: {listed}. Keep them sharp!"
    if role == "parent":
        return f"Your child is strong in: {listed}."
    return f"Strong areas: {listed}."


def improvement_section(role: str, payload: dict) -> str:
    gaps = (payload.get("gaps") or {}).get("gaps", [])
    topics = [g["topic"] for g in gaps] or (payload.get("topics") or {}).get("priorities", [])
    names = _topic_names(payload, topics)
    if not names:
        return "No significant gaps were found in this exam." if role != "student" else "No big gaps this time, nice work."
    listed = ", ".join(names)
    if role == "student":
        return f"Focus next on: {listed}. Start with the first one; the others build on it."
    if role == "parent":
        return f"Areas that need support: {listed}."
    critical = [g["topic"] for g in gaps if g.get("severity") == "critical"]
    note = f" Critical: {', '.join(_topic_names(payload, critical))}." if critical else ""
    return f"Priority topics (root causes first): {listed}.{note}"


def reliability_note(payload: dict) -> Optional[str]:
    confidence = payload.get("confidence") or {}
    if confidence.get("low_confidence"):
        return "Note: these results rest on limited data and should be read with care."
    return None


def fallback_commentary(role: str, payload: dict) -> str:
    sections = [
        GREETINGS.get(role, ""),
        performance_summary(role, payload),
        strengths_section(role, payload),
        improvement_section(role, payload),
        reliability_note(payload),
        CLOSINGS.get(role, ""),
    ]
    return "\n\n".join(s for s in sections if s)
