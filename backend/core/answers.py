"""
Answer-tree normalization.

Form responses store their answers in one of three shapes:

- section array:     [{"responses": [{"questionId": "q1", "response": ...}]}]
- sections wrapper:  {"sections": [{"responses": [...]}]}
- flat map:          {"q1": ...}

The payload may also be a JSON string of any of these. Everything is
collapsed once into a ``{questionId: value}`` map so field lookups never
have to re-detect the shape.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, Dict, Iterator, List, Tuple


class AnswerShape(str, Enum):
    section_array = "section_array"
    sections_wrapper = "sections_wrapper"
    flat_map = "flat_map"


def parse_answer_payload(raw: Any) -> Any:
    """Decode JSON-string payloads; anything else is returned untouched."""
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except ValueError:
            return raw
    return raw


def detect_shapes(tree: Any) -> List[AnswerShape]:
    """Return the shapes present in a decoded tree, in lookup precedence order."""
    if isinstance(tree, list):
        return [AnswerShape.section_array]
    if isinstance(tree, dict):
        shapes: List[AnswerShape] = []
        if isinstance(tree.get("sections"), list):
            shapes.append(AnswerShape.sections_wrapper)
        shapes.append(AnswerShape.flat_map)
        return shapes
    return []


def _iter_sections(sections: List[Any]) -> Iterator[Tuple[str, Any]]:
    for section in sections:
        if not isinstance(section, dict):
            continue
        entries = section.get("responses")
        if not isinstance(entries, list):
            continue
        for entry in entries:
            if isinstance(entry, dict) and entry.get("questionId") is not None:
                yield str(entry["questionId"]), entry.get("response")


def _iter_shape(tree: Any, shape: AnswerShape) -> Iterator[Tuple[str, Any]]:
    if shape is AnswerShape.section_array:
        yield from _iter_sections(tree)
    elif shape is AnswerShape.sections_wrapper:
        yield from _iter_sections(tree["sections"])
    else:
        for key, value in tree.items():
            yield str(key), value


def normalize_answers(raw: Any) -> Dict[str, Any]:
    """Collapse any supported answer tree into ``{questionId: value}``.

    Shapes are consulted in precedence order and the first non-null value
    for a question wins.
    """
    tree = parse_answer_payload(raw)
    answers: Dict[str, Any] = {}
    for shape in detect_shapes(tree):
        for question_id, value in _iter_shape(tree, shape):
            if value is None or answers.get(question_id) is not None:
                continue
            answers[question_id] = value
    return answers


def find_answer_by_label(raw: Any, label: str) -> Any:
    """Return the first sectioned answer whose ``label`` matches.

    Match is case-insensitive equality or substring. Used as a fallback when
    a configured field id no longer exists in older responses.
    """
    target = str(label or "").strip().lower()
    if not target:
        return None
    tree = parse_answer_payload(raw)
    sections: List[Any] = []
    if isinstance(tree, list):
        sections = tree
    elif isinstance(tree, dict) and isinstance(tree.get("sections"), list):
        sections = tree["sections"]
    for section in sections:
        entries = section.get("responses") if isinstance(section, dict) else None
        if not isinstance(entries, list):
            continue
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            text = str(entry.get("label") or "").strip().lower()
            if text and (text == target or target in text):
                return entry.get("response")
    return None
