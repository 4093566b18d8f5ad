"""
Shared fixtures for the widget engine tests.
"""

import pytest

from core.models import FormDesign, ProcessedResponse, WidgetConfig


def build_response(response_id, form_id="f1", answers=None, created_at="2024-01-15T10:00:00Z", **extra):
    return ProcessedResponse(
        id=response_id,
        form_id=form_id,
        answers=answers if answers is not None else {},
        created_at=created_at,
        **extra,
    )


def build_design(*questions):
    return FormDesign.model_validate({"sections": [{"id": "s1", "questions": list(questions)}]})


@pytest.fixture
def make_response():
    return build_response


@pytest.fixture
def make_design():
    return build_design


@pytest.fixture
def make_config():
    def _make(**wire):
        wire.setdefault("title", "Widget")
        return WidgetConfig.model_validate(wire)
    return _make
