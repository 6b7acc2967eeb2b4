"""Shared pytest fixtures for the compliance analyzer tests."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from compliance_analyzer.errors import ExternalServiceUnavailable
from compliance_analyzer.models import Category, Guideline, MessageRecord
from compliance_analyzer.nodes.guideline_index import GuidelineIndex

_T0 = datetime(2024, 3, 4, 12, 0, tzinfo=timezone.utc)


def make_record(
    i: int = 0,
    text: Optional[str] = None,
    reply_time: float = 1.0,
    price: Optional[float] = None,
    purchased: Optional[bool] = None,
) -> MessageRecord:
    return MessageRecord(
        text=text if text is not None else f"hey babe, message number {i}",
        timestamp_utc=_T0 + timedelta(minutes=i),
        reply_time_minutes=reply_time,
        counterparty_id=f"fan-{i % 7}",
        price_amount=price,
        is_price_item=price is not None,
        was_purchased=purchased,
    )


GUIDELINES = (
    Guideline("g-reply", "Reply quickly", "Always reply within 5 minutes.", Category.GENERAL, 3),
    Guideline("g-name", "Use their name", "Address the fan by name.", Category.PSYCHOLOGY, 2),
    Guideline("g-caption", "Tease in captions", "Captions must tease the content.", Category.CAPTIONS),
    Guideline("g-upsell", "Upsell after rapport", "Build rapport before sending a PPV.", Category.SALES, 4),
)


class FakeService:
    """Scripted analysis service: one reply (or exception) per call."""

    def __init__(self, replies):
        self.replies = list(replies)
        self.requests = []

    async def analyze(self, request) -> str:
        self.requests.append(request)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def reply_json(
    grammar: Optional[dict] = None,
    **categories: list,
) -> str:
    """Build a well-formed reply wrapped in some model chatter."""
    body = {
        "grammarBreakdown": grammar or {
            "spellingErrors": {"count": 0, "examples": []},
            "grammarIssues": {"count": 0, "examples": []},
            "punctuationProblems": {"count": 0, "examples": []},
            "informalLanguage": {"count": 0, "examples": []},
            "scoreExplanation": "clean",
        },
    }
    for name in ("general", "psychology", "captions", "sales"):
        body[name] = {"items": categories.get(name, [])}
    return "Here is the analysis:\n" + json.dumps(body) + "\nLet me know if you need more."


@pytest.fixture
def index() -> GuidelineIndex:
    return GuidelineIndex(GUIDELINES)


@pytest.fixture
def records() -> list[MessageRecord]:
    return [make_record(i) for i in range(100)]


@pytest.fixture
def unavailable() -> ExternalServiceUnavailable:
    return ExternalServiceUnavailable("connection refused")
