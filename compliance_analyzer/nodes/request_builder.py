"""Analysis Request Builder.

Renders one batch plus the guideline set into the request sent to the
analysis service.  Every batch of a run shares the same guideline block
and instructions; only the message block differs.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

from ..models import CATEGORY_ORDER, Batch
from .guideline_index import GuidelineIndex

log = logging.getLogger(__name__)

_PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"
OUTPUT_INSTRUCTIONS = (_PROMPTS_DIR / "analysis_system.txt").read_text().strip()
_USER_TEMPLATE = (_PROMPTS_DIR / "analysis_user.txt").read_text().strip()


class RequestMessage(BaseModel):
    index: int  # batch-local
    text: str
    reply_time_minutes: float
    price: Optional[float] = None
    is_purchase: Optional[bool] = None


class RequestGuideline(BaseModel):
    title: str
    description: str
    category: str
    weight: int = 1
    examples: list[str] = []
    counter_examples: list[str] = []


class AnalysisRequest(BaseModel):
    batch_index: int
    messages: list[RequestMessage]
    guidelines: list[RequestGuideline]
    output_instructions: str

    def render_prompt(self) -> str:
        """User prompt: guideline block followed by the numbered messages."""
        grouped: dict[str, list[dict]] = {}
        for g in self.guidelines:
            grouped.setdefault(g.category, []).append(
                g.model_dump(exclude={"category"}, exclude_defaults=True)
            )
        messages = [m.model_dump(exclude_none=True) for m in self.messages]
        return _USER_TEMPLATE.format(
            guidelines=json.dumps(grouped, indent=2, ensure_ascii=False),
            message_count=len(messages),
            messages=json.dumps(messages, indent=2, ensure_ascii=False),
        )


def build_guideline_block(index: GuidelineIndex) -> list[RequestGuideline]:
    """The guideline list shared by every batch of a run, in category order."""
    return [
        RequestGuideline(
            title=g.title,
            description=g.description,
            category=category.value,
            weight=g.weight,
            examples=list(g.examples),
            counter_examples=list(g.counter_examples),
        )
        for category in CATEGORY_ORDER
        for g in index.by_category(category)
    ]


def build_request(batch: Batch, guidelines: list[RequestGuideline]) -> AnalysisRequest:
    """Build the request for *batch*.  Pure; *guidelines* is not copied."""
    messages = [
        RequestMessage(
            index=i,
            text=m.text,
            reply_time_minutes=m.reply_time_minutes,
            price=m.price_amount if m.is_price_item else None,
            is_purchase=m.was_purchased if m.is_price_item else None,
        )
        for i, m in enumerate(batch.messages)
    ]
    return AnalysisRequest(
        batch_index=batch.index,
        messages=messages,
        guidelines=guidelines,
        output_instructions=OUTPUT_INSTRUCTIONS,
    )
