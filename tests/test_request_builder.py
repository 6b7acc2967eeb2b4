from __future__ import annotations

import json

from compliance_analyzer.nodes.batch_planner import plan_batches
from compliance_analyzer.nodes.request_builder import (
    OUTPUT_INSTRUCTIONS,
    build_guideline_block,
    build_request,
)

from conftest import make_record


def test_every_batch_shares_the_guideline_block(index) -> None:
    corpus = [make_record(i) for i in range(120)]
    block = build_guideline_block(index)
    requests = [build_request(b, block) for b in plan_batches(corpus, 50)]

    assert [r.batch_index for r in requests] == [0, 1, 2]
    assert all(r.guidelines == requests[0].guidelines for r in requests)
    assert all(r.output_instructions == OUTPUT_INSTRUCTIONS for r in requests)
    assert [g.title for g in block] == [
        "Reply quickly", "Use their name", "Tease in captions", "Upsell after rapport",
    ]


def test_messages_are_numbered_per_batch(index) -> None:
    corpus = [make_record(i) for i in range(60)]
    second = plan_batches(corpus, 50)[1]
    request = build_request(second, build_guideline_block(index))

    assert [m.index for m in request.messages] == list(range(10))
    assert request.messages[0].text == corpus[50].text


def test_price_metadata_only_on_price_items(index) -> None:
    corpus = [make_record(0), make_record(1, price=12.5, purchased=False)]
    request = build_request(plan_batches(corpus, 50)[0], build_guideline_block(index))

    assert request.messages[0].price is None
    assert request.messages[0].is_purchase is None
    assert request.messages[1].price == 12.5
    assert request.messages[1].is_purchase is False


def test_render_prompt_groups_guidelines_by_category(index) -> None:
    corpus = [make_record(0, text="hey {you} :)"), make_record(1, price=20.0)]
    prompt = build_request(plan_batches(corpus, 50)[0], build_guideline_block(index)).render_prompt()

    guidelines_json = prompt.split("GUIDELINES (grouped by category):", 1)[1].split("MESSAGES", 1)[0]
    grouped = json.loads(guidelines_json)
    assert list(grouped) == ["general", "psychology", "captions", "sales"]
    assert grouped["sales"][0]["title"] == "Upsell after rapport"
    assert grouped["sales"][0]["weight"] == 4

    assert "MESSAGES (2 in this batch)" in prompt
    assert "hey {you} :)" in prompt
    assert '"price": 20.0' in prompt
