from __future__ import annotations

from compliance_analyzer.models import Category, Guideline
from compliance_analyzer.nodes.guideline_index import GuidelineIndex, guideline_id_for, load_guidelines


def test_lookup_by_id_and_title(index) -> None:
    assert len(index) == 4
    assert index.get("g-name").title == "Use their name"
    assert index.find_by_title("  reply   QUICKLY ").id == "g-reply"
    assert index.resolve("Tease in captions").id == "g-caption"
    assert index.resolve("g-upsell").category == Category.SALES
    assert index.resolve("unknown") is None


def test_grouped_follows_category_order(index) -> None:
    grouped = index.grouped()
    assert list(grouped) == [Category.GENERAL, Category.PSYCHOLOGY, Category.CAPTIONS, Category.SALES]
    assert [g.id for g in grouped[Category.SALES]] == ["g-upsell"]


def test_inactive_guidelines_are_left_out() -> None:
    index = GuidelineIndex([
        Guideline("a", "Active", "", Category.GENERAL),
        Guideline("b", "Retired", "", Category.GENERAL, is_active=False),
    ])
    assert [g.id for g in index] == ["a"]


def test_duplicate_title_in_other_category_is_a_conflict() -> None:
    index = GuidelineIndex([
        Guideline("a", "Be warm", "", Category.GENERAL),
        Guideline("b", "be warm", "", Category.PSYCHOLOGY),
    ])
    assert len(index) == 1
    assert index.find_by_title("Be warm").category == Category.GENERAL
    assert len(index.conflicts) == 1
    assert index.conflicts[0].kept == "general"
    assert index.conflicts[0].ignored == "psychology"


def test_load_guidelines_maps_labels_and_skips_unknown() -> None:
    guidelines, warnings = load_guidelines([
        {"title": "Reply quickly", "category": "General Chatting", "weight": 9},
        {"id": "p1", "title": "Mirror mood", "category": "Engagement", "counterExamples": ["ok."]},
        {"title": "Spam", "category": "marketing"},
        {"title": "", "category": "sales"},
    ])

    assert [g.title for g in guidelines] == ["Reply quickly", "Mirror mood"]
    assert guidelines[0].category == Category.GENERAL
    assert guidelines[0].weight == 5
    assert guidelines[0].id == guideline_id_for("reply quickly")
    assert guidelines[1].id == "p1"
    assert guidelines[1].category == Category.PSYCHOLOGY
    assert guidelines[1].counter_examples == ("ok.",)
    assert len(warnings) == 2
    assert "marketing" in warnings[0]


def test_load_guidelines_with_custom_labels() -> None:
    guidelines, warnings = load_guidelines(
        [{"title": "Hook", "category": "Chat Flow"}],
        {"chat flow": Category.CAPTIONS},
    )
    assert guidelines[0].category == Category.CAPTIONS
    assert warnings == []
