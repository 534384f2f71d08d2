from landing.content import normalize_content


def test_missing_fields_default_to_empty():
    out = normalize_content({})
    assert out["hero"] == {"title": "", "subtitle": "", "cta": ""}
    assert out["benefits"] == []
    assert out["process"] == []
    assert out["faq"] == []
    assert out["seo"] == {"title": "", "description": ""}


def test_wrong_types_fall_back():
    out = normalize_content({"hero": "Big title", "benefits": {"title": "x"}, "faq": None, "seo": []})
    assert out["hero"]["title"] == ""
    assert out["benefits"] == []
    assert out["faq"] == []
    assert out["seo"]["title"] == ""


def test_malformed_list_entries_are_dropped():
    out = normalize_content({"benefits": [{"title": "A", "text": "B"}, "junk", 3, {"title": "C"}]})
    assert out["benefits"] == [{"title": "A", "text": "B"}, {"title": "C", "text": ""}]


def test_scalars_are_coerced_to_text():
    out = normalize_content({"faq": [{"q": 1, "a": True}], "hero": {"title": None, "cta": {"x": 1}}})
    assert out["faq"] == [{"q": "1", "a": "True"}]
    assert out["hero"]["title"] == ""
    assert out["hero"]["cta"] == ""


def test_unknown_keys_are_kept_at_top_level_only():
    out = normalize_content({"hero": {"title": "T", "color": "red"}, "footer": "(c) 2024"})
    assert out["footer"] == "(c) 2024"
    assert "color" not in out["hero"]
