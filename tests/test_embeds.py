from common import constants
from server.embeds import EmbedBuilder, truncate


def identity(text):
    return text


def test_truncate_appends_marker_within_limit():
    out = truncate("a" * 3000, 2000)
    assert len(out) == 2000
    assert out.endswith(constants.TRUNCATION_MARKER)
    assert truncate("short", 2000) == "short"
    assert truncate(None, 10) is None


def test_media_embeds_become_urls():
    res = EmbedBuilder(identity).build(
        [
            {"type": "gifv", "url": "https://tenor.com/x"},
            {"type": "image", "url": "https://img/x.png"},
            {"type": "gifv", "url": "https://tenor.com/x"},
        ]
    )
    assert res.embeds == []
    assert res.urls == ["https://tenor.com/x", "https://img/x.png"]


def test_empty_embeds_are_dropped():
    res = EmbedBuilder(identity).build([{"type": "rich", "color": 5}, {"url": "https://x"}])
    assert res.embeds == []
    assert res.dropped == 2


def test_fields_are_copied_with_blank_filler():
    res = EmbedBuilder(identity).build(
        [{"title": "T", "fields": [{"name": "n", "value": ""}, {"name": "", "value": ""}]}]
    )
    (e,) = res.embeds
    assert e["fields"] == [{"name": "n", "value": "\u200b", "inline": False}]


def test_limits_are_enforced():
    raw = {
        "title": "t" * 300,
        "description": "d" * 5000,
        "fields": [{"name": f"f{i}", "value": "v"} for i in range(30)],
    }
    res = EmbedBuilder(identity).build([raw] * 12)
    assert len(res.embeds) <= constants.EMBEDS_PER_MESSAGE
    first = res.embeds[0]
    assert len(first["title"]) == constants.EMBED_TITLE_MAX
    assert len(first["fields"]) == constants.EMBED_FIELDS_MAX
    total = sum(
        len(e.get("title") or "")
        + len(e.get("description") or "")
        + sum(len(f["name"]) + len(f["value"]) for f in e.get("fields") or [])
        for e in res.embeds
    )
    assert total <= constants.EMBED_TOTAL_MAX
    assert res.truncated > 0
    assert res.dropped > 0


def test_render_is_applied_to_text():
    res = EmbedBuilder(lambda s: s.replace("<@1>", "**@ann**")).build(
        [{"description": "hi <@1>", "footer": {"text": "by <@1>"}}]
    )
    assert res.embeds[0]["description"] == "hi **@ann**"
    assert res.embeds[0]["footer"] == {"text": "by **@ann**"}
