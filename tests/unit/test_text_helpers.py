import pytest

from app.config import PublishingPolicy
from app.features.publishing.pipeline import replies
from app.features.publishing.pipeline.text import (
    build_alt_text,
    extract_token,
    file_name_from_url,
    is_email_address,
    media_title,
    normalize_email,
    normalize_phone,
    remove_token,
    should_force_process,
    slugify,
    truncate,
    unique_slug,
)

KEYWORDS = PublishingPolicy().force_keywords


@pytest.mark.parametrize(
    "text,expected",
    [
        ("TOKEN:abc123 ارتفاع السوق", "ABC123"),
        ("#TOKEN-XY_9 news", "XY_9"),
        ("خبر عاجل\ntoken ABC123", "ABC123"),
        ("no marker here", None),
        ("", None),
        (None, None),
    ],
)
def test_extract_token(text, expected):
    assert extract_token(text) == expected


def test_remove_token_leaves_only_body():
    assert remove_token("#TOKEN:ABC123\nارتفاع السوق اليوم") == "ارتفاع السوق اليوم"
    assert remove_token("خبر TOKEN:ABC123") == "خبر"
    assert remove_token(None) == ""


def test_remove_token_drops_inline_hash():
    assert remove_token("hello #TOKEN:ABC world") == "hello  world"


@pytest.mark.parametrize(
    "text,expected",
    [
        ("send", True),
        ("  DONE  ", True),
        ("انشر", True),
        ("publish now please", True),
        ("please send", False),
        ("", False),
        ("   ", False),
        (None, False),
    ],
)
def test_should_force_process(text, expected):
    assert should_force_process(text, KEYWORDS) is expected


def test_should_force_process_ignores_blank_keywords():
    assert should_force_process("anything", ["", "  "]) is False


def test_slugify_keeps_arabic_and_ascii():
    assert slugify("ارتفاع السوق") == "ارتفاع-السوق"
    assert slugify("Hello World_Test!") == "hello-world-test"
    assert slugify("  --Breaking:: News--  ") == "breaking-news"
    assert slugify("!!!") == ""


def test_unique_slug_appends_timestamp():
    assert unique_slug("Market Up", now_ms=1700000000000) == "market-up-1700000000000"
    assert unique_slug("???", now_ms=5) == "article-5"


def test_truncate():
    assert truncate("abcdef", 10) == "abcdef"
    assert truncate("abcdef", 5) == "ab..."


def test_alt_text_for_hero_and_later_images():
    title = "ارتفاع مؤشر السوق"
    lead = "ارتفع المؤشر اليوم بنسبة كبيرة جدا في التداولات"

    assert build_alt_text(title, lead, 0) == "صورة ارتفاع مؤشر السوق"
    assert build_alt_text(title, lead, 2) == "ارتفع المؤشر اليوم بنسبة كبيرة - صورة 3"
    assert len(build_alt_text("كلمة " * 100, lead, 0, max_length=20)) == 20


def test_media_title():
    assert media_title("عنوان الخبر", 0) == "عنوان الخبر - صورة 1"


def test_file_name_from_url_drops_query():
    assert file_name_from_url("https://cdn.example.com/inbound/photo.jpg?sig=1", 0) == "photo.jpg"


def test_normalize_phone():
    assert normalize_phone("whatsapp:+966 50-000-0001") == "966500000001"
    assert normalize_phone("(050) 000 0001") == "0500000001"
    assert normalize_phone(None) == ""


def test_normalize_email():
    assert normalize_email("Reporter <Reporter@Example.COM>") == "reporter@example.com"
    assert normalize_email("  desk@news.sa ") == "desk@news.sa"
    assert normalize_email("") == ""


def test_is_email_address():
    assert is_email_address("desk@news.sa") is True
    assert is_email_address("+966500000001") is False


def test_published_reply_mentions_merged_parts():
    single = replies.published_reply("https://news.example.com/news/slug")
    merged = replies.published_reply("https://news.example.com/news/slug", part_count=3)

    assert single.endswith("https://news.example.com/news/slug")
    assert "تم دمج" not in single
    assert "تم دمج 3 رسائل" in merged


def test_low_quality_reply_lists_issues():
    body = replies.low_quality_reply(["لا توجد قيمة إخبارية", "", "نص قصير"])

    assert "لا توجد قيمة إخبارية, نص قصير" in body
    assert replies.DEFAULT_REJECTION_REASON in replies.low_quality_reply([])


def test_reply_categories_are_distinct():
    bodies = {
        replies.published_reply("https://x"),
        replies.draft_reply(),
        replies.low_quality_reply(["x"]),
        replies.failure_reply(),
    }
    assert len(bodies) == 4
