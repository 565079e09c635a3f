"""Arabic reply templates sent back to the submitting sender."""

GREETING = "السلام عليكم"
DEFAULT_REJECTION_REASON = "جودة المحتوى غير كافية"


def _parts_note(part_count: int) -> str:
    if part_count > 1:
        return f"\n📝 تم دمج {part_count} رسائل"
    return ""


def published_reply(article_url: str, part_count: int = 1) -> str:
    return f"{GREETING}\n✅ تم نشر الخبر بنجاح{_parts_note(part_count)}\n\n{article_url}"


def draft_reply(part_count: int = 1) -> str:
    return f"{GREETING}\n📝 تم حفظ الخبر كمسودة{_parts_note(part_count)}\nسيتم مراجعته قبل النشر"


def low_quality_reply(issues: list[str] | None) -> str:
    reason = ", ".join(issue for issue in (issues or []) if issue) or DEFAULT_REJECTION_REASON
    return f"{GREETING}\n❌ لم يتم نشر الخبر\n\nالسبب: {reason}"


def failure_reply() -> str:
    return f"{GREETING}\n❌ حدث خطأ أثناء معالجة الرسالة\nيرجى المحاولة مرة أخرى"
