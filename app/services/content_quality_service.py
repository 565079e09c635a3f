# app/services/content_quality_service.py
"""
Content Quality Service
Scores an inbound submission, detects language and category, and rewrites it
in the newsroom's editorial style using one OpenAI JSON-mode call.
"""

import asyncio
import json
from collections.abc import Sequence
from typing import Any

import openai
from openai import AsyncOpenAI
from pydantic import ValidationError

from app.config import settings
from app.features.publishing.domain import Category, OptimizedContent, QualityAnalysis
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CATEGORY = "عام"

_LANGUAGE_ALIASES = {
    "ar": "ar",
    "arabic": "ar",
    "ara": "ar",
    "en": "en",
    "english": "en",
    "eng": "en",
    "ur": "ur",
    "urdu": "ur",
    "urd": "ur",
}

_FALLBACK_CATEGORIES = {
    "ar": ["سياسة", "اقتصاد", "رياضة", "تقنية", "صحة", "ثقافة", "مجتمع", "منوعات"],
    "en": ["Politics", "Economy", "Sports", "Technology", "Health", "Culture", "Society", "Misc"],
    "ur": ["سیاست", "معیشت", "کھیل", "ٹیکنالوجی", "صحت", "ثقافت", "معاشرہ", "متفرق"],
}

_LANGUAGE_NAMES = {"ar": "Modern Standard Arabic", "en": "English", "ur": "Urdu"}


class ContentQualityError(Exception):
    """Raised when content analysis fails or returns unusable output."""

    def __init__(self, message: str, api_error: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.api_error = api_error
        self.recoverable = recoverable


def normalize_language_code(language: str | None) -> str:
    """Map free-form language names onto ar/en/ur, defaulting to Arabic."""
    normalized = (language or "").strip().lower()
    code = _LANGUAGE_ALIASES.get(normalized)
    if code is None:
        logger.warning("Unknown language code, defaulting to ar", language=language)
        return "ar"
    return code


class ContentQualityService:
    """
    Black-box editorial analysis.

    ``analyze_and_rewrite`` returns a QualityAnalysis with a 0-100 score,
    detected language and category, a news-value flag and the rewritten
    title, lead, body and SEO keywords.
    """

    def __init__(self, client: AsyncOpenAI | None = None):
        self.client = client
        if self.client is None:
            self._initialize_client()

    def _initialize_client(self) -> None:
        if not settings.OPENAI_API_KEY:
            logger.warning("OPENAI_API_KEY not configured, content analysis disabled")
            return

        self.client = AsyncOpenAI(
            api_key=settings.OPENAI_API_KEY,
            timeout=settings.CONTENT_QUALITY_TIMEOUT_SECONDS,
        )
        logger.info(
            "OpenAI client initialized for content analysis",
            model=settings.OPENAI_MODEL,
            timeout=settings.CONTENT_QUALITY_TIMEOUT_SECONDS,
        )

    @property
    def configured(self) -> bool:
        return self.client is not None

    def _get_system_message(self, language: str, categories: Sequence[Category]) -> str:
        if categories:
            names = [c.name_en if language == "en" else c.name_ar for c in categories]
        else:
            names = _FALLBACK_CATEGORIES[language]
        category_choices = " | ".join(f'"{name}"' for name in names)

        return f"""### Role
You are a professional news editor in a digital newsroom. Write in
{_LANGUAGE_NAMES[language]}: clear, direct, neutral, short strong sentences,
inverted-pyramid order, no exaggeration or opinion.

### Step 1: clean the text
Remove sender names and signatures, greetings and sign-offs, contact details,
"Sent from ..." lines, forwarded-message headers, legal disclaimers and any
reference to attachments. Keep only the news content, facts, figures and
sources named inside the story.

### Step 2: score the cleaned original (0-100)
80-100 excellent, 50-79 good, 30-49 needs a full rewrite, 10-29 raw but
usable, 0-9 unusable (spam, advertising).

### Output: JSON only
{{
  "qualityScore": 0-100,
  "language": "{language}",
  "detectedCategory": {category_choices},
  "hasNewsValue": true when the score is 10 or more,
  "issues": ["only for spam or non-news content"],
  "suggestions": ["constructive tips for the reporter"],
  "optimized": {{
    "title": "strong headline, 6-15 words",
    "lead": "lead paragraph, 20-60 words, the most important fact",
    "content": "edited body as HTML paragraphs (<p>...</p>), all news details kept",
    "seoKeywords": ["4-10 keywords"]
  }}
}}"""

    async def analyze_and_rewrite(
        self,
        text: str,
        language: str = "ar",
        categories: Sequence[Category] = (),
    ) -> QualityAnalysis:
        """
        Analyze and rewrite ``text``.

        Raises:
            ContentQualityError: the call failed or returned invalid JSON
        """
        if not self.client:
            raise ContentQualityError("OpenAI client not initialized", recoverable=False)

        target_language = normalize_language_code(language)
        truncated = (text or "")[: settings.CONTENT_QUALITY_MAX_INPUT_CHARS]

        logger.info(
            "Starting content analysis",
            content_length=len(text or ""),
            language=target_language,
            category_count=len(categories),
            model=settings.OPENAI_MODEL,
        )

        raw = await self._call_openai_with_retry(
            self._get_system_message(target_language, categories),
            f"Analyze and edit the following content:\n\n{truncated}",
        )
        analysis = self._parse_result(raw, original_text=text, fallback_language=target_language)

        logger.info(
            "Content analysis completed",
            quality_score=analysis.quality_score,
            language=analysis.language,
            category=analysis.detected_category,
            has_news_value=analysis.has_news_value,
        )
        return analysis

    async def _call_openai_with_retry(self, system_message: str, user_message: str) -> str:
        """Call OpenAI with retry for rate limits, timeouts and server errors."""
        last_error: Exception | None = None
        max_retries = settings.CONTENT_QUALITY_MAX_RETRIES

        for attempt in range(max_retries):
            try:
                response = await self.client.chat.completions.create(
                    model=settings.OPENAI_MODEL,
                    messages=[
                        {"role": "system", "content": system_message},
                        {"role": "user", "content": user_message},
                    ],
                    max_tokens=settings.CONTENT_QUALITY_MAX_TOKENS,
                    response_format={"type": "json_object"},
                )

                if not response.choices or not response.choices[0].message.content:
                    raise ContentQualityError("Empty response from OpenAI API")

                result = response.choices[0].message.content.strip()
                logger.debug(
                    "OpenAI API call successful",
                    attempt=attempt + 1,
                    response_length=len(result),
                    usage_tokens=response.usage.total_tokens if response.usage else 0,
                )
                return result

            except openai.RateLimitError as e:
                last_error = e
                wait_time = min(2**attempt, 30)
                logger.warning(
                    "OpenAI rate limit hit, retrying",
                    attempt=attempt + 1,
                    wait_time=wait_time,
                    error=str(e),
                )
                if attempt < max_retries - 1:
                    await asyncio.sleep(wait_time)

            except openai.APITimeoutError as e:
                last_error = e
                logger.warning("OpenAI API timeout, retrying", attempt=attempt + 1, error=str(e))

            except openai.APIStatusError as e:
                last_error = e
                if 400 <= e.status_code < 500:
                    logger.error("OpenAI client error (not retrying)", error=str(e))
                    break
                logger.warning("OpenAI API error, retrying", attempt=attempt + 1, error=str(e))

            except openai.APIError as e:
                last_error = e
                logger.warning("OpenAI API error, retrying", attempt=attempt + 1, error=str(e))

            except ContentQualityError as e:
                last_error = e
                logger.warning("OpenAI returned no content, retrying", attempt=attempt + 1)

        logger.error(
            "OpenAI API call failed after all retries",
            max_retries=max_retries,
            final_error=str(last_error),
        )
        raise ContentQualityError(
            f"OpenAI API failed after {max_retries} attempts",
            api_error=str(last_error),
            recoverable=True,
        ) from last_error

    def _parse_result(
        self, raw_result: str, *, original_text: str, fallback_language: str
    ) -> QualityAnalysis:
        try:
            result: dict[str, Any] = json.loads(raw_result)
        except json.JSONDecodeError as e:
            logger.error("Failed to parse OpenAI response as JSON", raw_result=raw_result[:200])
            raise ContentQualityError("OpenAI returned invalid JSON") from e

        if not isinstance(result, dict):
            raise ContentQualityError("OpenAI returned a non-object JSON document")

        optimized = result.get("optimized") or {}
        keywords = optimized.get("seoKeywords") or []

        try:
            return QualityAnalysis(
                quality_score=result.get("qualityScore") or 0,
                language=normalize_language_code(result.get("language") or fallback_language),
                detected_category=result.get("detectedCategory") or DEFAULT_CATEGORY,
                has_news_value=result.get("hasNewsValue") is not False,
                issues=[str(issue) for issue in result.get("issues") or []],
                suggestions=[str(tip) for tip in result.get("suggestions") or []],
                optimized=OptimizedContent(
                    title=optimized.get("title") or "",
                    lead=optimized.get("lead") or "",
                    content=optimized.get("content") or original_text,
                    seo_keywords=[str(keyword) for keyword in keywords if keyword],
                ),
            )
        except (ValidationError, AttributeError, TypeError) as e:
            raise ContentQualityError(f"OpenAI returned an unexpected shape: {e}") from e
