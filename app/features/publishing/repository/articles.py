"""
Article persistence for the publishing pipeline.

The article insert is the pipeline's single required write. Tag links and
media links are enrichments; each media link writes its ``media_files`` row
and its ``article_media_assets`` row in one transaction.
"""

from psycopg.types.json import Jsonb

from app.db.helpers import DatabaseError, fetch_all, fetch_one, fetch_val, with_db_retry
from app.db.pool import get_db_transaction
from app.features.publishing.domain import (
    Article,
    ArticleCreate,
    ArticleStatus,
    Category,
    MediaLinkRequest,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

MEDIA_KEYWORDS = ["whatsapp", "auto-upload", "aggregated"]


class ArticleRepository:
    """Categories, articles, tags and media links."""

    @with_db_retry()
    async def list_categories(self) -> list[Category]:
        rows = await fetch_all("SELECT id, name_ar, name_en, slug FROM categories ORDER BY name_ar")
        return [
            Category(
                id=str(row["id"]),
                name_ar=row["name_ar"],
                name_en=row["name_en"],
                slug=row.get("slug"),
            )
            for row in rows
        ]

    async def create_article(self, payload: ArticleCreate) -> Article:
        query = """
            INSERT INTO articles (
                title, slug, content, excerpt, image_url, category_id, author_id,
                status, published_at, source, source_metadata, seo_keywords,
                webhook_log_id
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id, slug, title, status
        """

        metadata = payload.source_metadata
        row = await fetch_one(
            query,
            (
                payload.title,
                payload.slug,
                payload.content,
                payload.excerpt,
                payload.image_url,
                payload.category_id,
                payload.author_id,
                payload.status.value,
                payload.published_at,
                payload.source.value,
                Jsonb(
                    {
                        "type": metadata.type,
                        "from": metadata.sender,
                        "token": metadata.token,
                        "partsCount": metadata.parts_count,
                        "webhookLogId": metadata.webhook_log_id,
                    }
                ),
                payload.seo_keywords,
                metadata.webhook_log_id,
            ),
        )

        if not row:
            raise DatabaseError("Article insert returned no row", operation="create_article")

        article = Article(
            id=str(row["id"]),
            slug=row["slug"],
            title=row["title"],
            status=ArticleStatus(row["status"]),
        )
        logger.info(
            "Article created",
            article_id=article.id,
            status=article.status.value,
            webhook_log_id=metadata.webhook_log_id,
        )
        return article

    async def find_or_create_tag(self, name: str, slug: str) -> str:
        """Return the tag id for ``slug``, inserting the tag when it does not exist."""
        existing = await fetch_val("SELECT id FROM tags WHERE slug = %s", (slug,))
        if existing:
            return str(existing)

        # A concurrent insert of the same slug falls through to the update branch
        query = """
            INSERT INTO tags (name_ar, name_en, slug)
            VALUES (%s, %s, %s)
            ON CONFLICT (slug) DO UPDATE SET slug = EXCLUDED.slug
            RETURNING id
        """
        tag_id = await fetch_val(query, (name, name, slug))
        return str(tag_id)

    async def link_tag(self, article_id: str, tag_id: str) -> bool:
        """Link a tag to an article. Returns False when the link already existed."""
        query = """
            INSERT INTO article_tags (article_id, tag_id)
            VALUES (%s, %s)
            ON CONFLICT (article_id, tag_id) DO NOTHING
            RETURNING article_id
        """
        row = await fetch_one(query, (article_id, tag_id))
        return row is not None

    async def link_media(self, article_id: str, media: MediaLinkRequest) -> str:
        """Insert a media file and its article link together; returns the media file id."""
        media_query = """
            INSERT INTO media_files (
                file_name, original_name, url, type, mime_type, size, category,
                uploaded_by, title, keywords, alt_text
            )
            VALUES (%s, %s, %s, 'image', %s, 0, 'articles', %s, %s, %s, %s)
            RETURNING id
        """
        link_query = """
            INSERT INTO article_media_assets (
                article_id, media_file_id, locale, display_order, alt_text,
                moderation_status, source_name
            )
            VALUES (%s, %s, %s, %s, %s, 'approved', %s)
        """

        async with await get_db_transaction() as conn:
            media_row = await fetch_one(
                media_query,
                (
                    media.file_name,
                    media.file_name,
                    media.url,
                    media.mime_type,
                    media.uploaded_by,
                    media.title,
                    MEDIA_KEYWORDS,
                    media.alt_text,
                ),
                connection=conn,
            )
            if not media_row:
                raise DatabaseError("Media insert returned no row", operation="link_media")

            media_file_id = str(media_row["id"])
            await conn.execute(
                link_query,
                (
                    article_id,
                    media_file_id,
                    media.locale,
                    media.display_order,
                    media.alt_text,
                    media.source_name,
                ),
            )

        logger.debug(
            "Media linked to article",
            article_id=article_id,
            media_file_id=media_file_id,
            display_order=media.display_order,
        )
        return media_file_id
