"""Write AI-suggested metadata back to a Paperless document."""

import logging
from dataclasses import dataclass, field

from . import db
from .analysis import SuggestedItem, Suggestions
from .config import Config
from .paperless_client import PaperlessClient

logger = logging.getLogger("papermind.auto_apply")


@dataclass
class AutoApplySettings:
    title: bool = False
    correspondent: bool = False
    document_type: bool = False
    tags: bool = False
    date: bool = False

    @classmethod
    def from_instance(cls, instance: db.Instance) -> "AutoApplySettings":
        return cls(
            title=instance.auto_apply_title,
            correspondent=instance.auto_apply_correspondent,
            document_type=instance.auto_apply_document_type,
            tags=instance.auto_apply_tags,
            date=instance.auto_apply_date,
        )


@dataclass
class ApplyResult:
    success: bool
    applied_fields: list[str] = field(default_factory=list)
    error: str | None = None


def has_auto_apply_enabled(settings: AutoApplySettings) -> bool:
    return (
        settings.title
        or settings.correspondent
        or settings.document_type
        or settings.tags
        or settings.date
    )


async def _get_or_create_correspondent(client: PaperlessClient, item: SuggestedItem) -> int:
    if item.id:
        return item.id
    created = await client.create_correspondent(item.name)
    return created["id"]


async def _get_or_create_document_type(client: PaperlessClient, item: SuggestedItem) -> int:
    if item.id:
        return item.id
    created = await client.create_document_type(item.name)
    return created["id"]


async def _get_or_create_tags(client: PaperlessClient, tags: list[SuggestedItem]) -> list[int]:
    tag_ids = []
    for tag in tags:
        if tag.id:
            tag_ids.append(tag.id)
        else:
            created = await client.create_tag(tag.name)
            tag_ids.append(created["id"])
    return tag_ids


async def apply_suggestions(
    config: Config,
    client: PaperlessClient,
    remote_document_id: int,
    local_document_id: int,
    suggestions: Suggestions,
    settings: AutoApplySettings,
) -> ApplyResult:
    """
    Apply the enabled suggestion fields to the remote document and its local mirror.

    Missing correspondents, document types and tags are created in the
    repository first. The remote document is patched once with all changes.
    Never raises: failures come back as ApplyResult(success=False).
    """
    remote_changes: dict = {}
    local_changes: dict = {}
    applied: list[str] = []

    try:
        if settings.title and suggestions.title:
            remote_changes["title"] = suggestions.title
            local_changes["title"] = suggestions.title
            applied.append("title")

        if settings.correspondent and suggestions.correspondent:
            correspondent_id = await _get_or_create_correspondent(client, suggestions.correspondent)
            remote_changes["correspondent"] = correspondent_id
            local_changes["correspondent_id"] = correspondent_id
            applied.append("correspondent")

        if settings.document_type and suggestions.document_type:
            remote_changes["document_type"] = await _get_or_create_document_type(
                client, suggestions.document_type,
            )
            applied.append("document_type")

        if settings.tags and suggestions.tags:
            tag_ids = await _get_or_create_tags(client, suggestions.tags)
            remote_changes["tags"] = tag_ids
            local_changes["tag_ids"] = tag_ids
            applied.append("tags")

        if settings.date and suggestions.date:
            remote_changes["created"] = suggestions.date
            local_changes["document_date"] = suggestions.date
            applied.append("date")

        if applied:
            await client.update_document(remote_document_id, remote_changes)
            if local_changes:
                with db.get_db(config.db_path) as conn:
                    db.update_document_fields(conn, local_document_id, **local_changes)
            logger.debug(
                "Applied %s to document %d", ", ".join(applied), remote_document_id,
            )

        return ApplyResult(success=True, applied_fields=applied)
    except Exception as e:
        return ApplyResult(
            success=False,
            applied_fields=applied,
            error=str(e) or "Unknown error applying suggestions",
        )
