"""
Rewrites stored image references once a temporary URL has a permanent
replacement.

The same image URL is duplicated on story gists, on stories and inside each
story's chapter list. Every location is updated independently: a failure in
one is logged and recorded but does not stop or roll back the others.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from fibli.db import DbClient

logger = logging.getLogger(__name__)


@dataclass
class PropagationResult:
    gist_ids: list[str] = field(default_factory=list)
    story_ids: list[str] = field(default_factory=list)
    chapter_story_ids: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def updated_count(self) -> int:
        return len(self.gist_ids) + len(self.story_ids) + len(self.chapter_story_ids)

    @property
    def ok(self) -> bool:
        return not self.errors


def replace_chapter_images(
    chapters: list[dict], old_url: str, new_url: str
) -> Optional[list[dict]]:
    """
    Return a copy of ``chapters`` with ``old_url`` images swapped for
    ``new_url``, or None if no chapter uses ``old_url``.
    """
    if not any(chapter.get("image") == old_url for chapter in chapters):
        return None
    return [
        {**chapter, "image": new_url} if chapter.get("image") == old_url else chapter
        for chapter in chapters
    ]


def propagate_image_url(
    db: DbClient, temporary_url: str, permanent_url: str
) -> PropagationResult:
    result = PropagationResult()
    if not temporary_url or temporary_url == permanent_url:
        return result

    try:
        result.gist_ids = db.replace_gist_image(temporary_url, permanent_url)
        if result.gist_ids:
            logger.info(
                "Updated image URL in story_gists for IDs: %s",
                ", ".join(result.gist_ids),
            )
    except Exception as exc:
        logger.exception("Error updating story_gists: %s", exc)
        result.errors["story_gists"] = str(exc)

    try:
        result.story_ids = db.replace_story_image(temporary_url, permanent_url)
        if result.story_ids:
            logger.info(
                "Updated image URL in stories for IDs: %s",
                ", ".join(result.story_ids),
            )
    except Exception as exc:
        logger.exception("Error updating stories: %s", exc)
        result.errors["stories"] = str(exc)

    # No index reaches into the chapter arrays, so every story is scanned.
    try:
        all_chapters = db.list_story_chapters()
    except Exception as exc:
        logger.exception("Error fetching stories for chapter image update: %s", exc)
        result.errors["chapters"] = str(exc)
        return result

    for story_id, chapters in all_chapters:
        updated = replace_chapter_images(chapters or [], temporary_url, permanent_url)
        if updated is None:
            continue
        try:
            if db.update_story_chapters(story_id, updated):
                result.chapter_story_ids.append(story_id)
                logger.info("Updated chapter images for story %s", story_id)
        except Exception as exc:
            logger.exception("Error updating chapters for story %s: %s", story_id, exc)
            result.errors[f"chapters:{story_id}"] = str(exc)

    return result
