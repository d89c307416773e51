"""
Database abstraction for Postgres and an in-memory test implementation.
"""

from __future__ import annotations

import copy
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Float,
    Integer,
    String,
    create_engine,
    select,
)
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from shared.story import Story, StoryGist
from shared.types import TERMINAL_JOB_STATUSES, ImageJobStatus


class DbClient(Protocol):
    """Interface for database access."""

    # Story gists
    def save_story_gist(self, gist: StoryGist) -> StoryGist:
        ...

    def get_gist(self, gist_id: str) -> Optional[StoryGist]:
        ...

    def get_gists(self, user_id: str) -> list[StoryGist]:
        ...

    def get_titles(self, user_id: str) -> list[str]:
        ...

    def remove_gist(self, gist_id: str) -> bool:
        ...

    def mark_gist_inviting(self, gist_id: str) -> Optional[StoryGist]:
        ...

    def add_invited_story(self, gist_id: str, user_id: str) -> Optional[StoryGist]:
        ...

    # Stories
    def save_story(self, story: Story, gist_id: str) -> Story:
        ...

    def get_story(self, story_id: str) -> Optional[Story]:
        ...

    def update_story(
        self, story_id: str, title: str, chapters: list[dict]
    ) -> Optional[Story]:
        ...

    def delete_story(
        self, story_id: str
    ) -> Optional[tuple[list[StoryGist], Story]]:
        ...

    # Image references
    def replace_gist_image(self, old_url: str, new_url: str) -> list[str]:
        ...

    def replace_story_image(self, old_url: str, new_url: str) -> list[str]:
        ...

    def list_story_chapters(self) -> list[tuple[str, list[dict]]]:
        ...

    def update_story_chapters(self, story_id: str, chapters: list[dict]) -> bool:
        ...

    def list_image_urls(self) -> set[str]:
        ...

    # Image persistence jobs
    def create_image_job(self, source_url: str, file_name: str) -> "ImageJobRecord":
        ...

    def get_image_job(self, job_id: str) -> Optional["ImageJobRecord"]:
        ...

    def claim_image_job(self, job_id: str) -> Optional["ImageJobRecord"]:
        ...

    def claim_next_waiting_image_job(self) -> Optional["ImageJobRecord"]:
        ...

    def update_image_job(
        self,
        job_id: str,
        *,
        status: Optional[ImageJobStatus] = None,
        attempts: Optional[int] = None,
        permanent_url: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        ...

    def cancel_image_job(self, job_id: str) -> Optional["ImageJobRecord"]:
        ...

    def requeue_stale_image_jobs(self, lock_timeout_seconds: float = 900) -> list[str]:
        """Reset RUNNING jobs with stale locks to WAITING and return their ids."""
        ...


@dataclass
class ImageJobRecord:
    job_id: str
    source_url: str
    file_name: str
    status: ImageJobStatus
    attempts: int = 0
    permanent_url: Optional[str] = None
    error: Optional[str] = None
    locked_at: Optional[float] = None
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "source_url": self.source_url,
            "file_name": self.file_name,
            "status": self.status.value,
            "attempts": self.attempts,
            "permanent_url": self.permanent_url,
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class InMemoryDbClient:
    """Simple in-memory database for development and tests."""

    def __init__(self):
        self.gists: Dict[str, StoryGist] = {}
        self.stories: Dict[str, Story] = {}
        self.image_jobs: Dict[str, ImageJobRecord] = {}

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        self.gists.clear()
        self.stories.clear()
        self.image_jobs.clear()

    def save_story_gist(self, gist: StoryGist) -> StoryGist:
        stored = copy.deepcopy(gist)
        stored.id = stored.id or uuid.uuid4().hex
        self.gists[stored.id] = stored
        return copy.deepcopy(stored)

    def get_gist(self, gist_id: str) -> Optional[StoryGist]:
        gist = self.gists.get(gist_id)
        return copy.deepcopy(gist) if gist else None

    def get_gists(self, user_id: str) -> list[StoryGist]:
        gists = [
            gist
            for gist in self.gists.values()
            if gist.user_id == user_id and gist.story_id is not None
        ]
        gists.sort(key=lambda gist: gist.created_at, reverse=True)
        return copy.deepcopy(gists)

    def get_titles(self, user_id: str) -> list[str]:
        gists = [gist for gist in self.gists.values() if gist.user_id == user_id]
        gists.sort(key=lambda gist: gist.created_at, reverse=True)
        return [gist.title for gist in gists]

    def remove_gist(self, gist_id: str) -> bool:
        return self.gists.pop(gist_id, None) is not None

    def mark_gist_inviting(self, gist_id: str) -> Optional[StoryGist]:
        gist = self.gists.get(gist_id)
        if not gist:
            return None
        gist.inviting = True
        return copy.deepcopy(gist)

    def add_invited_story(self, gist_id: str, user_id: str) -> Optional[StoryGist]:
        source = self.mark_gist_inviting(gist_id)
        if not source:
            return None
        invited = StoryGist(
            title=source.title,
            preview=source.preview,
            image=source.image,
            user_id=user_id,
            chapters=source.chapters,
            age_range=source.age_range,
            length=source.length,
            mood=source.mood,
            story_id=source.story_id,
            invited=True,
        )
        return self.save_story_gist(invited)

    def save_story(self, story: Story, gist_id: str) -> Story:
        stored = copy.deepcopy(story)
        stored.id = stored.id or uuid.uuid4().hex
        self.stories[stored.id] = stored
        gist = self.gists.get(gist_id)
        if gist:
            gist.story_id = stored.id
        return copy.deepcopy(stored)

    def get_story(self, story_id: str) -> Optional[Story]:
        story = self.stories.get(story_id)
        return copy.deepcopy(story) if story else None

    def update_story(
        self, story_id: str, title: str, chapters: list[dict]
    ) -> Optional[Story]:
        story = self.stories.get(story_id)
        if not story:
            return None
        story.title = title
        story.chapters = copy.deepcopy(chapters)
        for gist in self.gists.values():
            if gist.story_id == story_id:
                gist.title = title
                gist.is_edited = True
        return copy.deepcopy(story)

    def delete_story(
        self, story_id: str
    ) -> Optional[tuple[list[StoryGist], Story]]:
        story = self.stories.pop(story_id, None)
        if not story:
            return None
        linked = [
            gist_id for gist_id, gist in self.gists.items() if gist.story_id == story_id
        ]
        gists = [self.gists.pop(gist_id) for gist_id in linked]
        return gists, story

    def replace_gist_image(self, old_url: str, new_url: str) -> list[str]:
        updated = []
        for gist in self.gists.values():
            if gist.image == old_url:
                gist.image = new_url
                updated.append(gist.id)
        return updated

    def replace_story_image(self, old_url: str, new_url: str) -> list[str]:
        updated = []
        for story in self.stories.values():
            if story.image == old_url:
                story.image = new_url
                updated.append(story.id)
        return updated

    def list_story_chapters(self) -> list[tuple[str, list[dict]]]:
        return [
            (story_id, copy.deepcopy(story.chapters))
            for story_id, story in self.stories.items()
        ]

    def update_story_chapters(self, story_id: str, chapters: list[dict]) -> bool:
        story = self.stories.get(story_id)
        if not story:
            return False
        story.chapters = copy.deepcopy(chapters)
        return True

    def list_image_urls(self) -> set[str]:
        urls: set[str] = set()
        for gist in self.gists.values():
            if gist.image:
                urls.add(gist.image)
        for story in self.stories.values():
            if story.image:
                urls.add(story.image)
            urls.update(
                chapter["image"] for chapter in story.chapters if chapter.get("image")
            )
        return urls

    def create_image_job(self, source_url: str, file_name: str) -> ImageJobRecord:
        job = ImageJobRecord(
            job_id=uuid.uuid4().hex,
            source_url=source_url,
            file_name=file_name,
            status=ImageJobStatus.WAITING,
        )
        self.image_jobs[job.job_id] = job
        return copy.copy(job)

    def get_image_job(self, job_id: str) -> Optional[ImageJobRecord]:
        job = self.image_jobs.get(job_id)
        return copy.copy(job) if job else None

    def _claim(self, job: ImageJobRecord) -> ImageJobRecord:
        now = time.time()
        job.status = ImageJobStatus.RUNNING
        job.locked_at = now
        job.updated_at = now
        return copy.copy(job)

    def claim_image_job(self, job_id: str) -> Optional[ImageJobRecord]:
        job = self.image_jobs.get(job_id)
        if not job or job.status != ImageJobStatus.WAITING:
            return None
        return self._claim(job)

    def claim_next_waiting_image_job(self) -> Optional[ImageJobRecord]:
        waiting = [
            job for job in self.image_jobs.values() if job.status == ImageJobStatus.WAITING
        ]
        if not waiting:
            return None
        return self._claim(min(waiting, key=lambda job: job.created_at))

    def update_image_job(
        self,
        job_id: str,
        *,
        status: Optional[ImageJobStatus] = None,
        attempts: Optional[int] = None,
        permanent_url: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        job = self.image_jobs.get(job_id)
        if not job:
            return
        if status:
            job.status = status
            if status in TERMINAL_JOB_STATUSES:
                job.locked_at = None
        if attempts is not None:
            job.attempts = attempts
        if permanent_url is not None:
            job.permanent_url = permanent_url
        if error is not None:
            job.error = error
        job.updated_at = time.time()

    def cancel_image_job(self, job_id: str) -> Optional[ImageJobRecord]:
        job = self.image_jobs.get(job_id)
        if not job:
            return None
        if job.status not in TERMINAL_JOB_STATUSES:
            job.status = ImageJobStatus.CANCELLED
            job.locked_at = None
            job.updated_at = time.time()
        return copy.copy(job)

    def requeue_stale_image_jobs(self, lock_timeout_seconds: float = 900) -> list[str]:
        now = time.time()
        requeued = []
        for job in self.image_jobs.values():
            if (
                job.status == ImageJobStatus.RUNNING
                and job.locked_at
                and now - job.locked_at > lock_timeout_seconds
            ):
                job.status = ImageJobStatus.WAITING
                job.locked_at = None
                job.updated_at = now
                requeued.append(job.job_id)
        return requeued


class PostgresDbClient:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for PostgresDbClient")
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    @staticmethod
    def _to_gist(row: "StoryGistRow") -> StoryGist:
        return StoryGist(
            id=row.id,
            title=row.title,
            preview=row.preview,
            image=row.image,
            user_id=row.user_id,
            chapters=list(row.chapters or []),
            age_range=row.age_range,
            length=row.length,
            mood=row.mood,
            story_id=row.story_id,
            is_edited=row.is_edited,
            invited=row.invited,
            inviting=row.inviting,
            created_at=row.created_at,
        )

    @staticmethod
    def _to_story(row: "StoryRow") -> Story:
        return Story(
            id=row.id,
            title=row.title,
            preview=row.preview,
            image=row.image,
            user_id=row.user_id,
            chapters=list(row.chapters or []),
            created_at=row.created_at,
        )

    @staticmethod
    def _to_job(row: "ImageJobRow") -> ImageJobRecord:
        return ImageJobRecord(
            job_id=row.job_id,
            source_url=row.source_url,
            file_name=row.file_name,
            status=ImageJobStatus(row.status),
            attempts=row.attempts,
            permanent_url=row.permanent_url,
            error=row.error,
            locked_at=row.locked_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def save_story_gist(self, gist: StoryGist) -> StoryGist:
        with self.Session() as session:
            row = StoryGistRow(
                id=gist.id or uuid.uuid4().hex,
                title=gist.title,
                preview=gist.preview,
                image=gist.image,
                user_id=gist.user_id,
                chapters=copy.deepcopy(gist.chapters),
                age_range=gist.age_range,
                length=gist.length,
                mood=gist.mood,
                story_id=gist.story_id,
                is_edited=gist.is_edited,
                invited=gist.invited,
                inviting=gist.inviting,
                created_at=gist.created_at,
            )
            session.add(row)
            session.commit()
            return self._to_gist(row)

    def get_gist(self, gist_id: str) -> Optional[StoryGist]:
        with self.Session() as session:
            row = session.get(StoryGistRow, gist_id)
            return self._to_gist(row) if row else None

    def get_gists(self, user_id: str) -> list[StoryGist]:
        with self.Session() as session:
            stmt = (
                select(StoryGistRow)
                .where(
                    StoryGistRow.user_id == user_id,
                    StoryGistRow.story_id.is_not(None),
                )
                .order_by(StoryGistRow.created_at.desc())
            )
            return [self._to_gist(row) for row in session.execute(stmt).scalars()]

    def get_titles(self, user_id: str) -> list[str]:
        with self.Session() as session:
            stmt = (
                select(StoryGistRow.title)
                .where(StoryGistRow.user_id == user_id)
                .order_by(StoryGistRow.created_at.desc())
            )
            return list(session.execute(stmt).scalars())

    def remove_gist(self, gist_id: str) -> bool:
        with self.Session() as session:
            row = session.get(StoryGistRow, gist_id)
            if not row:
                return False
            session.delete(row)
            session.commit()
            return True

    def mark_gist_inviting(self, gist_id: str) -> Optional[StoryGist]:
        with self.Session() as session:
            row = session.get(StoryGistRow, gist_id)
            if not row:
                return None
            row.inviting = True
            session.commit()
            return self._to_gist(row)

    def add_invited_story(self, gist_id: str, user_id: str) -> Optional[StoryGist]:
        source = self.mark_gist_inviting(gist_id)
        if not source:
            return None
        return self.save_story_gist(
            StoryGist(
                title=source.title,
                preview=source.preview,
                image=source.image,
                user_id=user_id,
                chapters=source.chapters,
                age_range=source.age_range,
                length=source.length,
                mood=source.mood,
                story_id=source.story_id,
                invited=True,
            )
        )

    def save_story(self, story: Story, gist_id: str) -> Story:
        with self.Session() as session:
            row = StoryRow(
                id=story.id or uuid.uuid4().hex,
                title=story.title,
                preview=story.preview,
                image=story.image,
                user_id=story.user_id,
                chapters=copy.deepcopy(story.chapters),
                created_at=story.created_at,
            )
            session.add(row)
            gist = session.get(StoryGistRow, gist_id)
            if gist:
                gist.story_id = row.id
            session.commit()
            return self._to_story(row)

    def get_story(self, story_id: str) -> Optional[Story]:
        with self.Session() as session:
            row = session.get(StoryRow, story_id)
            return self._to_story(row) if row else None

    def update_story(
        self, story_id: str, title: str, chapters: list[dict]
    ) -> Optional[Story]:
        with self.Session() as session:
            row = session.get(StoryRow, story_id)
            if not row:
                return None
            row.title = title
            row.chapters = copy.deepcopy(chapters)
            gists = session.execute(
                select(StoryGistRow).where(StoryGistRow.story_id == story_id)
            ).scalars()
            for gist in gists:
                gist.title = title
                gist.is_edited = True
            session.commit()
            return self._to_story(row)

    def delete_story(
        self, story_id: str
    ) -> Optional[tuple[list[StoryGist], Story]]:
        with self.Session() as session:
            row = session.get(StoryRow, story_id)
            if not row:
                return None
            gist_rows = list(
                session.execute(
                    select(StoryGistRow).where(StoryGistRow.story_id == story_id)
                ).scalars()
            )
            gists = [self._to_gist(gist) for gist in gist_rows]
            story = self._to_story(row)
            for gist in gist_rows:
                session.delete(gist)
            session.delete(row)
            session.commit()
            return gists, story

    def replace_gist_image(self, old_url: str, new_url: str) -> list[str]:
        with self.Session() as session:
            rows = list(
                session.execute(
                    select(StoryGistRow).where(StoryGistRow.image == old_url)
                ).scalars()
            )
            for row in rows:
                row.image = new_url
            session.commit()
            return [row.id for row in rows]

    def replace_story_image(self, old_url: str, new_url: str) -> list[str]:
        with self.Session() as session:
            rows = list(
                session.execute(
                    select(StoryRow).where(StoryRow.image == old_url)
                ).scalars()
            )
            for row in rows:
                row.image = new_url
            session.commit()
            return [row.id for row in rows]

    def list_story_chapters(self) -> list[tuple[str, list[dict]]]:
        with self.Session() as session:
            rows = session.execute(select(StoryRow.id, StoryRow.chapters)).all()
            return [(story_id, list(chapters or [])) for story_id, chapters in rows]

    def update_story_chapters(self, story_id: str, chapters: list[dict]) -> bool:
        with self.Session() as session:
            row = session.get(StoryRow, story_id)
            if not row:
                return False
            # Assign a new list so the JSON column is flagged dirty.
            row.chapters = copy.deepcopy(chapters)
            session.commit()
            return True

    def list_image_urls(self) -> set[str]:
        urls: set[str] = set()
        with self.Session() as session:
            urls.update(
                image
                for image in session.execute(select(StoryGistRow.image)).scalars()
                if image
            )
            for image, chapters in session.execute(
                select(StoryRow.image, StoryRow.chapters)
            ).all():
                if image:
                    urls.add(image)
                urls.update(
                    chapter["image"]
                    for chapter in chapters or []
                    if chapter.get("image")
                )
        return urls

    def create_image_job(self, source_url: str, file_name: str) -> ImageJobRecord:
        now = time.time()
        with self.Session() as session:
            row = ImageJobRow(
                job_id=uuid.uuid4().hex,
                source_url=source_url,
                file_name=file_name,
                status=ImageJobStatus.WAITING.value,
                attempts=0,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            return self._to_job(row)

    def get_image_job(self, job_id: str) -> Optional[ImageJobRecord]:
        with self.Session() as session:
            row = session.get(ImageJobRow, job_id)
            return self._to_job(row) if row else None

    def _claim_first(self, stmt: Any) -> Optional[ImageJobRecord]:
        now = time.time()
        with self.Session() as session:
            row = session.execute(
                stmt.limit(1).with_for_update(skip_locked=True)
            ).scalar_one_or_none()
            if not row:
                return None
            row.status = ImageJobStatus.RUNNING.value
            row.locked_at = now
            row.updated_at = now
            session.commit()
            return self._to_job(row)

    def claim_image_job(self, job_id: str) -> Optional[ImageJobRecord]:
        return self._claim_first(
            select(ImageJobRow).where(
                ImageJobRow.job_id == job_id,
                ImageJobRow.status == ImageJobStatus.WAITING.value,
            )
        )

    def claim_next_waiting_image_job(self) -> Optional[ImageJobRecord]:
        return self._claim_first(
            select(ImageJobRow)
            .where(ImageJobRow.status == ImageJobStatus.WAITING.value)
            .order_by(ImageJobRow.created_at.asc())
        )

    def update_image_job(
        self,
        job_id: str,
        *,
        status: Optional[ImageJobStatus] = None,
        attempts: Optional[int] = None,
        permanent_url: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        with self.Session() as session:
            row = session.get(ImageJobRow, job_id)
            if not row:
                return
            if status:
                row.status = status.value
                if status in TERMINAL_JOB_STATUSES:
                    row.locked_at = None
            if attempts is not None:
                row.attempts = attempts
            if permanent_url is not None:
                row.permanent_url = permanent_url
            if error is not None:
                row.error = error
            row.updated_at = time.time()
            session.commit()

    def cancel_image_job(self, job_id: str) -> Optional[ImageJobRecord]:
        terminal = {status.value for status in TERMINAL_JOB_STATUSES}
        with self.Session() as session:
            row = session.get(ImageJobRow, job_id)
            if not row:
                return None
            if row.status not in terminal:
                row.status = ImageJobStatus.CANCELLED.value
                row.locked_at = None
                row.updated_at = time.time()
                session.commit()
            return self._to_job(row)

    def requeue_stale_image_jobs(self, lock_timeout_seconds: float = 900) -> list[str]:
        cutoff = time.time() - lock_timeout_seconds
        with self.Session() as session:
            rows = (
                session.execute(
                    select(ImageJobRow)
                    .where(
                        ImageJobRow.status == ImageJobStatus.RUNNING.value,
                        ImageJobRow.locked_at.is_not(None),
                        ImageJobRow.locked_at < cutoff,
                    )
                    .with_for_update(skip_locked=True)
                )
                .scalars()
                .all()
            )
            now = time.time()
            job_ids = []
            for row in rows:
                row.status = ImageJobStatus.WAITING.value
                row.locked_at = None
                row.updated_at = now
                job_ids.append(row.job_id)
            session.commit()
            return job_ids


Base = declarative_base()


class StoryGistRow(Base):
    __tablename__ = "story_gists"

    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    preview = Column(String, nullable=False, default="")
    image = Column(String, nullable=True, index=True)
    chapters = Column(JSON, nullable=False, default=list)
    user_id = Column(String, nullable=False, index=True)
    age_range = Column(String, nullable=True)
    length = Column(String, nullable=True)
    mood = Column(String, nullable=True)
    story_id = Column(String, nullable=True, index=True)
    is_edited = Column("isEdited", Boolean, nullable=False, default=False)
    invited = Column(Boolean, nullable=False, default=False)
    inviting = Column(Boolean, nullable=False, default=False)
    created_at = Column(Float, nullable=False)


class StoryRow(Base):
    __tablename__ = "stories"

    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    preview = Column(String, nullable=False, default="")
    image = Column(String, nullable=True, index=True)
    chapters = Column(JSON, nullable=False, default=list)
    user_id = Column(String, nullable=False, index=True)
    created_at = Column(Float, nullable=False)


class ImageJobRow(Base):
    __tablename__ = "image_jobs"

    job_id = Column(String, primary_key=True)
    source_url = Column(String, nullable=False)
    file_name = Column(String, nullable=False)
    status = Column(String, nullable=False, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    permanent_url = Column(String, nullable=True)
    error = Column(String, nullable=True)
    locked_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)
