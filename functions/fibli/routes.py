"""
HTTP routes for the story backend API.
"""

from __future__ import annotations

import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query

from fibli.db import DbClient, ImageJobRecord
from fibli.dependencies import (
    get_db_client,
    get_image_generator,
    get_ledger,
    get_queue_client,
    get_storage_client,
)
from fibli.entitlements import (
    GenerationLedger,
    GenerationLimitReached,
    KeyValueStoreError,
    UnknownProductError,
)
from fibli.generation import ImageGenerationError, ImageGenerator
from fibli.queue import JobQueue
from fibli.schemas import (
    AcceptInvitePayload,
    ConsumeResponse,
    DeleteStoryResponse,
    GenerateImagePayload,
    GenerateImageResponse,
    GenerationStateResponse,
    ImageJobResponse,
    InviteResponse,
    ListGistsResponse,
    PersistImagePayload,
    PurchasePayload,
    PurchaseResponse,
    RestorePurchasesPayload,
    SaveStoryPayload,
    StatusResponse,
    StoryGistPayload,
    StoryGistResponse,
    StoryResponse,
    TitlesResponse,
    UpdateStoryPayload,
)
from fibli.storage import StorageClient
from fibli.worker import schedule_image_persistence
from shared.story import Story, StoryGist, image_urls
from shared.types import Purchase

logger = logging.getLogger(__name__)

router = APIRouter()


def _gist_response(gist: StoryGist) -> StoryGistResponse:
    return StoryGistResponse(**asdict(gist))


def _story_response(story: Story) -> StoryResponse:
    return StoryResponse(**asdict(story))


def _job_response(job: ImageJobRecord) -> ImageJobResponse:
    return ImageJobResponse(
        job_id=job.job_id,
        source_url=job.source_url,
        file_name=job.file_name,
        status=job.status.value,
        attempts=job.attempts,
        permanent_url=job.permanent_url,
        error=job.error,
    )


def _state_response(ledger: GenerationLedger) -> GenerationStateResponse:
    state = ledger.get_state()
    return GenerationStateResponse(
        free_remaining=state.free_remaining,
        purchased_uses=state.purchased_uses,
        is_subscribed=state.is_subscribed,
        can_generate=state.can_generate,
    )


# Story gists


@router.post("/story-gists", response_model=StoryGistResponse, status_code=201)
def save_story_gist(
    payload: StoryGistPayload, db: DbClient = Depends(get_db_client)
):
    gist = StoryGist(
        title=payload.title,
        preview=payload.preview,
        image=payload.image,
        user_id=payload.user_id,
        chapters=[chapter.model_dump() for chapter in payload.chapters],
        age_range=payload.age_range,
        length=payload.length,
        mood=payload.mood,
    )
    return _gist_response(db.save_story_gist(gist))


@router.get("/story-gists", response_model=ListGistsResponse)
def list_story_gists(
    user_id: str = Query(..., min_length=1), db: DbClient = Depends(get_db_client)
):
    return ListGistsResponse(gists=[_gist_response(g) for g in db.get_gists(user_id)])


@router.get("/story-gists/titles", response_model=TitlesResponse)
def list_titles(
    user_id: str = Query(..., min_length=1), db: DbClient = Depends(get_db_client)
):
    return TitlesResponse(titles=db.get_titles(user_id))


@router.delete("/story-gists/{gist_id}", response_model=StatusResponse)
def remove_story_gist(gist_id: str, db: DbClient = Depends(get_db_client)):
    if not db.remove_gist(gist_id):
        raise HTTPException(status_code=404, detail="Story gist not found")
    return StatusResponse(status="ok")


# Stories


@router.post("/stories", response_model=StoryResponse, status_code=201)
def save_story(payload: SaveStoryPayload, db: DbClient = Depends(get_db_client)):
    if not db.get_gist(payload.gist_id):
        raise HTTPException(status_code=404, detail="Story gist not found")
    story = Story(
        title=payload.title,
        preview=payload.preview,
        image=payload.image,
        user_id=payload.user_id,
        chapters=[chapter.model_dump() for chapter in payload.chapters],
    )
    return _story_response(db.save_story(story, payload.gist_id))


@router.get("/stories/{story_id}", response_model=StoryResponse)
def get_story(story_id: str, db: DbClient = Depends(get_db_client)):
    story = db.get_story(story_id)
    if not story:
        raise HTTPException(status_code=404, detail="Story not found")
    return _story_response(story)


@router.put("/stories/{story_id}", response_model=StoryResponse)
def update_story(
    story_id: str,
    payload: UpdateStoryPayload,
    db: DbClient = Depends(get_db_client),
):
    story = db.update_story(
        story_id,
        payload.title,
        [chapter.model_dump() for chapter in payload.chapters],
    )
    if not story:
        raise HTTPException(status_code=404, detail="Story not found")
    return _story_response(story)


@router.delete("/stories/{story_id}", response_model=DeleteStoryResponse)
def delete_story(
    story_id: str,
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
):
    deleted = db.delete_story(story_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Story not found")
    gists, story = deleted

    urls = [gist.image for gist in gists] + [story.image] + image_urls(story.chapters)
    # Temporary generation URLs have no stored object behind them.
    paths = sorted(
        {path for path in (storage.path_from_public_url(url) for url in urls if url) if path}
    )
    if paths:
        try:
            storage.delete_objects(paths)
        except Exception as exc:
            logger.exception("Failed to remove images for story %s: %s", story_id, exc)
            paths = []
    return DeleteStoryResponse(
        story_id=story_id,
        deleted_gist_ids=[gist.id for gist in gists],
        removed_objects=paths,
    )


# Invites


@router.get("/invite", response_model=InviteResponse, response_model_exclude_none=True)
def invite(
    code: str | None = Query(None),
    db: DbClient = Depends(get_db_client),
):
    """
    Mark the story gist behind an invite code as being shared.
    """
    if not code:
        return InviteResponse(success=False, message="Missing code parameter")
    try:
        gist = db.mark_gist_inviting(code)
    except Exception as exc:
        logger.exception("Invite lookup failed for %s: %s", code, exc)
        return InviteResponse(success=False, error=str(exc))
    if not gist:
        return InviteResponse(success=False, error="Story not found")
    return InviteResponse(success=True, story=_gist_response(gist))


@router.get("/invite/preview", response_model=StoryGistResponse)
def preview_invite(
    code: str = Query(..., min_length=1), db: DbClient = Depends(get_db_client)
):
    gist = db.get_gist(code.strip())
    if not gist:
        raise HTTPException(status_code=404, detail="Invite code not found")
    return _gist_response(gist)


@router.post("/invite/accept", response_model=StoryGistResponse, status_code=201)
def accept_invite(
    payload: AcceptInvitePayload, db: DbClient = Depends(get_db_client)
):
    gist = db.add_invited_story(payload.gist_id, payload.user_id)
    if not gist:
        raise HTTPException(status_code=404, detail="Invite code not found")
    return _gist_response(gist)


# Images


@router.post("/images/persist", response_model=ImageJobResponse, status_code=202)
def persist_image(
    payload: PersistImagePayload,
    db: DbClient = Depends(get_db_client),
    queue: JobQueue = Depends(get_queue_client),
):
    """
    Queue a temporary image URL for durable storage. The worker does the rest.
    """
    job = schedule_image_persistence(
        payload.source_url, payload.file_name, db=db, queue=queue
    )
    return _job_response(job)


@router.post(
    "/images/generate", response_model=GenerateImageResponse, status_code=202
)
def generate_image(
    payload: GenerateImagePayload,
    db: DbClient = Depends(get_db_client),
    queue: JobQueue = Depends(get_queue_client),
    generator: ImageGenerator = Depends(get_image_generator),
):
    try:
        image_url = generator.generate(payload.prompt)
    except ImageGenerationError as exc:
        logger.error("Image generation failed: %s", exc)
        raise HTTPException(status_code=502, detail="Image generation failed")
    job = schedule_image_persistence(image_url, payload.file_name, db=db, queue=queue)
    return GenerateImageResponse(image_url=image_url, job_id=job.job_id)


@router.get("/images/jobs/{job_id}", response_model=ImageJobResponse)
def image_job_status(job_id: str, db: DbClient = Depends(get_db_client)):
    job = db.get_image_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return _job_response(job)


@router.post("/images/jobs/{job_id}/cancel", response_model=ImageJobResponse)
def cancel_image_job(job_id: str, db: DbClient = Depends(get_db_client)):
    job = db.cancel_image_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return _job_response(job)


# Entitlements


@router.get(
    "/entitlements/{installation_id}", response_model=GenerationStateResponse
)
def get_entitlements(ledger: GenerationLedger = Depends(get_ledger)):
    return _state_response(ledger)


@router.post(
    "/entitlements/{installation_id}/consume", response_model=ConsumeResponse
)
def consume_generation(ledger: GenerationLedger = Depends(get_ledger)):
    try:
        consumed = ledger.consume_if_allowed()
    except GenerationLimitReached:
        raise HTTPException(status_code=402, detail="No generations remaining")
    return ConsumeResponse(consumed=consumed, state=_state_response(ledger))


@router.post(
    "/entitlements/{installation_id}/purchases", response_model=PurchaseResponse
)
def record_purchase(
    payload: PurchasePayload, ledger: GenerationLedger = Depends(get_ledger)
):
    purchase = Purchase(**payload.model_dump())
    try:
        credited = ledger.record_purchase(purchase)
    except UnknownProductError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except KeyValueStoreError as exc:
        logger.error("Error handling purchase %s: %s", purchase.transaction_id, exc)
        raise HTTPException(status_code=503, detail="Purchase could not be recorded")
    return PurchaseResponse(
        success=True, credited=credited, state=_state_response(ledger)
    )


@router.post(
    "/entitlements/{installation_id}/restore",
    response_model=GenerationStateResponse,
)
def restore_purchases(
    payload: RestorePurchasesPayload, ledger: GenerationLedger = Depends(get_ledger)
):
    purchases = [Purchase(**item.model_dump()) for item in payload.purchases]
    try:
        ledger.restore_purchases(purchases)
    except KeyValueStoreError as exc:
        logger.error("Error restoring purchases: %s", exc)
        raise HTTPException(status_code=503, detail="Purchases could not be restored")
    return _state_response(ledger)
