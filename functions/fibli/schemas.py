"""
Pydantic schemas for the story backend API.
"""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ChapterPayload(BaseModel):
    # Clients may attach extra per-chapter fields; they are stored as given.
    model_config = ConfigDict(extra="allow")

    title: str
    content: str = ""
    image: str = ""


class StoryGistPayload(BaseModel):
    title: str = Field(..., max_length=512)
    preview: str = ""
    image: str = ""
    user_id: str
    chapters: list[ChapterPayload] = Field(default_factory=list)
    age_range: Optional[str] = None
    length: Optional[str] = None
    mood: Optional[str] = None


class StoryGistResponse(BaseModel):
    id: str
    title: str
    preview: str
    image: str
    user_id: str
    chapters: list[dict]
    age_range: Optional[str] = None
    length: Optional[str] = None
    mood: Optional[str] = None
    story_id: Optional[str] = None
    is_edited: bool = False
    invited: bool = False
    inviting: bool = False
    created_at: float


class ListGistsResponse(BaseModel):
    gists: list[StoryGistResponse]


class TitlesResponse(BaseModel):
    titles: list[str]


class SaveStoryPayload(BaseModel):
    gist_id: str
    title: str = Field(..., max_length=512)
    preview: str = ""
    image: str = ""
    user_id: str
    chapters: list[ChapterPayload] = Field(default_factory=list)


class UpdateStoryPayload(BaseModel):
    title: str = Field(..., max_length=512)
    chapters: list[ChapterPayload]


class StoryResponse(BaseModel):
    id: str
    title: str
    preview: str
    image: str
    user_id: str
    chapters: list[dict]
    created_at: float


class DeleteStoryResponse(BaseModel):
    story_id: str
    deleted_gist_ids: list[str]
    removed_objects: list[str]


class StatusResponse(BaseModel):
    status: Literal["ok"]


class InviteResponse(BaseModel):
    success: bool
    story: Optional[StoryGistResponse] = None
    error: Optional[str] = None
    message: Optional[str] = None


class AcceptInvitePayload(BaseModel):
    gist_id: str
    user_id: str


class PersistImagePayload(BaseModel):
    source_url: str = Field(..., min_length=1)
    file_name: str = Field(..., min_length=1, max_length=512)


class GenerateImagePayload(BaseModel):
    prompt: str = Field(..., min_length=1, max_length=4000)
    file_name: str = Field(..., min_length=1, max_length=512)


class GenerateImageResponse(BaseModel):
    image_url: str
    job_id: str


class ImageJobResponse(BaseModel):
    job_id: str
    source_url: str
    file_name: str
    status: str
    attempts: int
    permanent_url: Optional[str] = None
    error: Optional[str] = None


class GenerationStateResponse(BaseModel):
    free_remaining: int
    purchased_uses: int
    is_subscribed: bool
    can_generate: bool


class ConsumeResponse(BaseModel):
    consumed: bool
    state: GenerationStateResponse


class PurchasePayload(BaseModel):
    product_id: str
    transaction_id: str
    transaction_date: float


class PurchaseResponse(BaseModel):
    success: bool
    credited: bool
    state: GenerationStateResponse


class RestorePurchasesPayload(BaseModel):
    purchases: list[PurchasePayload]
