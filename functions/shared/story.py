# Copyright 2025 Google LLC
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# ==============================================================================

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class StoryGist:
    """Library summary of a generated story."""

    title: str
    preview: str
    image: str
    user_id: str
    chapters: List[Dict[str, Any]] = field(default_factory=list)
    age_range: Optional[str] = None
    length: Optional[str] = None
    mood: Optional[str] = None
    id: Optional[str] = None
    story_id: Optional[str] = None
    is_edited: bool = False
    invited: bool = False
    inviting: bool = False
    created_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class Story:
    """Full content of a generated story."""

    title: str
    preview: str
    image: str
    user_id: str
    # Chapters are kept as stored objects so unknown keys survive rewrites.
    chapters: List[Dict[str, Any]] = field(default_factory=list)
    id: Optional[str] = None
    created_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        return asdict(self)


def image_urls(chapters: List[Dict[str, Any]]) -> List[str]:
    """Non-empty chapter image URLs in chapter order."""
    return [chapter["image"] for chapter in chapters if chapter.get("image")]
