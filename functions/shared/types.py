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

from dataclasses import dataclass
from enum import StrEnum


class ImageJobStatus(StrEnum):
    WAITING = "WAITING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


# Jobs in these states will not be picked up again by a worker.
TERMINAL_JOB_STATUSES = frozenset(
    {ImageJobStatus.SUCCESS, ImageJobStatus.FAILED, ImageJobStatus.CANCELLED}
)


@dataclass
class GenerationState:
    """Snapshot of what an installation may still generate."""

    free_remaining: int
    purchased_uses: int
    is_subscribed: bool

    @property
    def can_generate(self) -> bool:
        return self.free_remaining > 0 or self.purchased_uses > 0 or self.is_subscribed


@dataclass
class Purchase:
    """A purchase as reported by the store platform."""

    product_id: str
    transaction_id: str
    # Unix timestamp in seconds.
    transaction_date: float
