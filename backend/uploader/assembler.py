# uploader/assembler.py
import logging
from typing import List, Optional, Sequence

import httpx
from pydantic import BaseModel

from config import UploadPolicy
from models.upload_models import AssetKind, SubmissionRequest, SubmissionResponse, SubmittedAsset
from models.upload_state import UploadResult, UploadTarget
from services.exceptions import BrokerResponseError, BrokerUnreachableError, PolicyViolationError
from uploader.coordinator import UploadCoordinator

logger = logging.getLogger(__name__)


class SubmissionOutcome(BaseModel):
    results: List[UploadResult]
    submission: Optional[SubmissionResponse] = None
    error: Optional[str] = None

    @property
    def failed(self) -> List[UploadResult]:
        return [r for r in self.results if not r.ok]


class SubmissionAssembler:
    """Uploads a form's media and posts the resulting storage keys"""

    def __init__(self, coordinator: UploadCoordinator, client: httpx.AsyncClient,
                 base_url: str, policy: Optional[UploadPolicy] = None):
        self.coordinator = coordinator
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.policy = policy or coordinator.policy

    def _check_counts(self, images: Sequence[UploadTarget], videos: Sequence[UploadTarget]) -> None:
        if len(images) > self.policy.max_images:
            raise PolicyViolationError(f"At most {self.policy.max_images} images are allowed")
        if len(videos) > self.policy.max_videos:
            raise PolicyViolationError(f"At most {self.policy.max_videos} videos are allowed")

    async def submit(
        self,
        name: str,
        images: Sequence[UploadTarget] = (),
        videos: Sequence[UploadTarget] = (),
        require_all: bool = False,
    ) -> SubmissionOutcome:
        """Upload all media concurrently, then record the successful keys.

        Failed targets are left out of the posted record. With `require_all`,
        nothing is posted if any target failed. If posting itself fails the
        upload results are still returned, with `error` set.
        """
        if not name or not name.strip():
            raise PolicyViolationError("Name is required")
        self._check_counts(images, videos)

        targets = list(images) + list(videos)
        results = await self.coordinator.upload_all(targets)

        failed = [r for r in results if not r.ok]
        for r in failed:
            logger.warning(f"Excluding {r.filename} from submission: {r.reason}")
        if failed and require_all:
            return SubmissionOutcome(results=results)

        request = SubmissionRequest(
            name=name,
            images=self._assets(results, AssetKind.IMAGE),
            videos=self._assets(results, AssetKind.VIDEO),
        )
        try:
            submission = await self._post_submission(request)
        except (BrokerUnreachableError, BrokerResponseError) as e:
            logger.error(f"Submission for {len(results) - len(failed)} assets failed ({e.reason}): {e}")
            return SubmissionOutcome(results=results, error=str(e))

        logger.info(f"Submission recorded: id={submission.id}, assets={len(results) - len(failed)}")
        return SubmissionOutcome(results=results, submission=submission)

    async def _post_submission(self, request: SubmissionRequest) -> SubmissionResponse:
        try:
            response = await self.client.post(
                f"{self.base_url}/submit", json=request.model_dump(by_alias=True)
            )
        except httpx.TransportError as e:
            raise BrokerUnreachableError(f"Submission request failed: {e}") from e

        if not response.is_success:
            raise BrokerResponseError(f"Submission rejected with status {response.status_code}")
        try:
            return SubmissionResponse.model_validate(response.json())
        except ValueError as e:
            raise BrokerResponseError("Unexpected submission response") from e

    @staticmethod
    def _assets(results: Sequence[UploadResult], kind: AssetKind) -> List[SubmittedAsset]:
        # order is the position in the submitted list, so gaps mark failed uploads
        same_kind = [r for r in results if r.category == kind]
        return [
            SubmittedAsset(key=r.storage_key, original_filename=r.filename, order=order)
            for order, r in enumerate(same_kind)
            if r.ok
        ]
