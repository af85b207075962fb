"""Training photo upload endpoint.

POST /api/uploads takes exactly UPLOAD_PHOTO_COUNT images as multipart fields
photo1..photoN, zips them and stores the archive with the job provider. The
returned archive_url is the input for POST /api/jobs/training.
"""

from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel
from starlette.datastructures import UploadFile

from pixmuse.api.dependencies import (
    get_current_account,
    get_job_client,
    get_settings,
    get_uow_factory,
)
from pixmuse.core.config import Settings
from pixmuse.models.account import Account
from pixmuse.services.providers.base import ExternalJobClient
from pixmuse.services.uploads import PhotoFile, store_upload, validate_photos

logger = structlog.get_logger()
router = APIRouter(prefix="/api/uploads", tags=["uploads"])


class UploadResponse(BaseModel):
    upload_id: UUID
    archive_url: str
    file_count: int


@router.post("", response_model=UploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_photos(
    request: Request,
    account: Account = Depends(get_current_account),
    settings: Settings = Depends(get_settings),
    job_client: ExternalJobClient = Depends(get_job_client),
    uow_factory=Depends(get_uow_factory),
) -> UploadResponse:
    """Archive the training photos and hand them to the provider.

    Raises:
        400: Wrong number of photos, non-image file, or file too large
    """
    form = await request.form()
    photos: list[PhotoFile] = []
    for index in range(1, settings.upload_photo_count + 1):
        field = form.get(f"photo{index}")
        if isinstance(field, UploadFile):
            photos.append(
                PhotoFile(
                    filename=field.filename or f"photo{index}",
                    content_type=field.content_type or "",
                    data=await field.read(),
                )
            )

    validate_photos(photos, settings.upload_photo_count, settings.upload_max_photo_bytes)

    async with await uow_factory() as uow:
        upload = await store_upload(uow, job_client, account.id, photos)

    return UploadResponse(
        upload_id=upload.id, archive_url=upload.archive_url, file_count=upload.file_count
    )
