"""Training photo intake: validate, zip in memory, hand to the provider."""

import io
import time
import zipfile
from dataclasses import dataclass
from uuid import UUID

import structlog

from pixmuse.models.upload import Upload
from pixmuse.services.exceptions import JobValidationError
from pixmuse.services.providers.base import ExternalJobClient
from pixmuse.uow import UnitOfWork

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PhotoFile:
    filename: str
    content_type: str
    data: bytes


def validate_photos(photos: list[PhotoFile], expected_count: int, max_bytes: int) -> None:
    """Check count, content type and size of the submitted photos.

    Raises:
        JobValidationError: On the first violated rule
    """
    if len(photos) != expected_count:
        raise JobValidationError(f"Exactly {expected_count} photos are required")

    for photo in photos:
        if not (photo.content_type or "").startswith("image/"):
            raise JobValidationError(f"{photo.filename}: only image files are allowed")
        if not photo.data:
            raise JobValidationError(f"{photo.filename}: file is empty")
        if len(photo.data) > max_bytes:
            raise JobValidationError(
                f"{photo.filename}: file exceeds maximum size of {max_bytes} bytes"
            )


def build_archive(photos: list[PhotoFile]) -> bytes:
    """Zip photos in memory; entries are numbered to avoid name collisions."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as archive:
        for index, photo in enumerate(photos, start=1):
            name = photo.filename.rsplit("/", 1)[-1] or "photo"
            archive.writestr(f"{index:02d}_{name}", photo.data)
    return buffer.getvalue()


async def store_upload(
    uow: UnitOfWork,
    job_client: ExternalJobClient,
    account_id: UUID,
    photos: list[PhotoFile],
) -> Upload:
    """Archive photos, upload them through the job client and record the upload.

    Returns:
        Persisted Upload whose archive_url is the training input reference
    """
    data = build_archive(photos)
    filename = f"training_{account_id.hex[:8]}_{int(time.time() * 1000)}.zip"
    archive_url = await job_client.upload_archive(data, filename)

    upload = await uow.uploads.add(
        Upload(account_id=account_id, file_count=len(photos), archive_url=archive_url)
    )
    logger.info(
        "upload.stored",
        account_id=str(account_id),
        upload_id=str(upload.id),
        file_count=len(photos),
        archive_bytes=len(data),
    )
    return upload
