"""Upload repository for PixMuse backend."""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pixmuse.models.upload import Upload


class UploadRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, upload: Upload) -> Upload:
        self.session.add(upload)
        await self.session.flush()
        return upload

    async def get_for_account(self, upload_id: UUID, account_id: UUID) -> Upload | None:
        result = await self.session.execute(
            select(Upload).where(Upload.id == upload_id, Upload.account_id == account_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()
