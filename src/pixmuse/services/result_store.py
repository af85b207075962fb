"""Durable persistence of job outputs, queryable by owning account."""

from uuid import UUID

import structlog

from pixmuse.models.generated_image import GeneratedImage
from pixmuse.models.trained_model import TrainedModel
from pixmuse.uow import UnitOfWork

logger = structlog.get_logger(__name__)

MODEL_NAME_PREFIX = "model"


def model_name(sequence_number: int) -> str:
    return f"{MODEL_NAME_PREFIX}{sequence_number}"


class ResultStore:
    """Writes trained models and generated images inside the caller's Unit of Work."""

    async def save_model(
        self,
        uow: UnitOfWork,
        account_id: UUID,
        weights_url: str,
        config_url: str,
        training_data_url: str | None = None,
        job_id: UUID | None = None,
    ) -> TrainedModel:
        """Persist a trained model under the account's next sequence name.

        The (account_id, sequence_number) unique constraint rejects a
        concurrent writer that computed the same number.
        """
        sequence_number = await uow.trained_models.next_sequence_number(account_id)
        model = await uow.trained_models.add(
            TrainedModel(
                account_id=account_id,
                sequence_number=sequence_number,
                name=model_name(sequence_number),
                weights_url=weights_url,
                config_url=config_url,
                training_data_url=training_data_url,
                job_id=job_id,
            )
        )
        logger.info(
            "results.model_saved",
            account_id=str(account_id),
            model_id=str(model.id),
            name=model.name,
        )
        return model

    async def save_generated_images(
        self,
        uow: UnitOfWork,
        account_id: UUID,
        model_id: UUID,
        prompt: str,
        image_urls: list[str],
        job_id: UUID | None = None,
    ) -> list[GeneratedImage]:
        """Persist one row per image; all rows commit or roll back together."""
        if not image_urls:
            raise ValueError("At least one image URL is required")
        images = await uow.generated_images.add_many(
            [
                GeneratedImage(
                    account_id=account_id,
                    model_id=model_id,
                    job_id=job_id,
                    prompt=prompt,
                    image_url=url,
                )
                for url in image_urls
            ]
        )
        logger.info(
            "results.images_saved",
            account_id=str(account_id),
            model_id=str(model_id),
            count=len(images),
        )
        return images

    async def list_models(self, uow: UnitOfWork, account_id: UUID) -> list[TrainedModel]:
        return await uow.trained_models.list_for_account(account_id)

    async def list_artifacts(
        self, uow: UnitOfWork, account_id: UUID
    ) -> list[tuple[GeneratedImage, str | None]]:
        return await uow.generated_images.list_for_account(account_id)
