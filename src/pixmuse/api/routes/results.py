"""Result query endpoints.

- GET /api/models - Trained models of the caller, newest first
- GET /api/images - Generated images of the caller with the model name, newest first
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from pixmuse.api.dependencies import get_current_account
from pixmuse.core.dependencies import get_uow
from pixmuse.models.account import Account
from pixmuse.services.result_store import ResultStore
from pixmuse.uow import UnitOfWork

router = APIRouter(prefix="/api", tags=["results"])


class TrainedModelDTO(BaseModel):
    id: UUID
    name: str = Field(..., description="Per-account sequence name (model1, model2, ...)")
    weights_url: str
    config_url: str
    training_data_url: str | None = None
    created_at: datetime


class GeneratedImageDTO(BaseModel):
    id: UUID
    model_id: UUID
    model_name: str | None = None
    prompt: str
    image_url: str
    created_at: datetime


def get_result_store(request: Request) -> ResultStore:
    return request.app.state.result_store


@router.get("/models", response_model=list[TrainedModelDTO])
async def list_models(
    account: Account = Depends(get_current_account),
    uow: UnitOfWork = Depends(get_uow),
    result_store: ResultStore = Depends(get_result_store),
) -> list[TrainedModelDTO]:
    models = await result_store.list_models(uow, account.id)
    return [
        TrainedModelDTO(
            id=model.id,
            name=model.name,
            weights_url=model.weights_url,
            config_url=model.config_url,
            training_data_url=model.training_data_url,
            created_at=model.created_at,
        )
        for model in models
    ]


@router.get("/images", response_model=list[GeneratedImageDTO])
async def list_images(
    account: Account = Depends(get_current_account),
    uow: UnitOfWork = Depends(get_uow),
    result_store: ResultStore = Depends(get_result_store),
) -> list[GeneratedImageDTO]:
    rows = await result_store.list_artifacts(uow, account.id)
    return [
        GeneratedImageDTO(
            id=image.id,
            model_id=image.model_id,
            model_name=name,
            prompt=image.prompt,
            image_url=image.image_url,
            created_at=image.created_at,
        )
        for image, name in rows
    ]
