from typing import Annotated, List

from fastapi import APIRouter, Depends, Request

from app.core import schemas
from app.core.generation.pipeline import GenerationPipeline
from app.core.generation.products import list_products

router = APIRouter(tags=["Generation"])


def get_pipeline(request: Request) -> GenerationPipeline:
    """The pipeline built in the application lifespan."""
    return request.app.state.pipeline


pipeline_dep = Annotated[GenerationPipeline, Depends(get_pipeline)]


@router.post("/generate", response_model=schemas.GenerateResponse)
async def generate(payload: schemas.GenerateRequest, pipeline: pipeline_dep):
    """
    Generate code for one screen or backend resource.
    Always answers 200 with a status of success / partial_success / failed;
    malformed request bodies are rejected with 422 before the pipeline runs.
    """
    return await pipeline.generate(payload)


@router.get("/products", response_model=List[schemas.ProductInfo])
async def products():
    """Products this service can generate, with their kinds, input types and output slots."""
    return list_products()
