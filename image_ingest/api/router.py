from fastapi import APIRouter

from image_ingest.api.endpoints import images

router = APIRouter()
router.include_router(images.router, tags=["images"])
