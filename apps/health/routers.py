# health/routers.py
from fastapi import APIRouter

router = APIRouter()


@router.get("/")
async def root():
    return {"message": "storage api"}


@router.get("/health")
async def health():
    return {"status": "ok"}
