from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

router = APIRouter(tags=["sample"])


@router.get("/", response_class=PlainTextResponse)
async def hello() -> str:
    """Sample rate-limited route."""
    return "Hello, World!"
