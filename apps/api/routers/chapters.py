"""Chapter markers for remote videos."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from models.user import User
from routers.auth_scope import get_current_user
from routers.rate_limit import rate_limit
from services.chapters import generate_video_chapters

router = APIRouter()


class ChaptersRequest(BaseModel):
    url: str = Field(min_length=8, max_length=2048)


@router.post("")
async def create_chapters(
    body: ChaptersRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    _rate_limit: None = Depends(rate_limit("chapters", limit=settings.CHAPTERS_RATE_LIMIT, window_seconds=3600)),
):
    """Download, transcribe and outline a video, charging credits for its length."""
    return await generate_video_chapters(body.url, user_id=user.id, db=db)
