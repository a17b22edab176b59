from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from payledger.db.session import SessionLocal
from payledger.services import user_service

router = APIRouter()


async def get_db():
    async with SessionLocal() as db:
        yield db


@router.post("/register")
async def register_user(
    telegram_id: Optional[int] = None, db: AsyncSession = Depends(get_db)
):
    """Register a user; with a Telegram ID the call is idempotent."""
    if telegram_id is not None:
        user = await user_service.get_user_by_telegram_id(db, telegram_id)
        if user:
            return {"message": "User already exists", "id": user.id}

    new_user = await user_service.create_user(db, telegram_id)
    return {"message": "User registered", "id": new_user.id}
