"""User directory API (assignee picker)."""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ticketdesk.deps import get_db
from ticketdesk.schemas.ticket import UserOut
from ticketdesk.storage.repositories import user_list

router = APIRouter(prefix="/api/users", tags=["users"])


@router.get("", response_model=list[UserOut])
async def list_users(session: AsyncSession = Depends(get_db)):
    users = await user_list(session)
    return [UserOut(id=u.id, name=u.name, email=u.email) for u in users]
