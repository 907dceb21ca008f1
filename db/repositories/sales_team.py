"""Sales team roster repository, keyed by chat-platform user id."""
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from db.connection import translate_db_errors
from db.models import SalesTeamMember
from errors import ValidationError
from utils.email_parser import is_valid_email, normalize_email

ROLES = ("admin", "sales")
MEMBER_STATUSES = ("active", "inactive")
VIEWER = "viewer"


@translate_db_errors
async def get_member(session: AsyncSession, chat_user_id: str) -> Optional[SalesTeamMember]:
    return await session.get(SalesTeamMember, chat_user_id)


@translate_db_errors
async def get_by_email(session: AsyncSession, email: str) -> Optional[SalesTeamMember]:
    result = await session.execute(
        select(SalesTeamMember).where(SalesTeamMember.email == normalize_email(email))
    )
    return result.scalar_one_or_none()


@translate_db_errors
async def list_members(session: AsyncSession, active_only: bool = False) -> List[SalesTeamMember]:
    stmt = select(SalesTeamMember).order_by(SalesTeamMember.name)
    if active_only:
        stmt = stmt.where(SalesTeamMember.status == "active")
    result = await session.execute(stmt)
    return list(result.scalars().all())


@translate_db_errors
async def upsert(session: AsyncSession, chat_user_id: str, data: Dict[str, Any]) -> SalesTeamMember:
    """Insert or update a roster entry.

    data keys: name, email, role, status. Unknown keys are ignored.
    """
    values = {k: data[k] for k in ("name", "email", "role", "status") if data.get(k) is not None}
    if "email" in values:
        values["email"] = normalize_email(values["email"])
        if not is_valid_email(values["email"]):
            raise ValidationError(f"Invalid email: {data['email']}")
    if values.get("role", "sales") not in ROLES:
        raise ValidationError(f"role must be one of: {', '.join(ROLES)}")
    if values.get("status", "active") not in MEMBER_STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(MEMBER_STATUSES)}")

    if "email" in values:
        holder = await get_by_email(session, values["email"])
        if holder is not None and holder.chat_user_id != chat_user_id:
            raise ValidationError(f"Email already belongs to {holder.chat_user_id}")

    existing = await session.get(SalesTeamMember, chat_user_id)
    if existing is not None:
        for key, value in values.items():
            setattr(existing, key, value)
        await session.flush()
        return existing

    if not values.get("name"):
        raise ValidationError("name is required for a new team member")

    # A concurrent insert of the same id turns into an update
    insert = sqlite_insert if session.bind.dialect.name == "sqlite" else pg_insert
    stmt = (
        insert(SalesTeamMember)
        .values(chat_user_id=chat_user_id, **values)
        .on_conflict_do_update(index_elements=["chat_user_id"], set_=values)
    )
    await session.execute(stmt)
    return await session.get(SalesTeamMember, chat_user_id, populate_existing=True)


async def resolve_role(
    session: AsyncSession, email: Optional[str], admin_emails: Iterable[str] = ()
) -> Tuple[str, Optional[SalesTeamMember]]:
    """Role for a dashboard user: active roster role, then ADMIN_EMAILS, else viewer.

    Returns (role, roster member or None).
    """
    if not email:
        return VIEWER, None
    email = normalize_email(email)
    member = await get_by_email(session, email)
    if member is not None and member.status == "active":
        return member.role, member
    if email in set(admin_emails):
        return "admin", member
    return VIEWER, member
