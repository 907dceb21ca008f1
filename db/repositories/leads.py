"""Lead repository: dedup gate, optimistic-lock status transitions, dashboard queries."""
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from loguru import logger
from sqlalchemy import asc, desc, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from db.connection import translate_db_errors
from db.models import TRANSITIONS, Lead, LeadStatus, utcnow
from db.repositories import status_history as history_repo
from errors import (
    DuplicateLeadError,
    InvalidTransitionError,
    LeadNotFoundError,
    NotLeadOwnerError,
    RaceConditionError,
    ValidationError,
)
from utils.email_parser import build_dedup_key, normalize_email, normalize_source
from utils.lead_id import generate_lead_uuid

CONTACT_FIELDS = frozenset({
    "row_number",
    "email",
    "lead_source",
    "customer_name",
    "phone",
    "company",
    "job_title",
    "city",
    "website",
    "source",
    "campaign_id",
    "campaign_name",
    "email_subject",
    "contact_id",
    "event_id",
    "clicked_at",
})

ENRICHMENT_FIELDS = frozenset({
    "industry",
    "company_type",
    "talking_point",
    "registered_capital",
    "keywords",
    "confidence",
    "website",
    "juristic_id",
    "sector_code",
    "province",
    "full_address",
})

SORT_COLUMNS = {
    "created_at": Lead.created_at,
    "company": Lead.company,
    "status": Lead.status,
    "owner_name": Lead.owner_name,
}

UNASSIGNED = "unassigned"
MAX_PAGE_SIZE = 100


def _insert_for(session: AsyncSession):
    if session.bind.dialect.name == "sqlite":
        return sqlite_insert
    return pg_insert


def escape_like(text: str) -> str:
    """Escape LIKE wildcards so user input matches literally (escape char ``\\``)."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def coerce_status(value: Union[str, LeadStatus]) -> LeadStatus:
    try:
        return LeadStatus(value)
    except ValueError:
        allowed = ", ".join(s.value for s in LeadStatus)
        raise ValidationError(f"Unknown status {value!r}; expected one of: {allowed}")


@translate_db_errors
async def create_if_absent(session: AsyncSession, lead_fields: Dict[str, Any]) -> Lead:
    """Insert a new Lead unless one already exists for (email, lead_source).

    The check and the insert are one statement against the unique index, so
    concurrent deliveries of the same click cannot both create a row.

    Raises:
        DuplicateLeadError: the pair already has a Lead.
        ValidationError: email is missing.
        TransientInfrastructureError: the database could not be reached.
    """
    values = {k: v for k, v in lead_fields.items() if k in CONTACT_FIELDS}
    values["email"] = normalize_email(values.get("email", ""))
    if not values["email"]:
        raise ValidationError("email is required")
    values["lead_source"] = normalize_source(values.get("lead_source"))

    now = utcnow()
    values.update(
        id=generate_lead_uuid(),
        status=LeadStatus.NEW.value,
        version=1,
        created_at=now,
        updated_at=now,
    )

    stmt = (
        _insert_for(session)(Lead)
        .values(**values)
        .on_conflict_do_nothing(index_elements=["email", "lead_source"])
        .returning(Lead)
    )
    result = await session.execute(stmt, execution_options={"populate_existing": True})
    lead = result.scalar_one_or_none()
    if lead is None:
        logger.info(f"Duplicate lead skipped: {build_dedup_key(values['email'], values['lead_source'])}")
        raise DuplicateLeadError(values["email"], values["lead_source"])

    await session.flush()
    logger.info(f"Lead created: {lead.id} ({values['email']}, {values['lead_source']})")
    return lead


@translate_db_errors
async def get_lead(session: AsyncSession, lead_id: str) -> Optional[Lead]:
    result = await session.execute(select(Lead).where(Lead.id == lead_id))
    return result.scalar_one_or_none()


@translate_db_errors
async def get_by_row_number(session: AsyncSession, row_number: int) -> Optional[Lead]:
    result = await session.execute(select(Lead).where(Lead.row_number == row_number))
    return result.scalar_one_or_none()


@translate_db_errors
async def get_by_email(session: AsyncSession, email: str, lead_source: Optional[str] = None) -> Optional[Lead]:
    stmt = select(Lead).where(Lead.email == normalize_email(email))
    if lead_source is not None:
        stmt = stmt.where(Lead.lead_source == normalize_source(lead_source))
    result = await session.execute(stmt.order_by(Lead.created_at.desc()).limit(1))
    return result.scalar_one_or_none()


@translate_db_errors
async def transition_status(
    session: AsyncSession,
    lead_id: str,
    expected_version: int,
    target: Union[str, LeadStatus],
    actor_id: Optional[str],
    actor_name: Optional[str],
    is_admin: bool = False,
    notes: Optional[str] = None,
) -> Lead:
    """Move a lead to ``target`` if it is still at ``expected_version``.

    The write is a conditional UPDATE on (id, version); the history row is
    added in the same transaction, so either both land or neither does.

    Raises:
        LeadNotFoundError, RaceConditionError, InvalidTransitionError,
        NotLeadOwnerError, ValidationError (unknown target status).
    """
    target = coerce_status(target)

    lead = await get_lead(session, lead_id)
    if lead is None:
        raise LeadNotFoundError(f"Lead not found: {lead_id}")
    if lead.version != expected_version:
        raise RaceConditionError(
            f"Lead {lead_id} was modified (expected version {expected_version}, found {lead.version})"
        )

    current = LeadStatus(lead.status)
    if target not in TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(f"Cannot change status from {current.value} to {target.value}")
    if current is not LeadStatus.NEW and not is_admin and lead.owner_id != actor_id:
        raise NotLeadOwnerError(f"Lead {lead_id} is owned by {lead.owner_name or lead.owner_id}")

    now = utcnow()
    values = {
        "status": target.value,
        "version": expected_version + 1,
        "updated_at": now,
        f"{target.value}_at": now,
    }
    stmt = update(Lead).where(Lead.id == lead_id, Lead.version == expected_version)
    if target is LeadStatus.CONTACTED:
        stmt = stmt.where(Lead.owner_id.is_(None))
        values["owner_id"] = actor_id
        values["owner_name"] = actor_name

    result = await session.execute(
        stmt.values(**values).execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        exists = await session.scalar(select(Lead.id).where(Lead.id == lead_id))
        if exists is None:
            raise LeadNotFoundError(f"Lead not found: {lead_id}")
        raise RaceConditionError(f"Lead {lead_id} was modified by another request")

    await history_repo.record(
        session,
        lead_id=lead_id,
        from_status=current.value,
        to_status=target.value,
        changed_by_id=actor_id,
        changed_by_name=actor_name,
        notes=notes,
    )
    await session.refresh(lead)
    logger.info(
        f"Lead {lead_id} {current.value} -> {target.value} by {actor_name or actor_id} (v{lead.version})"
    )
    return lead


async def claim_lead(
    session: AsyncSession,
    lead_id: str,
    expected_version: int,
    actor_id: str,
    actor_name: Optional[str],
    is_admin: bool = False,
    notes: Optional[str] = None,
) -> Lead:
    """Claim an unowned lead: new -> contacted with the actor as owner."""
    return await transition_status(
        session,
        lead_id,
        expected_version,
        LeadStatus.CONTACTED,
        actor_id,
        actor_name,
        is_admin=is_admin,
        notes=notes,
    )


@translate_db_errors
async def update_enrichment(session: AsyncSession, lead_id: str, fields: Dict[str, Any]) -> Lead:
    """Write analysis results onto a lead. Does not touch status or version."""
    values = {k: v for k, v in fields.items() if k in ENRICHMENT_FIELDS and v is not None}
    if values:
        values["updated_at"] = utcnow()
        result = await session.execute(
            update(Lead).where(Lead.id == lead_id).values(**values).execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise LeadNotFoundError(f"Lead not found: {lead_id}")
    lead = await get_lead(session, lead_id)
    if lead is None:
        raise LeadNotFoundError(f"Lead not found: {lead_id}")
    await session.refresh(lead)
    return lead


@translate_db_errors
async def list_leads(
    session: AsyncSession,
    statuses: Optional[List[str]] = None,
    owner_id: Optional[str] = None,
    lead_source: Optional[str] = None,
    search: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    page: int = 1,
    limit: int = 20,
) -> Tuple[List[Lead], int]:
    """Filtered, sorted, paginated lead listing. Returns (leads, total)."""
    conditions = []
    if statuses:
        conditions.append(Lead.status.in_([coerce_status(s).value for s in statuses]))
    if owner_id == UNASSIGNED:
        conditions.append(Lead.owner_id.is_(None))
    elif owner_id:
        conditions.append(Lead.owner_id == owner_id)
    if lead_source:
        conditions.append(Lead.lead_source == lead_source)
    if search:
        pattern = f"%{escape_like(search.strip().lower())}%"
        conditions.append(
            or_(
                func.lower(Lead.company).like(pattern, escape="\\"),
                func.lower(Lead.customer_name).like(pattern, escape="\\"),
                Lead.email.like(pattern, escape="\\"),
            )
        )
    if date_from:
        conditions.append(Lead.created_at >= date_from)
    if date_to:
        conditions.append(Lead.created_at <= date_to)

    if sort_by not in SORT_COLUMNS:
        raise ValidationError(f"Cannot sort by {sort_by!r}")
    order = desc if sort_order == "desc" else asc
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    page = max(1, page)

    total = await session.scalar(select(func.count()).select_from(Lead).where(*conditions))
    result = await session.execute(
        select(Lead)
        .where(*conditions)
        .order_by(order(SORT_COLUMNS[sort_by]), order(Lead.id))
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(result.scalars().all()), int(total or 0)


@translate_db_errors
async def count_by_status(session: AsyncSession) -> Dict[str, int]:
    counts = {s.value: 0 for s in LeadStatus}
    result = await session.execute(select(Lead.status, func.count()).group_by(Lead.status))
    for status, count in result.all():
        counts[status] = count
    return counts


@translate_db_errors
async def count_by_source(session: AsyncSession) -> Dict[str, int]:
    result = await session.execute(select(Lead.lead_source, func.count()).group_by(Lead.lead_source))
    return {source: count for source, count in result.all()}


@translate_db_errors
async def count_by_owner(session: AsyncSession) -> List[Dict[str, Any]]:
    """Lead counts per owner id, busiest first. Unclaimed leads are reported as ``unassigned``."""
    result = await session.execute(
        select(Lead.owner_id, func.max(Lead.owner_name), func.count()).group_by(Lead.owner_id)
    )
    rows = [
        {"owner_id": owner_id or UNASSIGNED, "owner_name": owner_name, "count": count}
        for owner_id, owner_name, count in result.all()
    ]
    return sorted(rows, key=lambda row: (-row["count"], row["owner_id"]))
