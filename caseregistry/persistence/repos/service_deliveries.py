from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from caseregistry.domain.models import ServiceDelivery


async def create_delivery(
    session: AsyncSession,
    *,
    service_id: str,
    beneficiary_id: str,
    entity_id: str,
    entity_type: str,
    delivered_at: datetime,
    form_response_id: str | None = None,
    staff_user_id: str | None = None,
    notes: str | None = None,
) -> ServiceDelivery:
    delivery = ServiceDelivery(
        id=uuid4().hex,
        service_id=service_id,
        beneficiary_id=beneficiary_id,
        entity_id=entity_id,
        entity_type=entity_type,
        form_response_id=form_response_id,
        staff_user_id=staff_user_id,
        delivered_at=delivered_at,
        notes=notes,
    )
    session.add(delivery)
    await session.flush()
    return delivery


async def list_for_beneficiary(
    session: AsyncSession,
    beneficiary_id: str,
    *,
    from_date: datetime | None = None,
    to_date: datetime | None = None,
    oldest_first: bool = False,
    offset: int = 0,
    limit: int = 20,
) -> tuple[list[ServiceDelivery], int]:
    """Page through a beneficiary's deliveries, bounded inclusively by delivered_at."""
    filters = [ServiceDelivery.beneficiary_id == beneficiary_id]
    if from_date is not None:
        filters.append(ServiceDelivery.delivered_at >= from_date)
    if to_date is not None:
        filters.append(ServiceDelivery.delivered_at <= to_date)

    if oldest_first:
        ordering = (ServiceDelivery.delivered_at.asc(), ServiceDelivery.id.asc())
    else:
        ordering = (ServiceDelivery.delivered_at.desc(), ServiceDelivery.id.desc())
    stmt = select(ServiceDelivery).where(*filters).order_by(*ordering).offset(offset).limit(limit)
    count_stmt = select(func.count()).select_from(ServiceDelivery).where(*filters)

    rows = (await session.execute(stmt)).scalars().all()
    total = int((await session.execute(count_stmt)).scalar() or 0)
    return list(rows), total
