"""
api/routes/v1/customers.py -- Customer listing endpoint.

Visibility follows the caller's roles:
  super_admin -> every customer
  admin       -> customers they created or are responsible for
  anyone else -> customers they are responsible for
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from api.models import paginated
from auth.dependencies import require_permission
from auth.models import SessionUser
from core.config import get_settings
from crm.models import Customer, CustomerStatus
from crm.store import CRMStore

# Auth policy:
# - GET /customers: requires auth + permission customer:list
router = APIRouter()

_settings = get_settings()


@router.get("/customers")
def list_customers(
    request: Request,
    current: int = Query(1, ge=1),
    size: int = Query(_settings.page_size_default, ge=1, le=_settings.page_size_max),
    customer_name: Optional[str] = Query(None, alias="customerName", max_length=100),
    company: Optional[str] = Query(None, max_length=200),
    status: Optional[CustomerStatus] = Query(None),
    user: SessionUser = Depends(require_permission("customer:list")),
) -> dict:
    crm: CRMStore = request.app.state.crm_store

    scope: dict = {}
    if "super_admin" in user.roles:
        pass
    elif "admin" in user.roles:
        scope["created_or_responsible_id"] = user.id
    else:
        scope["responsible_id"] = user.id

    customers, total = crm.list_customers(
        current,
        size,
        customer_name=customer_name,
        company=company,
        status=status.value if status else None,
        **scope,
    )
    return paginated([_customer_dict(c) for c in customers], total, current, size, path=request.url.path)


def _customer_dict(c: Customer) -> dict:
    return {
        "id": c.id,
        "customerName": c.customer_name,
        "company": c.company,
        "phone": c.phone,
        "status": c.status,
        "responsiblePersonId": c.responsible_person_id,
        "createdById": c.created_by_id,
        "createdAt": c.created_at.isoformat() if c.created_at else None,
        "updatedAt": c.updated_at.isoformat() if c.updated_at else None,
    }
