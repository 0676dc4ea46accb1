from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from flowdesk.database import get_db
from flowdesk.models import Tenant
from flowdesk.runtime import Runtime


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Runtime not started")
    return runtime


def get_current_tenant(
    x_api_key: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> Tenant:
    """Resolve the calling tenant from its API key."""
    if not x_api_key:
        raise HTTPException(status_code=403, detail="Missing x-api-key header")
    tenant = db.query(Tenant).filter(Tenant.api_key == x_api_key).first()
    if tenant is None:
        raise HTTPException(status_code=403, detail="Invalid API key")
    return tenant


def ensure_tenant_access(tenant_id: str, tenant: Tenant) -> None:
    if tenant.tenant_id != tenant_id:
        raise HTTPException(status_code=403, detail="API key does not belong to this tenant")
