from fastapi import Header, HTTPException, Request

from autoflow.services.engine import AutomationEngine


def get_engine(request: Request) -> AutomationEngine:
    engine = getattr(request.app.state, "automation_engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Automation engine is not ready")
    return engine


def get_tenant_id(x_tenant_id: str | None = Header(default=None)) -> str:
    tenant_id = (x_tenant_id or "").strip()
    if not tenant_id:
        raise HTTPException(status_code=400, detail="X-Tenant-ID header is required")
    if len(tenant_id) > 64:
        raise HTTPException(status_code=400, detail="X-Tenant-ID header is too long")
    return tenant_id
