"""Shared FastAPI dependencies: service container and API-key auth."""
from typing import Any, Dict, Optional

from fastapi import Header, Request

from paywall.core.errors import UnauthorizedError
from paywall.features.tenants.service import ResolvedApiKey, resolve_api_key


def get_services(request: Request):
    """Services built by create_app() and attached to the application state."""
    return request.app.state.services


def require_api_key(x_api_key: Optional[str] = Header(None)) -> ResolvedApiKey:
    key = resolve_api_key(x_api_key)
    if key is None:
        raise UnauthorizedError("Invalid or missing API key")
    return key


def envelope(data: Any) -> Dict[str, Any]:
    return {"success": True, "data": data}
