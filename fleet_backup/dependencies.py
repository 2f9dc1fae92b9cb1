from fastapi import Depends, HTTPException, Request, status

from .schemas import Caller
from .services import Services


def get_settings(request: Request) -> dict:
    return request.app.state.settings


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_caller(request: Request) -> Caller:
    # Set by the authentication middleware in front of this service.
    caller = getattr(request.state, "caller", None)
    if caller is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return caller


def require_admin(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access denied. Admin privileges required.",
        )
    return caller
