"""FastAPI dependencies wiring the admission controller into routes."""

import logging
from typing import AsyncIterator, Callable

from fastapi import HTTPException, Request, status

from gatekeeper.admission import AdmissionController, AdmissionResult
from gatekeeper.errors import InvalidIdentity, StoreUnavailable
from gatekeeper.security import client_identity, verify_admin_key

logger = logging.getLogger(__name__)

PREMIUM_HEADER = "X-Premium"


def get_controller(request: Request) -> AdmissionController:
    """Admission controller created by the application lifespan."""
    controller = getattr(request.app.state, "controller", None)
    if controller is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admission control not initialized",
        )
    return controller


def require_admin(request: Request) -> str:
    """Dependency guarding the admin routes with the configured Bearer key."""
    return verify_admin_key(request, request.app.state.settings.admin_api_key)


def _premium_hint(request: Request) -> bool | None:
    """Premium flag forwarded by the authentication layer, if any."""
    value = request.headers.get(PREMIUM_HEADER)
    if value is None:
        return None
    return value.strip().lower() in ("1", "true", "yes")


def admission_dependency(endpoint: str) -> Callable[[Request], AsyncIterator[AdmissionResult]]:
    """
    Build a dependency that gates a route and records it on success.

    Usage in route:
        @router.post("/improve")
        async def improve(admission: AdmissionResult = Depends(admission_dependency("improve"))):
            ...

    Denials become 429 responses carrying ``Retry-After`` and
    ``X-RateLimit-*`` headers. A malformed identity is a 400. When the
    quota store is down and configured to fail closed the route answers
    503. The call is recorded only if the route completes without raising.
    """

    async def dependency(request: Request) -> AsyncIterator[AdmissionResult]:
        controller = get_controller(request)
        identity, kind = client_identity(request)
        premium = _premium_hint(request)

        try:
            result = await controller.evaluate_admission(
                identity, kind, endpoint, is_premium=premium
            )
        except InvalidIdentity as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
        except StoreUnavailable as e:
            logger.error(f"Admission unavailable for {identity}: {e}")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Service temporarily unavailable, please try again",
                headers={"Retry-After": "30"},
            ) from e

        if not result.allowed:
            logger.info(f"Denied {identity} on {endpoint}: {result.decision.value}")
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail=result.to_dict(),
                headers=result.headers(),
            )

        request.state.admission = result
        yield result

        # Only reached when the route completed without raising
        await controller.record_success(identity, endpoint, identifier_kind=kind, is_premium=premium)

    return dependency
