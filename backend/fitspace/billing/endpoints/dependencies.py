from typing import NoReturn, Optional

from fastapi import Header, HTTPException, Request

from fitspace.utils.logger import logger
from ..engine import BillingEngine
from ..shared.exceptions import (
    BillingError,
    InvalidTransition,
    SubscriptionNotFound,
    ValidationError,
)


def get_engine(request: Request) -> BillingEngine:
    engine = getattr(request.app.state, "billing", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Billing engine is not running")
    return engine


async def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Caller identity as set by the gateway. Host apps override this dependency."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity")
    return x_user_id


def raise_http_error(e: Exception, tag: str = "[BILLING]") -> NoReturn:
    if isinstance(e, HTTPException):
        raise e
    if isinstance(e, SubscriptionNotFound):
        raise HTTPException(status_code=404, detail=str(e))
    if isinstance(e, ValidationError):
        raise HTTPException(status_code=400, detail=str(e))
    if isinstance(e, InvalidTransition):
        raise HTTPException(status_code=409, detail=str(e))
    if isinstance(e, BillingError):
        logger.error(f"{tag} {type(e).__name__}: {e}")
    else:
        logger.error(f"{tag} Unexpected error: {e}", exc_info=True)
    raise HTTPException(status_code=500, detail="Internal billing error")
