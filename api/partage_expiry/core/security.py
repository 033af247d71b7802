import hmac
import logging

from fastapi import Depends, Header, Query

from partage_expiry.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


class TriggerUnauthorizedError(Exception):
    """Raised when a batch activation carries no valid cron credential."""


def authorize_trigger(authorization: str | None, token: str | None, secret: str | None) -> bool:
    """Check a cron activation against the shared secret.

    Without a configured secret every activation is allowed (development mode).
    Otherwise either ``Authorization: Bearer <secret>`` or ``?token=<secret>``
    must match.
    """
    if not secret:
        logger.warning("no cron secret configured; expiration trigger is public (insecure mode)")
        return True

    if authorization and authorization.startswith("Bearer "):
        bearer = authorization[len("Bearer ") :]
        if hmac.compare_digest(bearer.encode("utf-8"), secret.encode("utf-8")):
            return True

    if token is not None and hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8")):
        return True

    return False


async def require_cron_trigger(
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None, alias="Authorization"),
    token: str | None = Query(default=None),
) -> None:
    if not authorize_trigger(authorization, token, settings.cron_secret):
        logger.error("unauthorized expiration trigger attempt")
        raise TriggerUnauthorizedError("Token d'authentification requis")
