"""
FastAPI Dependencies - Authentication and service wiring.

NO DICTIONARIES - All dependencies return typed objects.
"""

import secrets
from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from studio_billing.config import settings
from studio_billing.db.session import get_read_db, get_write_db
from studio_billing.exceptions import CallbackAuthenticationError
from studio_billing.observability.logging import get_logger
from studio_billing.services.provider_gateway import AssetStore, ProviderGateway
from studio_billing.services.retry_policy import RetryPolicy
from studio_billing.services.retry_scheduler import RetryScheduler
from studio_billing.services.settings_cache import SettingsCache, SystemConfigService
from studio_billing.services.subscriptions import SubscriptionService
from studio_billing.services.tasks import TaskService
from studio_billing.services.wallet import WalletService

logger = get_logger(__name__)

# Bearer token scheme for provider callbacks
bearer_scheme = HTTPBearer(auto_error=False)


# ============================================================================
# Application components (created once in the app lifespan)
# ============================================================================


@dataclass
class AppComponents:
    """Long-lived collaborators shared by every request."""

    settings_cache: SettingsCache
    gateway: ProviderGateway
    asset_store: AssetStore
    scheduler: RetryScheduler
    policy: RetryPolicy
    callback_url: str | None = None

    def task_service(self, session: AsyncSession) -> TaskService:
        """TaskService bound to one session."""
        return TaskService(
            session,
            gateway=self.gateway,
            asset_store=self.asset_store,
            settings_cache=self.settings_cache,
            scheduler=self.scheduler,
            policy=self.policy,
            callback_url=self.callback_url,
        )


def get_components(request: Request) -> AppComponents:
    """The components the lifespan stored on app.state."""
    components: AppComponents = request.app.state.components
    return components


# ============================================================================
# Authentication
# ============================================================================


async def require_service_key(
    x_api_key: str | None = Header(None, description="Internal service key"),
) -> None:
    """
    FastAPI dependency guarding the internal API.

    The web layer authenticates end users; it calls this service with a
    shared key in the X-API-Key header.

    Raises:
        HTTPException 401 if the key is missing, unconfigured or wrong
    """
    expected = settings.internal_api_key
    if (
        not expected
        or not x_api_key
        or not secrets.compare_digest(x_api_key.encode(), expected.encode())
    ):
        logger.warning("service_key_rejected", configured=bool(expected))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )


def check_callback_token(token: str | None, secret: str) -> None:
    """
    Constant-time comparison of the callback bearer token.

    Raises:
        CallbackAuthenticationError: missing token, unconfigured secret, or mismatch
    """
    if not secret:
        raise CallbackAuthenticationError("callback secret not configured")
    if not token:
        raise CallbackAuthenticationError("missing bearer token")
    if not secrets.compare_digest(token.encode(), secret.encode()):
        raise CallbackAuthenticationError("bearer token mismatch")


async def verify_provider_callback(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> None:
    """
    FastAPI dependency authenticating provider push notifications.

    Raises:
        HTTPException 401 before the payload is looked at
    """
    try:
        check_callback_token(
            credentials.credentials if credentials else None, settings.provider_callback_secret
        )
    except CallbackAuthenticationError as exc:
        logger.warning("provider_callback_rejected", reason=exc.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid callback credentials",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


# ============================================================================
# Services
# ============================================================================


async def get_wallet_service(db: AsyncSession = Depends(get_write_db)) -> WalletService:
    return WalletService(db)


async def get_history_service(db: AsyncSession = Depends(get_read_db)) -> WalletService:
    """WalletService on the read replica; only for history queries."""
    return WalletService(db)


async def get_subscription_service(
    db: AsyncSession = Depends(get_write_db),
) -> SubscriptionService:
    return SubscriptionService(db)


async def get_task_service(
    db: AsyncSession = Depends(get_write_db),
    components: AppComponents = Depends(get_components),
) -> TaskService:
    return components.task_service(db)


async def get_system_config_service(
    db: AsyncSession = Depends(get_write_db),
    components: AppComponents = Depends(get_components),
) -> SystemConfigService:
    return SystemConfigService(db, components.settings_cache)
