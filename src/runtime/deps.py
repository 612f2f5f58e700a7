# =============================================================================
# Settings & Dependency Container
# =============================================================================
# Environment-driven settings plus lazily created clients shared by the
# dispatch core. Nothing touches AWS or the network until first access.
# =============================================================================

import logging
import os
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any, Dict, Optional

import boto3

from src.runtime.constraints import ConstraintProfile, get_constraint_profile
from src.runtime.detector import get_runtime_info

logger = logging.getLogger(__name__)


# =============================================================================
# ENVIRONMENT HELPERS
# =============================================================================
def _get_env(key: str, default: str = "") -> str:
    return os.environ.get(key, default)


def _get_env_bool(key: str, default: bool = False) -> bool:
    return _get_env(key, str(default)).lower() == "true"


def _get_env_float(key: str, default: float) -> float:
    raw = _get_env(key, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid {key}={raw!r}, using {default}")
        return default


@dataclass
class Settings:
    """
    Runtime settings.

    Attributes:
        host: Explicit host override (empty = auto-detect)
        session_ttl: Default context session lifetime in seconds
        session_sweep_interval: Seconds between expired-session sweeps
        session_table_name: DynamoDB table for sessions (empty = in-memory)
        shutdown_grace: Seconds in-flight handlers get on shutdown
        api_base_url: Bot platform REST base URL
        bot_token: Bot token for REST calls
        application_id: Application id used in follow-up webhooks
        region: AWS region for the session table
        require_signature: Reject webhook requests without a verifier
        webhook_secret: Shared secret for HMAC request signatures
    """
    host: str = ""
    session_ttl: float = 900.0
    session_sweep_interval: float = 60.0
    session_table_name: str = ""
    shutdown_grace: float = 10.0
    api_base_url: str = "https://discord.com/api/v10"
    bot_token: str = ""
    application_id: str = ""
    region: str = "us-east-1"
    require_signature: bool = True
    webhook_secret: str = ""

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            host=_get_env("INTERACTIONS_HOST", ""),
            session_ttl=_get_env_float("SESSION_TTL_SECONDS", 900.0),
            session_sweep_interval=_get_env_float("SESSION_SWEEP_SECONDS", 60.0),
            session_table_name=_get_env("SESSION_TABLE_NAME", ""),
            shutdown_grace=_get_env_float("SHUTDOWN_GRACE_SECONDS", 10.0),
            api_base_url=_get_env("API_BASE_URL", "https://discord.com/api/v10"),
            bot_token=_get_env("BOT_TOKEN", ""),
            application_id=_get_env("APPLICATION_ID", ""),
            region=_get_env("AWS_REGION", "us-east-1"),
            require_signature=_get_env_bool("REQUIRE_SIGNATURE", True),
            webhook_secret=_get_env("WEBHOOK_SECRET", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "sessionTtl": self.session_ttl,
            "sessionSweepInterval": self.session_sweep_interval,
            "sessionTableName": self.session_table_name,
            "shutdownGrace": self.shutdown_grace,
            "apiBaseUrl": self.api_base_url,
            "applicationId": self.application_id,
            "region": self.region,
            "requireSignature": self.require_signature,
        }


def resolve_constraint_profile(settings: Settings,
                               override: Optional[ConstraintProfile] = None) -> ConstraintProfile:
    """Explicit override, then configured host, then detected host."""
    if override is not None:
        return override
    if settings.host:
        return get_constraint_profile(settings.host)
    return get_runtime_info().constraints


@dataclass
class Deps:
    """
    Lazily created clients for the dispatch core.

    Usage:
        deps = create_deps()
        deps.session_table.get_item(...)
        deps.rest.create_response(...)
    """
    settings: Settings = field(default_factory=Settings.from_env)

    @cached_property
    def dynamodb(self):
        """DynamoDB resource."""
        return boto3.resource("dynamodb", region_name=self.settings.region)

    @cached_property
    def session_table(self):
        """DynamoDB table holding context sessions."""
        return self.dynamodb.Table(self.settings.session_table_name)

    @cached_property
    def rest(self):
        """Bot platform REST client."""
        from src.delivery.rest import RestClient
        timeout = get_runtime_info().constraints.request_timeout or 30.0
        return RestClient(
            base_url=self.settings.api_base_url,
            bot_token=self.settings.bot_token,
            application_id=self.settings.application_id,
            timeout=timeout,
        )


def create_deps(settings: Settings = None) -> Deps:
    """Create a new Deps instance."""
    return Deps(settings=settings or Settings.from_env())
