"""Server configuration from ``SERVER_*`` environment variables.

Identity is not handled here: the gateway in front of the server
authenticates users and injects ``X-User-ID`` / ``X-Company-ID`` /
``X-User-Role``.  The settings below only decide which roles count as
company admins and, optionally, how the server recognizes that gateway.
"""

import os
from dataclasses import dataclass, field

_DEFAULT_ADMIN_ROLES = "owner,company_admin,site_admin"


def _csv(raw: str, *, lower: bool = False) -> list[str]:
    items = [item.strip() for item in raw.split(",") if item.strip()]
    return [item.lower() for item in items] if lower else items


@dataclass(frozen=True)
class ServerSettings:
    """Immutable server configuration, built once at startup."""

    host: str = "0.0.0.0"
    port: int = 8080

    # Browser origins allowed to call the API; ["*"] during development
    cors_origins: list[str] = field(default_factory=lambda: ["*"])

    # Workflow template directory; None uses the templates bundled with
    # jobstage_engine
    template_dir: str | None = None

    log_level: str = "INFO"

    # X-User-Role values allowed to approve or reject pending transitions,
    # override stages and provision templates
    admin_roles: frozenset[str] = frozenset(_csv(_DEFAULT_ADMIN_ROLES))

    # Shared secret the gateway sends as X-Proxy-Secret.  When set, requests
    # without it are refused, so identity headers cannot be forged by
    # clients that bypass the gateway.
    trusted_proxy_secret: str | None = None


def load_settings() -> ServerSettings:
    """Read settings from the environment, falling back to the defaults."""
    return ServerSettings(
        host=os.getenv("SERVER_HOST", "0.0.0.0"),
        port=int(os.getenv("SERVER_PORT", "8080")),
        cors_origins=_csv(os.getenv("SERVER_CORS_ORIGINS", "*")),
        template_dir=os.getenv("SERVER_TEMPLATE_DIR") or None,
        log_level=os.getenv("SERVER_LOG_LEVEL", "INFO").upper(),
        admin_roles=frozenset(
            _csv(os.getenv("SERVER_ADMIN_ROLES", _DEFAULT_ADMIN_ROLES), lower=True)
        ),
        trusted_proxy_secret=os.getenv("TRUSTED_PROXY_SECRET") or None,
    )
