"""
Configuration for the Entity Storage REST API.

Uses pydantic-settings for environment variable loading.
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class ApiSettings(BaseSettings):
    """REST API configuration loaded from environment."""

    host: str = Field(default="0.0.0.0", description="API bind host")
    port: int = Field(default=8080, description="API bind port")

    # CORS settings
    cors_origins: list[str] = Field(default=["*"], description="Allowed CORS origins")

    base_route: str = Field(default="/entity-storage", description="Route prefix")

    # Pagination defaults
    default_page_size: int = Field(default=40, description="Default items per page")
    max_page_size: int = Field(default=1000, description="Maximum items per page")

    # Identity headers
    user_identity_header: str = Field(
        default="X-User-Identity", description="Header carrying the user identity"
    )
    node_identity_header: str = Field(
        default="X-Node-Identity", description="Header carrying the node identity"
    )

    trusted_sync_enabled: bool = Field(
        default=True, description="Expose the trusted change-set push endpoint when available"
    )
    include_error_stack: bool = Field(default=False, description="Add stacks to error envelopes")

    model_config = {"env_prefix": "ENTITY_STORAGE_API_"}
