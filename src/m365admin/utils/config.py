"""Configuration management using Pydantic settings."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Microsoft Graph API
    ms_graph_tenant_id: str = Field(default="", description="Entra ID tenant ID")
    ms_graph_client_id: str = Field(default="", description="App registration client ID")
    ms_graph_client_secret: str = Field(default="", description="App registration client secret")
    ms_graph_certificate_path: str = Field(default="", description="PEM or PFX certificate path")

    # Exchange Online PowerShell
    exchange_organization: str = Field(default="", description="Initial onmicrosoft.com domain")
    exchange_certificate_thumbprint: str = Field(default="", description="Certificate thumbprint")
    exchange_certificate_path: str = Field(default="", description="Path to .pfx certificate")

    # SharePoint Online (PnP)
    sharepoint_admin_url: str = Field(default="", description="SharePoint admin center URL")
    sharepoint_certificate_thumbprint: str = Field(default="", description="Certificate thumbprint")
    sharepoint_certificate_path: str = Field(default="", description="Path to .pfx certificate")

    @property
    def has_graph_credentials(self) -> bool:
        """Check if MS Graph credentials are configured."""
        return bool(
            self.ms_graph_tenant_id
            and self.ms_graph_client_id
            and (self.ms_graph_client_secret or self.ms_graph_certificate_path)
        )

    @property
    def graph_auth_method(self) -> str:
        """Which credential the Graph client will use."""
        if self.ms_graph_certificate_path:
            return "certificate"
        if self.ms_graph_client_secret:
            return "client secret"
        return "none"

    @property
    def has_exchange_certificate(self) -> bool:
        """Check if an Exchange Online certificate is configured."""
        return bool(self.exchange_certificate_thumbprint or self.exchange_certificate_path)

    @property
    def has_sharepoint_certificate(self) -> bool:
        """Check if a PnP certificate is configured (Exchange certificate counts)."""
        return bool(
            self.sharepoint_certificate_thumbprint
            or self.sharepoint_certificate_path
            or self.has_exchange_certificate
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
