"""Configuration loading utilities."""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv


@dataclass
class GraphCredentials:
    """Service principal credentials for Microsoft Graph (app-only)."""

    tenant_id: str
    client_id: str
    client_secret: str | None = None
    certificate_path: str | None = None
    certificate_password: str | None = None

    @property
    def uses_certificate(self) -> bool:
        """Certificate auth takes precedence over a client secret."""
        return bool(self.certificate_path)


def get_graph_credentials() -> GraphCredentials:
    """Get MS Graph API credentials from environment.

    Either MS_GRAPH_CLIENT_SECRET or MS_GRAPH_CERTIFICATE_PATH must be set
    alongside the tenant and client IDs.

    Returns:
        GraphCredentials for the service principal

    Raises:
        ValueError: If any required credential is not set
    """
    load_dotenv()

    tenant_id = os.getenv("MS_GRAPH_TENANT_ID")
    client_id = os.getenv("MS_GRAPH_CLIENT_ID")
    client_secret = os.getenv("MS_GRAPH_CLIENT_SECRET")
    cert_path = os.getenv("MS_GRAPH_CERTIFICATE_PATH")
    cert_password = os.getenv("MS_GRAPH_CERTIFICATE_PASSWORD")

    missing = [
        name
        for name, value in (
            ("MS_GRAPH_TENANT_ID", tenant_id),
            ("MS_GRAPH_CLIENT_ID", client_id),
        )
        if not value
    ]
    if not client_secret and not cert_path:
        missing.append("MS_GRAPH_CLIENT_SECRET or MS_GRAPH_CERTIFICATE_PATH")

    if missing:
        raise ValueError(f"MS Graph credentials not set. Required: {', '.join(missing)}")

    return GraphCredentials(
        tenant_id=tenant_id,
        client_id=client_id,
        client_secret=client_secret or None,
        certificate_path=cert_path or None,
        certificate_password=cert_password or None,
    )


@dataclass
class ExchangeCredentials:
    """Credentials for Exchange Online PowerShell authentication."""

    tenant_id: str
    client_id: str
    organization: str
    certificate_thumbprint: str | None = None
    certificate_path: str | None = None
    certificate_password: str | None = None


def get_exchange_credentials() -> ExchangeCredentials:
    """Get Exchange Online credentials from environment.

    Uses certificate-based authentication for app-only access.
    Either certificate_thumbprint (Windows) or certificate_path + password
    (cross-platform) must be provided.

    Environment variables:
        EXCHANGE_TENANT_ID: Tenant ID (falls back to MS_GRAPH_TENANT_ID)
        EXCHANGE_CLIENT_ID: App client ID (falls back to MS_GRAPH_CLIENT_ID)
        EXCHANGE_ORGANIZATION: Organization domain (falls back to <tenant_name>.onmicrosoft.com)
        EXCHANGE_CERTIFICATE_THUMBPRINT: Certificate thumbprint (Windows)
        EXCHANGE_CERTIFICATE_PATH: Path to .pfx certificate file
        EXCHANGE_CERTIFICATE_PASSWORD: Password for .pfx file

    Returns:
        ExchangeCredentials with certificate configuration

    Raises:
        ValueError: If neither certificate method is configured
    """
    load_dotenv()

    tenant_id = os.getenv("EXCHANGE_TENANT_ID") or os.getenv("MS_GRAPH_TENANT_ID")
    client_id = os.getenv("EXCHANGE_CLIENT_ID") or os.getenv("MS_GRAPH_CLIENT_ID")

    if not tenant_id or not client_id:
        raise ValueError(
            "Exchange credentials not set. Required: "
            "EXCHANGE_TENANT_ID/MS_GRAPH_TENANT_ID and EXCHANGE_CLIENT_ID/MS_GRAPH_CLIENT_ID"
        )

    # Exchange app-only auth wants the initial onmicrosoft.com domain
    organization = os.getenv("EXCHANGE_ORGANIZATION")
    if not organization:
        organization = load_tenant_config().default_domain
    thumbprint = os.getenv("EXCHANGE_CERTIFICATE_THUMBPRINT")
    cert_path = os.getenv("EXCHANGE_CERTIFICATE_PATH")
    cert_password = os.getenv("EXCHANGE_CERTIFICATE_PASSWORD")

    if not thumbprint and not cert_path:
        raise ValueError(
            "Exchange credentials not set. Required: "
            "EXCHANGE_CERTIFICATE_THUMBPRINT (Windows) or "
            "EXCHANGE_CERTIFICATE_PATH + EXCHANGE_CERTIFICATE_PASSWORD (cross-platform)"
        )

    if cert_path and cert_password is None:
        raise ValueError(
            "EXCHANGE_CERTIFICATE_PASSWORD is required when using EXCHANGE_CERTIFICATE_PATH "
            "(can be empty string for Key Vault generated certs)"
        )

    return ExchangeCredentials(
        tenant_id=tenant_id,
        client_id=client_id,
        organization=organization,
        certificate_thumbprint=thumbprint,
        certificate_path=cert_path,
        certificate_password=cert_password,
    )


@dataclass
class SharePointCredentials:
    """Credentials for PnP PowerShell (SharePoint Online admin) authentication."""

    admin_url: str
    client_id: str
    tenant: str
    certificate_thumbprint: str | None = None
    certificate_path: str | None = None
    certificate_password: str | None = None


def get_sharepoint_credentials() -> SharePointCredentials:
    """Get SharePoint Online (PnP) credentials from environment.

    The app registration and certificate are usually shared with Exchange,
    so each SHAREPOINT_* value falls back to its EXCHANGE_* counterpart.

    Environment variables:
        SHAREPOINT_ADMIN_URL: Admin center URL (defaults to the tenant config admin URL)
        SHAREPOINT_CLIENT_ID: App client ID (falls back to EXCHANGE_/MS_GRAPH_CLIENT_ID)
        SHAREPOINT_CERTIFICATE_THUMBPRINT: Certificate thumbprint (Windows)
        SHAREPOINT_CERTIFICATE_PATH: Path to .pfx certificate file
        SHAREPOINT_CERTIFICATE_PASSWORD: Password for .pfx file

    Raises:
        ValueError: If the client ID or certificate is not configured
    """
    load_dotenv()

    client_id = (
        os.getenv("SHAREPOINT_CLIENT_ID")
        or os.getenv("EXCHANGE_CLIENT_ID")
        or os.getenv("MS_GRAPH_CLIENT_ID")
    )
    if not client_id:
        raise ValueError(
            "SharePoint credentials not set. Required: "
            "SHAREPOINT_CLIENT_ID/EXCHANGE_CLIENT_ID/MS_GRAPH_CLIENT_ID"
        )

    thumbprint = os.getenv("SHAREPOINT_CERTIFICATE_THUMBPRINT") or os.getenv(
        "EXCHANGE_CERTIFICATE_THUMBPRINT"
    )
    cert_path = os.getenv("SHAREPOINT_CERTIFICATE_PATH") or os.getenv("EXCHANGE_CERTIFICATE_PATH")
    cert_password = os.getenv("SHAREPOINT_CERTIFICATE_PASSWORD")
    if cert_password is None:
        cert_password = os.getenv("EXCHANGE_CERTIFICATE_PASSWORD")

    if not thumbprint and not cert_path:
        raise ValueError(
            "SharePoint credentials not set. Required: "
            "SHAREPOINT_CERTIFICATE_THUMBPRINT or SHAREPOINT_CERTIFICATE_PATH "
            "(or the EXCHANGE_* equivalents)"
        )

    admin_url = os.getenv("SHAREPOINT_ADMIN_URL")
    tenant_config = None
    if not admin_url:
        tenant_config = load_tenant_config()
        admin_url = tenant_config.admin_url
    tenant = os.getenv("EXCHANGE_ORGANIZATION")
    if not tenant:
        tenant = (tenant_config or load_tenant_config()).default_domain

    return SharePointCredentials(
        admin_url=admin_url.rstrip("/"),
        client_id=client_id,
        tenant=tenant,
        certificate_thumbprint=thumbprint,
        certificate_path=cert_path,
        certificate_password=cert_password,
    )


@dataclass
class TenantConfig:
    """Tenant configuration loaded from config/tenant.json.

    All tenant-specific data lives here rather than in code, so
    pointing the tools at another tenant only requires editing the JSON file.
    """

    domain: str
    tenant_name: str
    internal_domains: frozenset[str] = field(default_factory=frozenset)
    report_dir: str = "reports"
    inactive_site_days: int = 180
    storage_warning_percent: float = 90.0
    credential_expiry_warning_days: int = 30
    message_trace_page_size: int = 1000

    @property
    def default_domain(self) -> str:
        """The initial <tenant>.onmicrosoft.com domain."""
        return f"{self.tenant_name}.onmicrosoft.com"

    @property
    def admin_url(self) -> str:
        """SharePoint Online admin center URL."""
        return f"https://{self.tenant_name}-admin.sharepoint.com"

    def is_internal(self, email_or_domain: str) -> bool:
        """Check whether an address (or bare domain) belongs to the tenant."""
        domain = email_or_domain.rsplit("@", 1)[-1].strip().lower()
        return domain in self.internal_domains or domain == self.default_domain


def get_project_root() -> Path:
    """Get the project root directory."""
    current = Path(__file__).resolve()
    for parent in current.parents:
        if (parent / "pyproject.toml").exists():
            return parent
    raise RuntimeError("Could not find project root (no pyproject.toml found)")


def load_tenant_config() -> TenantConfig:
    """Load tenant configuration from config file.

    Returns:
        TenantConfig with domain, tenant name and audit thresholds
    """
    project_root = get_project_root()
    config_path = project_root / "config" / "tenant.json"

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with config_path.open() as f:
        config_data = json.load(f)

    domain = config_data["domain"]
    internal = {d.lower() for d in config_data.get("internal_domains", ())}
    internal.add(domain.lower())

    return TenantConfig(
        domain=domain,
        tenant_name=config_data["tenant_name"],
        internal_domains=frozenset(internal),
        report_dir=config_data.get("report_dir", "reports"),
        inactive_site_days=int(config_data.get("inactive_site_days", 180)),
        storage_warning_percent=float(config_data.get("storage_warning_percent", 90.0)),
        credential_expiry_warning_days=int(config_data.get("credential_expiry_warning_days", 30)),
        message_trace_page_size=int(config_data.get("message_trace_page_size", 1000)),
    )


# Cached config instance
_tenant_config: TenantConfig | None = None


def get_tenant_config() -> TenantConfig:
    """Get cached tenant config.

    Loads config once and caches it for subsequent calls.
    """
    global _tenant_config
    if _tenant_config is None:
        _tenant_config = load_tenant_config()
    return _tenant_config
