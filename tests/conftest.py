"""Shared pytest fixtures."""

from unittest.mock import MagicMock

import pytest

from m365admin.core import config as core_config
from m365admin.core.config import TenantConfig


@pytest.fixture
def tenant_config():
    """Tenant config for a test tenant."""
    return TenantConfig(
        domain="contoso.org",
        tenant_name="contoso",
        internal_domains=frozenset({"contoso.org", "contoso.com"}),
        report_dir="reports",
        inactive_site_days=180,
        storage_warning_percent=90.0,
        credential_expiry_warning_days=30,
        message_trace_page_size=1000,
    )


@pytest.fixture(autouse=True)
def cached_tenant_config(monkeypatch, tenant_config):
    """Serve the test tenant config instead of reading config/tenant.json."""
    monkeypatch.setattr(core_config, "_tenant_config", tenant_config)
    return tenant_config


@pytest.fixture
def mock_env_vars(monkeypatch):
    """Set mock environment variables for testing."""
    monkeypatch.setenv("MS_GRAPH_TENANT_ID", "test-tenant-id")
    monkeypatch.setenv("MS_GRAPH_CLIENT_ID", "test-client-id")
    monkeypatch.setenv("MS_GRAPH_CLIENT_SECRET", "test-client-secret")
    monkeypatch.delenv("MS_GRAPH_CERTIFICATE_PATH", raising=False)
    monkeypatch.delenv("MS_GRAPH_CERTIFICATE_PASSWORD", raising=False)


@pytest.fixture
def clean_env(monkeypatch):
    """Remove every credential variable the tools read."""
    for prefix in ("MS_GRAPH", "EXCHANGE", "SHAREPOINT"):
        for suffix in (
            "TENANT_ID",
            "CLIENT_ID",
            "CLIENT_SECRET",
            "ORGANIZATION",
            "ADMIN_URL",
            "CERTIFICATE_THUMBPRINT",
            "CERTIFICATE_PATH",
            "CERTIFICATE_PASSWORD",
        ):
            monkeypatch.delenv(f"{prefix}_{suffix}", raising=False)


@pytest.fixture
def mock_graph_client():
    """Mock MS Graph client for testing."""
    client = MagicMock()
    return client


@pytest.fixture
def mock_runner():
    """Mock PowerShell runner."""
    runner = MagicMock()
    runner.run.return_value = []
    return runner
