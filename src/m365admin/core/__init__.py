"""Core utilities shared by the tenant administration tools."""

from m365admin.core.config import (
    GraphCredentials,
    TenantConfig,
    get_graph_credentials,
    get_tenant_config,
)
from m365admin.core.msgraph_client import get_graph_client

__all__ = [
    "GraphCredentials",
    "TenantConfig",
    "get_graph_client",
    "get_graph_credentials",
    "get_tenant_config",
]
