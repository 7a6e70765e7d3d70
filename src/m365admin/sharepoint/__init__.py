"""SharePoint Online site inventory and audit."""

from m365admin.sharepoint.audit import (
    Finding,
    Severity,
    SiteAuditor,
    SiteAuditReport,
    run_site_audit,
)
from m365admin.sharepoint.client import PnPClient, SiteInfo

__all__ = [
    "Finding",
    "PnPClient",
    "Severity",
    "SiteAuditReport",
    "SiteAuditor",
    "SiteInfo",
    "run_site_audit",
]
