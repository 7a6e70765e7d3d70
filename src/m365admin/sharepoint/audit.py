"""SharePoint Online site audit.

Fetches every site collection from the admin center, checks each one
against a fixed set of rules and renders the findings as a report.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path

from m365admin.core.config import TenantConfig, get_tenant_config
from m365admin.sharepoint.client import PnPClient, SiteInfo

logger = logging.getLogger(__name__)


class Severity(Enum):
    """Finding severity, ordered from most to least serious."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.HIGH: 0, Severity.MEDIUM: 1, Severity.LOW: 2}

ANONYMOUS_SHARING = "ExternalUserAndGuestSharing"
EXTERNAL_SHARING = frozenset({"ExternalUserSharingOnly", "ExistingExternalUserSharingOnly"})
UNLOCKED = "Unlock"


@dataclass
class Finding:
    """A single audit rule violation on a site."""

    rule: str
    severity: Severity
    message: str


@dataclass
class SiteAuditResult:
    """Audit findings for one site."""

    site: SiteInfo
    findings: list[Finding] = field(default_factory=list)

    @property
    def worst_severity(self) -> Severity | None:
        if not self.findings:
            return None
        return min((f.severity for f in self.findings), key=lambda s: s.rank)

    @property
    def is_clean(self) -> bool:
        return not self.findings


@dataclass
class SiteAuditReport:
    """Results of a tenant site audit."""

    generated: datetime
    results: list[SiteAuditResult]
    inactive_days: int = 180
    storage_warning_percent: float = 90.0

    @property
    def site_count(self) -> int:
        return len(self.results)

    @property
    def flagged(self) -> list[SiteAuditResult]:
        return [r for r in self.results if r.findings]

    @property
    def findings(self) -> list[tuple[SiteInfo, Finding]]:
        return [(r.site, f) for r in self.results for f in r.findings]

    def count_by_severity(self) -> dict[Severity, int]:
        """Finding counts per severity (every severity present, zero if unused)."""
        counts = Counter(f.severity for _, f in self.findings)
        return {severity: counts.get(severity, 0) for severity in Severity}

    def count_by_rule(self) -> dict[str, int]:
        """Finding counts per rule, most frequent first."""
        return dict(Counter(f.rule for _, f in self.findings).most_common())

    @property
    def total_storage_gb(self) -> float:
        return sum(r.site.storage_used_mb for r in self.results) / 1024


def _is_external_account(account: str, config: TenantConfig) -> bool:
    """Check whether a site admin account is outside the tenant.

    Claims-based login names without an address (e.g. group owner claims)
    are treated as internal.
    """
    account = account.lower()
    if "#ext#" in account:
        return True
    if "@" not in account or "|" in account:
        return False
    return not config.is_internal(account)


class SiteAuditor:
    """Apply the audit rules to SharePoint sites."""

    def __init__(self, config: TenantConfig | None = None) -> None:
        """Initialize the auditor.

        Args:
            config: Tenant config with domains and thresholds (defaults to config/tenant.json)
        """
        self.config = config or get_tenant_config()

    def check_site(self, site: SiteInfo, now: datetime) -> list[Finding]:
        """Run every rule against a site.

        Args:
            site: Site to check
            now: Reference time for inactivity

        Returns:
            Findings, most severe first
        """
        findings: list[Finding] = []

        # Sharing
        if site.sharing_capability == ANONYMOUS_SHARING:
            findings.append(
                Finding(
                    "anonymous_sharing",
                    Severity.HIGH,
                    "Anyone links allowed (sharing: new and existing guests)",
                )
            )
        elif site.sharing_capability in EXTERNAL_SHARING:
            findings.append(
                Finding(
                    "external_sharing",
                    Severity.MEDIUM,
                    f"External sharing enabled ({site.sharing_capability})",
                )
            )

        # Ownership
        if not site.owner and site.admins == []:
            findings.append(Finding("no_owner", Severity.HIGH, "Site has no owner"))
        elif not site.owner and site.admins is None:
            findings.append(
                Finding(
                    "owner_unknown",
                    Severity.MEDIUM,
                    "Site has no primary owner and its admins are unknown (not read)",
                )
            )

        if site.admins:
            external = sorted(a for a in site.admins if _is_external_account(a, self.config))
            if external:
                findings.append(
                    Finding(
                        "external_admin",
                        Severity.HIGH,
                        f"External site collection admins: {', '.join(external)}",
                    )
                )

        # Activity
        if site.last_content_modified:
            idle = now - site.last_content_modified
            if idle > timedelta(days=self.config.inactive_site_days):
                findings.append(
                    Finding(
                        "inactive",
                        Severity.LOW,
                        f"No content changes for {idle.days} days "
                        f"(last {site.last_content_modified:%Y-%m-%d})",
                    )
                )

        # Storage
        percent = site.storage_percent
        if percent is not None and percent >= self.config.storage_warning_percent:
            findings.append(
                Finding(
                    "storage_warning",
                    Severity.MEDIUM,
                    f"Storage at {percent:.0f}% of quota "
                    f"({site.storage_used_mb:,.0f} / {site.storage_quota_mb:,.0f} MB)",
                )
            )

        if site.lock_state and site.lock_state != UNLOCKED:
            findings.append(Finding("locked", Severity.LOW, f"Site is locked ({site.lock_state})"))

        findings.sort(key=lambda f: f.severity.rank)
        return findings

    def audit(self, sites: list[SiteInfo], now: datetime | None = None) -> SiteAuditReport:
        """Audit a list of sites.

        Args:
            sites: Sites to audit
            now: Reference time (defaults to current UTC time)

        Returns:
            SiteAuditReport with sites ordered worst first
        """
        now = now or datetime.now(UTC)
        results = [SiteAuditResult(site, self.check_site(site, now)) for site in sites]

        def sort_key(result: SiteAuditResult) -> tuple:
            worst = result.worst_severity
            return (
                worst.rank if worst else len(Severity),
                -len(result.findings),
                result.site.url.lower(),
            )

        results.sort(key=sort_key)
        report = SiteAuditReport(
            generated=now,
            results=results,
            inactive_days=self.config.inactive_site_days,
            storage_warning_percent=self.config.storage_warning_percent,
        )
        logger.info(
            f"Audited {report.site_count} sites: {len(report.flagged)} with findings, "
            f"{len(report.findings)} findings total"
        )
        return report


async def run_site_audit(
    output_dir: Path | str | None = None,
    include_onedrive: bool = False,
    include_admins: bool = True,
    write_csv: bool = True,
    client: PnPClient | None = None,
    auditor: SiteAuditor | None = None,
) -> tuple[SiteAuditReport, dict[str, Path]] | None:
    """Fetch sites, audit them and write the report.

    Args:
        output_dir: Report directory (defaults to tenant config report_dir)
        include_onedrive: Include personal OneDrive sites
        include_admins: Read site collection admins for ownership checks
        write_csv: Also write a CSV of findings
        client: PnP client (created from env config if not given)
        auditor: Site auditor (created from tenant config if not given)

    Returns:
        (report, written paths), or None if sites couldn't be fetched
    """
    from m365admin.sharepoint.report import write_report

    client = client or PnPClient()
    auditor = auditor or SiteAuditor()

    sites = await client.get_tenant_sites(
        include_onedrive=include_onedrive,
        include_admins=include_admins,
    )
    if sites is None:
        return None

    report = auditor.audit(sites)
    paths = write_report(
        report,
        output_dir or auditor.config.report_dir,
        include_csv=write_csv,
    )
    return report, paths
