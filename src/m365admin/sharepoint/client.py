"""SharePoint Online client using PnP PowerShell.

Executes PnP.PowerShell cmdlets via subprocess against the SharePoint admin
center to inventory site collections.

Prerequisites:
1. Install the PnP PowerShell module:
   Install-Module -Name PnP.PowerShell

2. For app-only authentication, the app registration needs the
   SharePoint "Sites.FullControl.All" application permission and a
   certificate (the same one used for Exchange Online works).

References:
- https://pnp.github.io/powershell/articles/authentication.html
- https://pnp.github.io/powershell/cmdlets/Get-PnPTenantSite.html
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from m365admin.core.config import get_sharepoint_credentials
from m365admin.core.powershell import (
    PowerShellRunner,
    as_list,
    parse_ps_datetime,
    quote,
    secure_string,
)

logger = logging.getLogger(__name__)

# Tenant-wide inventories with per-site admin lookups take a while
TENANT_SCRIPT_TIMEOUT_SECONDS = 900

# Enums are stringified so ConvertTo-Json doesn't emit their integer values
_SITE_FIELDS = (
    "Url, Title, Template, Owner, StorageUsageCurrent, StorageQuota, "
    "@{n='LastContentModifiedDate';"
    "e={$_.LastContentModifiedDate.ToUniversalTime().ToString('o')}}, "
    "@{n='SharingCapability';e={\"$($_.SharingCapability)\"}}, "
    "@{n='LockState';e={\"$($_.LockState)\"}}, "
    "@{n='GroupId';e={\"$($_.GroupId)\"}}, "
    "IsHubSite"
)

EMPTY_GROUP_ID = "00000000-0000-0000-0000-000000000000"


@dataclass
class SiteInfo:
    """A SharePoint Online site collection."""

    url: str
    title: str
    template: str
    owner: str | None
    storage_used_mb: float
    storage_quota_mb: float
    last_content_modified: datetime | None
    sharing_capability: str
    lock_state: str
    group_id: str | None = None
    is_hub: bool = False
    # None when admins weren't requested or couldn't be read
    admins: list[str] | None = None

    @property
    def is_group_connected(self) -> bool:
        """Site belongs to a Microsoft 365 group (Teams / group sites)."""
        return bool(self.group_id)

    @property
    def is_onedrive(self) -> bool:
        return "-my.sharepoint.com/personal/" in self.url.lower()

    @property
    def storage_percent(self) -> float | None:
        """Storage usage as a percentage of quota, None when there is no quota."""
        if not self.storage_quota_mb:
            return None
        return self.storage_used_mb / self.storage_quota_mb * 100


def _to_float(value) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def _to_site_info(item: dict) -> SiteInfo:
    """Convert a Get-PnPTenantSite JSON object to SiteInfo."""
    group_id = item.get("GroupId") or None
    if group_id == EMPTY_GROUP_ID:
        group_id = None

    admins = None
    if "Admins" in item and not item.get("AdminError"):
        raw_admins = item.get("Admins") or []
        if isinstance(raw_admins, str):
            raw_admins = [raw_admins]
        admins = [a.lower() for a in raw_admins if a]
    elif item.get("AdminError"):
        logger.warning(f"Could not read admins for {item.get('Url')}: {item['AdminError']}")

    return SiteInfo(
        url=item.get("Url") or "",
        title=item.get("Title") or "",
        template=item.get("Template") or "",
        owner=(item.get("Owner") or "").lower() or None,
        storage_used_mb=_to_float(item.get("StorageUsageCurrent")),
        storage_quota_mb=_to_float(item.get("StorageQuota")),
        last_content_modified=parse_ps_datetime(item.get("LastContentModifiedDate")),
        sharing_capability=item.get("SharingCapability") or "",
        lock_state=item.get("LockState") or "",
        group_id=group_id,
        is_hub=bool(item.get("IsHubSite")),
        admins=admins,
    )


class PnPClient:
    """Client for SharePoint Online admin operations via PnP PowerShell."""

    def __init__(
        self,
        admin_url: str | None = None,
        certificate_thumbprint: str | None = None,
        certificate_path: Path | str | None = None,
        certificate_password: str | None = None,
        runner: PowerShellRunner | None = None,
    ) -> None:
        """Initialize the PnP client.

        Args:
            admin_url: SharePoint admin center URL (overrides env config)
            certificate_thumbprint: Thumbprint of installed certificate (Windows)
            certificate_path: Path to .pfx certificate file (cross-platform)
            certificate_password: Password for the .pfx file
            runner: PowerShell runner (defaults to pwsh with a long timeout)
        """
        creds = get_sharepoint_credentials()
        self.admin_url = (admin_url or creds.admin_url).rstrip("/")
        self.client_id = creds.client_id
        self.tenant = creds.tenant
        self.certificate_thumbprint = certificate_thumbprint or creds.certificate_thumbprint
        self.certificate_path = certificate_path or creds.certificate_path
        if certificate_password is not None:
            self.certificate_password = certificate_password
        else:
            self.certificate_password = creds.certificate_password
        self.runner = runner or PowerShellRunner(timeout=TENANT_SCRIPT_TIMEOUT_SECONDS)

    def _auth_params(self) -> str:
        """Certificate parameters shared by every Connect-PnPOnline call."""
        if self.certificate_path:
            params = (
                f"-ClientId {quote(self.client_id)} -Tenant {quote(self.tenant)} "
                f"-CertificatePath {quote(self.certificate_path)}"
            )
            if self.certificate_password:
                params += f" -CertificatePassword {secure_string(self.certificate_password)}"
            return params
        elif self.certificate_thumbprint:
            return (
                f"-ClientId {quote(self.client_id)} -Tenant {quote(self.tenant)} "
                f"-Thumbprint {quote(self.certificate_thumbprint)}"
            )
        else:
            raise ValueError("Either certificate_thumbprint or certificate_path must be provided")

    def _build_connect_command(self, url: str | None = None) -> str:
        """Build the Connect-PnPOnline command (admin center by default)."""
        return f"Connect-PnPOnline -Url {quote(url or self.admin_url)} {self._auth_params()}"

    def _run_powershell(
        self,
        commands: list[str],
        parse_json: bool = True,
    ) -> dict | list | str | None:
        """Run commands inside a connected PnP session."""
        full_script = [
            "Import-Module PnP.PowerShell -ErrorAction Stop",
            f"{self._build_connect_command()} -ErrorAction Stop",
            *commands,
            "Disconnect-PnPOnline -ErrorAction SilentlyContinue",
        ]
        return self.runner.run(full_script, parse_json=parse_json)

    def _admin_lookup_command(self, site_var: str) -> str:
        """Per-site admin lookup, run inside a foreach over tenant sites."""
        return (
            f"$admins = @(); $adminError = $null; "
            f"try {{ "
            f"$c = Connect-PnPOnline -Url {site_var}.Url {self._auth_params()} "
            f"-ReturnConnection -ErrorAction Stop; "
            f"$admins = @(Get-PnPSiteCollectionAdmin -Connection $c -ErrorAction Stop "
            f"| ForEach-Object {{ if ($_.Email) {{ $_.Email }} else {{ $_.LoginName }} }}) "
            f"}} catch {{ $adminError = $_.Exception.Message }}"
        )

    async def get_tenant_sites(
        self,
        include_onedrive: bool = False,
        include_admins: bool = False,
    ) -> list[SiteInfo] | None:
        """List site collections in the tenant.

        Args:
            include_onedrive: Include personal OneDrive sites
            include_admins: Also read each site's collection admins (one
                extra connection per site)

        Returns:
            List of SiteInfo, or None if PowerShell failed
        """
        get_sites = "Get-PnPTenantSite -ErrorAction Stop"
        if include_onedrive:
            get_sites = "Get-PnPTenantSite -IncludeOneDriveSites -ErrorAction Stop"

        if include_admins:
            commands = [
                f"$sites = {get_sites}",
                (
                    "$result = foreach ($s in $sites) { "
                    f"{self._admin_lookup_command('$s')}; "
                    f"$s | Select-Object {_SITE_FIELDS}, "
                    "@{n='Admins';e={$admins}}, @{n='AdminError';e={$adminError}} "
                    "}"
                ),
                "ConvertTo-Json -InputObject @($result) -Depth 3",
            ]
        else:
            commands = [
                f"$sites = {get_sites}",
                f"ConvertTo-Json -InputObject @($sites | Select-Object {_SITE_FIELDS}) -Depth 3",
            ]

        logger.info(f"Fetching tenant sites from {self.admin_url}")
        result = await asyncio.to_thread(self._run_powershell, commands)
        if result is None:
            logger.error("Failed to fetch tenant sites")
            return None

        if isinstance(result, dict) and "raw" in result:
            logger.error("Unexpected output from Get-PnPTenantSite")
            return None

        sites = [_to_site_info(item) for item in as_list(result)]
        logger.info(f"Found {len(sites)} sites")
        return sites

    async def get_site(self, url: str, include_admins: bool = False) -> SiteInfo | None:
        """Get a single site collection by URL.

        Returns:
            SiteInfo if found, None otherwise
        """
        commands = [f"$s = Get-PnPTenantSite -Identity {quote(url)} -ErrorAction SilentlyContinue"]
        select = f"$s | Select-Object {_SITE_FIELDS}"
        if include_admins:
            commands.append(f"if ($s) {{ {self._admin_lookup_command('$s')} }}")
            select += ", @{n='Admins';e={$admins}}, @{n='AdminError';e={$adminError}}"
        commands.append(f"if ($s) {{ {select} | ConvertTo-Json -Depth 3 }}")

        result = await asyncio.to_thread(self._run_powershell, commands)
        if result and isinstance(result, dict) and "Url" in result:
            return _to_site_info(result)
        return None
