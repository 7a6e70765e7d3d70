"""Exchange Online PowerShell client.

Executes Exchange Online PowerShell cmdlets via subprocess for message
tracing and mailbox lookups.

This uses the official Exchange Online PowerShell module which is fully
supported by Microsoft.

Prerequisites:
1. Install Exchange Online Management module (3.7+ for the V2 trace cmdlets):
   Install-Module -Name ExchangeOnlineManagement

2. For app-only (unattended) authentication, you need:
   - Azure AD App Registration with Exchange.ManageAsApp permission
   - A certificate (self-signed or CA-signed) uploaded to the app
   - The certificate installed locally (or accessible as .pfx file)
   - App assigned an Exchange role that can run message trace
     (e.g. "Security Reader" or "Exchange Recipient Administrator")

References:
- https://learn.microsoft.com/en-us/powershell/exchange/app-only-auth-powershell-v2
- https://learn.microsoft.com/en-us/powershell/module/exchange/get-messagetracev2
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

from m365admin.core.config import get_exchange_credentials, get_tenant_config
from m365admin.core.powershell import (
    PowerShellRunner,
    as_list,
    parse_ps_datetime,
    quote,
    secure_string,
)

logger = logging.getLogger(__name__)

# Limits enforced by Get-MessageTraceV2
MAX_TRACE_WINDOW = timedelta(days=10)
MAX_TRACE_LOOKBACK = timedelta(days=90)
MAX_RESULT_SIZE = 5000

TRACE_STATUSES = frozenset(
    {
        "Delivered",
        "Expanded",
        "Failed",
        "FilteredAsSpam",
        "GettingStatus",
        "Pending",
        "Quarantined",
    }
)

# Dates are emitted as round-trip ISO strings so parsing doesn't depend on
# the PowerShell version's DateTime serialization
_TRACE_FIELDS = (
    "MessageId, MessageTraceId, "
    "@{n='Received';e={$_.Received.ToUniversalTime().ToString('o')}}, "
    "SenderAddress, RecipientAddress, Subject, Status, FromIP, ToIP, Size"
)
_DETAIL_FIELDS = "@{n='Date';e={$_.Date.ToUniversalTime().ToString('o')}}, Event, Action, Detail"
_MAILBOX_FIELDS = (
    "Identity, DisplayName, PrimarySmtpAddress, RecipientTypeDetails, "
    "UserPrincipalName, EmailAddresses, "
    "@{n='WhenCreated';e={$_.WhenCreated.ToUniversalTime().ToString('o')}}"
)


def _format_ps_date(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class MessageTraceEntry:
    """One recipient's delivery record from a message trace."""

    message_id: str
    message_trace_id: str
    received: datetime | None
    sender: str
    recipient: str
    subject: str
    status: str
    from_ip: str | None = None
    to_ip: str | None = None
    size: int | None = None

    @property
    def is_delivered(self) -> bool:
        return self.status == "Delivered"


@dataclass
class MessageTraceEvent:
    """A single processing event from a message trace detail."""

    date: datetime | None
    event: str
    action: str | None
    detail: str


@dataclass
class Mailbox:
    """Represents an Exchange Online mailbox."""

    identity: str
    display_name: str
    primary_smtp_address: str
    recipient_type: str
    user_principal_name: str | None = None
    email_addresses: list[str] | None = None
    created: datetime | None = None

    @property
    def is_shared(self) -> bool:
        return self.recipient_type == "SharedMailbox"


def validate_trace_window(
    start: datetime,
    end: datetime,
    now: datetime | None = None,
) -> tuple[datetime, datetime]:
    """Validate a message trace time window.

    Returns:
        (start, end) as timezone-aware UTC datetimes

    Raises:
        ValueError: If the window is empty, longer than 10 days, or starts
            more than 90 days ago
    """
    now = now or datetime.now(UTC)
    start = start if start.tzinfo else start.replace(tzinfo=UTC)
    end = end if end.tzinfo else end.replace(tzinfo=UTC)

    if start >= end:
        raise ValueError("Message trace start must be before end")
    if end - start > MAX_TRACE_WINDOW:
        raise ValueError(
            f"Message trace window is limited to {MAX_TRACE_WINDOW.days} days per query"
        )
    if start < now - MAX_TRACE_LOOKBACK:
        raise ValueError(
            f"Message trace data is only available for the last {MAX_TRACE_LOOKBACK.days} days"
        )
    return start.astimezone(UTC), end.astimezone(UTC)


class ExchangeOnlineClient:
    """Client for Exchange Online PowerShell operations.

    Executes Exchange cmdlets via subprocess using the official
    ExchangeOnlineManagement PowerShell module. Every call opens and
    closes its own connection.
    """

    def __init__(
        self,
        certificate_thumbprint: str | None = None,
        certificate_path: Path | str | None = None,
        certificate_password: str | None = None,
        organization: str | None = None,
        runner: PowerShellRunner | None = None,
    ) -> None:
        """Initialize the Exchange Online client.

        Args:
            certificate_thumbprint: Thumbprint of installed certificate (Windows)
            certificate_path: Path to .pfx certificate file (cross-platform)
            certificate_password: Password for the .pfx file
            organization: The organization domain (overrides env config)
            runner: PowerShell runner (defaults to pwsh with a 120s timeout)
        """
        creds = get_exchange_credentials()
        self.tenant_id = creds.tenant_id
        self.client_id = creds.client_id
        self.organization = organization or creds.organization
        # Use passed params if provided, otherwise use from credentials
        self.certificate_thumbprint = certificate_thumbprint or creds.certificate_thumbprint
        self.certificate_path = certificate_path or creds.certificate_path
        if certificate_password is not None:
            self.certificate_password = certificate_password
        else:
            self.certificate_password = creds.certificate_password
        self.runner = runner or PowerShellRunner()

    def _build_connect_command(self) -> str:
        """Build the Connect-ExchangeOnline command."""
        # Suppress banner output with *>$null to prevent it from mixing with JSON output
        # Prefer certificate_path over thumbprint (thumbprint is Windows-only)
        if self.certificate_path:
            # For empty password (Key Vault certs), skip the -CertificatePassword param
            if self.certificate_password:
                secure_str = f"-CertificatePassword {secure_string(self.certificate_password)} "
            else:
                secure_str = ""
            return (
                f"Connect-ExchangeOnline "
                f"-AppId {quote(self.client_id)} "
                f"-CertificateFilePath {quote(self.certificate_path)} "
                f"{secure_str}"
                f"-Organization {quote(self.organization)} -ShowBanner:$false *>$null"
            )
        elif self.certificate_thumbprint:
            return (
                f"Connect-ExchangeOnline "
                f"-AppId {quote(self.client_id)} "
                f"-CertificateThumbprint {quote(self.certificate_thumbprint)} "
                f"-Organization {quote(self.organization)} -ShowBanner:$false *>$null"
            )
        else:
            raise ValueError("Either certificate_thumbprint or certificate_path must be provided")

    def _run_powershell(
        self,
        commands: list[str],
        parse_json: bool = True,
    ) -> dict | list | str | None:
        """Run commands inside a connected Exchange Online session.

        Args:
            commands: List of PowerShell commands to execute
            parse_json: If True, parse output as JSON

        Returns:
            Parsed JSON, raw string output, or None on failure
        """
        full_script = [
            "Import-Module ExchangeOnlineManagement -ErrorAction Stop",
            self._build_connect_command(),
            *commands,
            "Disconnect-ExchangeOnline -Confirm:$false *>$null",
        ]
        return self.runner.run(full_script, parse_json=parse_json)

    async def get_message_trace(
        self,
        start: datetime,
        end: datetime,
        sender: str | None = None,
        recipient: str | None = None,
        status: str | None = None,
        message_id: str | None = None,
        subject: str | None = None,
        result_size: int | None = None,
    ) -> list[MessageTraceEntry] | None:
        """Search message trace data with Get-MessageTraceV2.

        Args:
            start: Start of the search window
            end: End of the search window (at most 10 days after start)
            sender: Filter by sender address
            recipient: Filter by recipient address
            status: Filter by delivery status (e.g. "Failed")
            message_id: Filter by Internet Message-ID header
            subject: Filter by subject (contains match)
            result_size: Max entries to return, 1-5000 (defaults to tenant config)

        Returns:
            List of trace entries (newest first), or None if PowerShell failed

        Raises:
            ValueError: If the search parameters violate the trace limits
        """
        start, end = validate_trace_window(start, end)

        if status and status not in TRACE_STATUSES:
            raise ValueError(
                f"Invalid message trace status '{status}'. "
                f"Valid: {', '.join(sorted(TRACE_STATUSES))}"
            )

        if result_size is None:
            result_size = get_tenant_config().message_trace_page_size
        if not 1 <= result_size <= MAX_RESULT_SIZE:
            raise ValueError(f"result_size must be between 1 and {MAX_RESULT_SIZE}")

        cmd_parts = [
            "Get-MessageTraceV2",
            f"-StartDate {quote(_format_ps_date(start))}",
            f"-EndDate {quote(_format_ps_date(end))}",
            f"-ResultSize {result_size}",
        ]
        if sender:
            cmd_parts.append(f"-SenderAddress {quote(sender)}")
        if recipient:
            cmd_parts.append(f"-RecipientAddress {quote(recipient)}")
        if status:
            cmd_parts.append(f"-Status {quote(status)}")
        if message_id:
            cmd_parts.append(f"-MessageId {quote(message_id)}")
        if subject:
            cmd_parts.append(f"-Subject {quote(subject)} -SubjectFilterType 'Contains'")
        cmd_parts.append("-ErrorAction Stop")

        commands = [
            f"$trace = {' '.join(cmd_parts)}",
            f"if ($trace) {{ $trace | Select-Object {_TRACE_FIELDS} | ConvertTo-Json -Depth 3 }}",
        ]

        logger.info(f"Running message trace {_format_ps_date(start)} - {_format_ps_date(end)}")
        result = await asyncio.to_thread(self._run_powershell, commands)
        if result is None:
            logger.error("Message trace failed")
            return None

        entries = [self._to_trace_entry(item) for item in as_list(result)]
        entries.sort(
            key=lambda e: e.received or datetime.min.replace(tzinfo=UTC),
            reverse=True,
        )
        logger.info(f"Message trace returned {len(entries)} entries")
        return entries

    async def get_message_trace_detail(
        self,
        message_trace_id: str,
        recipient: str,
    ) -> list[MessageTraceEvent] | None:
        """Get the processing events for one traced message and recipient.

        Args:
            message_trace_id: MessageTraceId from a trace entry
            recipient: Recipient address from the same entry

        Returns:
            Events in chronological order, or None if PowerShell failed
        """
        commands = [
            (
                f"$detail = Get-MessageTraceDetailV2 -MessageTraceId {quote(message_trace_id)} "
                f"-RecipientAddress {quote(recipient)} -ErrorAction Stop"
            ),
            f"if ($detail) {{ $detail | Select-Object {_DETAIL_FIELDS} | ConvertTo-Json }}",
        ]

        result = await asyncio.to_thread(self._run_powershell, commands)
        if result is None:
            logger.error(f"Message trace detail failed for {message_trace_id}")
            return None

        events = [
            MessageTraceEvent(
                date=parse_ps_datetime(item.get("Date")),
                event=item.get("Event") or "",
                action=item.get("Action"),
                detail=item.get("Detail") or "",
            )
            for item in as_list(result)
        ]
        events.sort(key=lambda e: e.date or datetime.min.replace(tzinfo=UTC))
        return events

    async def get_mailbox(self, identity: str) -> Mailbox | None:
        """Get a mailbox by identity.

        Args:
            identity: Mailbox name, alias, UPN or email address

        Returns:
            Mailbox if found, None otherwise
        """
        commands = [
            f"$mbx = Get-EXOMailbox -Identity {quote(identity)} -ErrorAction SilentlyContinue",
            f"if ($mbx) {{ $mbx | Select-Object {_MAILBOX_FIELDS} | ConvertTo-Json }}",
        ]

        result = await asyncio.to_thread(self._run_powershell, commands)
        if result and isinstance(result, dict) and "Identity" in result:
            addresses = result.get("EmailAddresses") or []
            if isinstance(addresses, str):
                addresses = [addresses]
            return Mailbox(
                identity=result.get("Identity", identity),
                display_name=result.get("DisplayName", ""),
                primary_smtp_address=result.get("PrimarySmtpAddress", ""),
                recipient_type=result.get("RecipientTypeDetails", ""),
                user_principal_name=result.get("UserPrincipalName"),
                email_addresses=list(addresses),
                created=parse_ps_datetime(result.get("WhenCreated")),
            )
        return None

    @staticmethod
    def _to_trace_entry(item: dict) -> MessageTraceEntry:
        size = item.get("Size")
        try:
            size = int(size) if size is not None else None
        except (TypeError, ValueError):
            size = None

        return MessageTraceEntry(
            message_id=item.get("MessageId") or "",
            message_trace_id=str(item.get("MessageTraceId") or ""),
            received=parse_ps_datetime(item.get("Received")),
            sender=item.get("SenderAddress") or "",
            recipient=item.get("RecipientAddress") or "",
            subject=item.get("Subject") or "",
            status=item.get("Status") or "",
            from_ip=item.get("FromIP"),
            to_ip=item.get("ToIP"),
            size=size,
        )
