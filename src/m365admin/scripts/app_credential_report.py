"""CLI script to report expired and expiring app registration credentials.

Usage:
    uv run app-credential-report                 # warn window from config/tenant.json
    uv run app-credential-report --days 60 --csv credentials.csv
"""

import argparse
import asyncio
import csv
import logging
import sys
from pathlib import Path

from m365admin.core.config import get_tenant_config
from m365admin.entra.app_registrations import (
    AppRegistrationManager,
    CredentialReportRow,
    CredentialStatus,
    credential_report,
)

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
logger = logging.getLogger(__name__)

# Silence verbose HTTP request logging
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("azure").setLevel(logging.WARNING)
logging.getLogger("msal").setLevel(logging.WARNING)

CSV_FIELDS = ["App", "App ID", "Type", "Credential", "Key ID", "Expires", "Days Left", "Status"]


def write_csv(rows: list[CredentialReportRow], path: Path) -> None:
    """Write report rows to CSV."""
    with path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=CSV_FIELDS)
        writer.writeheader()
        for row in rows:
            cred = row.credential
            writer.writerow(
                {
                    "App": row.app.display_name,
                    "App ID": row.app.app_id,
                    "Type": cred.kind,
                    "Credential": cred.display_name or "",
                    "Key ID": cred.key_id or "",
                    "Expires": cred.end.strftime("%Y-%m-%d") if cred.end else "",
                    "Days Left": "" if row.days_remaining is None else row.days_remaining,
                    "Status": row.status.value,
                }
            )
    logger.info(f"Wrote {len(rows)} rows to {path}")


def print_report(rows: list[CredentialReportRow], warning_days: int) -> None:
    """Print report rows as a table."""
    if not rows:
        print(f"No credentials expired or expiring within {warning_days} days")
        return

    print(f"{'Status':<9} {'Expires':<11} {'Days':>5}  {'Type':<11} App")
    print("-" * 72)
    for row in rows:
        cred = row.credential
        expires = cred.end.strftime("%Y-%m-%d") if cred.end else "-"
        days = "-" if row.days_remaining is None else str(row.days_remaining)
        label = f"{row.app.display_name}"
        if cred.display_name:
            label += f" ({cred.display_name})"
        print(f"{row.status.value:<9} {expires:<11} {days:>5}  {cred.kind:<11} {label}")


async def run_report(warning_days: int, include_ok: bool, csv_path: Path | None) -> int:
    """Fetch app registrations and report on their credentials.

    Returns:
        Exit code: 0 when nothing has expired, 1 when apps couldn't be fetched,
        2 when expired credentials exist
    """
    manager = AppRegistrationManager()
    try:
        apps = await manager.list_app_registrations()
    except Exception as e:
        logger.error(f"Failed to fetch app registrations: {e}")
        return 1

    rows = credential_report(apps, warning_days, include_ok=include_ok)
    print_report(rows, warning_days)

    if csv_path:
        write_csv(rows, csv_path)

    expired = sum(1 for r in rows if r.status is CredentialStatus.EXPIRED)
    expiring = sum(1 for r in rows if r.status is CredentialStatus.EXPIRING)
    logger.info(f"{len(apps)} apps: {expired} expired, {expiring} expiring credentials")
    return 2 if expired else 0


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Report expired and expiring app registration secrets and certificates",
    )
    parser.add_argument(
        "--days",
        type=int,
        help="Warn about credentials expiring within this many days "
        "(default: credential_expiry_warning_days from config/tenant.json)",
    )
    parser.add_argument("--all", action="store_true", help="Include credentials that are fine")
    parser.add_argument("--csv", type=Path, help="Write the report to a CSV file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        days = args.days
        if days is None:
            days = get_tenant_config().credential_expiry_warning_days
        exit_code = asyncio.run(run_report(days, include_ok=args.all, csv_path=args.csv))
    except (ValueError, FileNotFoundError) as e:
        logger.error(str(e))
        sys.exit(1)

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
