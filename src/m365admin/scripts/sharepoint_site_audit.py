"""CLI script to audit SharePoint Online sites and write an HTML report.

Requires PowerShell 7+ with the PnP.PowerShell module and an app registration
with SharePoint Sites.FullControl.All and certificate authentication.

Usage:
    uv run sharepoint-site-audit
    uv run sharepoint-site-audit --output-dir reports --include-onedrive --no-csv
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from m365admin.sharepoint.audit import Severity, run_site_audit

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
logger = logging.getLogger(__name__)


async def run_audit(
    output_dir: Path | None,
    include_onedrive: bool,
    include_admins: bool,
    write_csv: bool,
    fail_on_high: bool,
) -> int:
    """Run the audit and print a summary.

    Returns:
        Exit code (0 = success, 1 = failure, 2 = high severity findings with --fail-on-high)
    """
    result = await run_site_audit(
        output_dir=output_dir,
        include_onedrive=include_onedrive,
        include_admins=include_admins,
        write_csv=write_csv,
    )
    if result is None:
        logger.error("Could not fetch SharePoint sites")
        return 1

    report, paths = result
    by_severity = report.count_by_severity()

    print()
    print("=" * 50)
    print("SharePoint Site Audit")
    print("=" * 50)
    print(f"  Sites:          {report.site_count}")
    print(f"  With findings:  {len(report.flagged)}")
    for severity in Severity:
        print(f"  {severity.value.capitalize() + ':':<15} {by_severity[severity]}")
    for kind, path in paths.items():
        print(f"  {kind.upper() + ':':<15} {path}")
    print()

    if fail_on_high and by_severity[Severity.HIGH]:
        return 2
    return 0


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Audit SharePoint Online site collections")
    parser.add_argument(
        "--output-dir",
        type=Path,
        help="Report directory (default: report_dir from config/tenant.json)",
    )
    parser.add_argument(
        "--include-onedrive",
        action="store_true",
        help="Include personal OneDrive sites",
    )
    parser.add_argument(
        "--skip-admins",
        action="store_true",
        help="Don't read site collection admins (faster, ownership checks use owner only)",
    )
    parser.add_argument("--no-csv", action="store_true", help="Only write the HTML report")
    parser.add_argument(
        "--fail-on-high",
        action="store_true",
        help="Exit with code 2 when any high severity finding exists",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        exit_code = asyncio.run(
            run_audit(
                output_dir=args.output_dir,
                include_onedrive=args.include_onedrive,
                include_admins=not args.skip_admins,
                write_csv=not args.no_csv,
                fail_on_high=args.fail_on_high,
            )
        )
    except (ValueError, FileNotFoundError) as e:
        logger.error(str(e))
        sys.exit(1)

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
