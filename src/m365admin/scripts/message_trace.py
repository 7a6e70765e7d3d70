"""CLI script to search Exchange Online message trace.

Requires PowerShell 7+ with the ExchangeOnlineManagement module and an app
registration with Exchange.ManageAsApp and certificate authentication.

Usage:
    uv run message-trace --recipient someone@example.org
    uv run message-trace --sender noreply@vendor.com --hours 72 --status Failed
    uv run message-trace --start 2026-10-01 --end 2026-10-05 --csv trace.csv
"""

import argparse
import asyncio
import csv
import json
import logging
import sys
from dataclasses import asdict
from datetime import UTC, datetime, timedelta
from pathlib import Path

from m365admin.exchange.client import (
    TRACE_STATUSES,
    ExchangeOnlineClient,
    MessageTraceEntry,
)

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
logger = logging.getLogger(__name__)

CSV_FIELDS = [
    "received",
    "sender",
    "recipient",
    "subject",
    "status",
    "message_id",
    "message_trace_id",
    "from_ip",
    "to_ip",
    "size",
]


def parse_datetime(value: str) -> datetime:
    """Parse a command-line date or datetime; naive values are UTC."""
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Invalid date '{value}', use YYYY-MM-DD[THH:MM]") from e
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def resolve_window(
    start: datetime | None,
    end: datetime | None,
    hours: int,
    now: datetime | None = None,
) -> tuple[datetime, datetime]:
    """Work out the search window from --start/--end/--hours."""
    now = now or datetime.now(UTC)
    end = end or now
    start = start or end - timedelta(hours=hours)
    return start, end


def write_csv(entries: list[MessageTraceEntry], path: Path) -> None:
    with path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=CSV_FIELDS)
        writer.writeheader()
        for entry in entries:
            row = asdict(entry)
            row["received"] = entry.received.isoformat() if entry.received else ""
            writer.writerow(row)
    logger.info(f"Wrote {len(entries)} entries to {path}")


def write_json(entries: list[MessageTraceEntry], path: Path) -> None:
    path.write_text(json.dumps([asdict(e) for e in entries], indent=2, default=str) + "\n")
    logger.info(f"Wrote {len(entries)} entries to {path}")


def print_entries(entries: list[MessageTraceEntry]) -> None:
    """Print trace entries as a table."""
    if not entries:
        print("No messages found")
        return

    print(f"{'Received (UTC)':<17} {'Status':<14} {'Sender':<32} {'Recipient':<32} Subject")
    print("-" * 120)
    for entry in entries:
        received = entry.received.strftime("%Y-%m-%d %H:%M") if entry.received else "-"
        print(
            f"{received:<17} {entry.status:<14} {entry.sender[:32]:<32} "
            f"{entry.recipient[:32]:<32} {entry.subject[:60]}"
        )
    print()
    print(f"{len(entries)} message(s)")


async def show_detail(client: ExchangeOnlineClient, entry: MessageTraceEntry) -> None:
    """Print the processing events for one trace entry."""
    events = await client.get_message_trace_detail(entry.message_trace_id, entry.recipient)
    print()
    print(f"{entry.subject} -> {entry.recipient} ({entry.status})")
    if events is None:
        print("  (detail unavailable)")
        return
    for event in events:
        when = event.date.strftime("%Y-%m-%d %H:%M:%S") if event.date else "-"
        print(f"  {when}  {event.event:<12} {event.detail}")


async def run_trace(args: argparse.Namespace) -> int:
    """Run the trace query and output the results.

    Returns:
        Exit code (0 = success, 1 = failure)
    """
    start, end = resolve_window(args.start, args.end, args.hours)
    logger.info(f"Searching message trace {start:%Y-%m-%d %H:%M} to {end:%Y-%m-%d %H:%M} UTC")

    client = ExchangeOnlineClient()
    entries = await client.get_message_trace(
        start,
        end,
        sender=args.sender,
        recipient=args.recipient,
        status=args.status,
        message_id=args.message_id,
        subject=args.subject,
        result_size=args.limit,
    )
    if entries is None:
        logger.error("Message trace failed")
        return 1

    if args.csv:
        write_csv(entries, args.csv)
    if args.json:
        write_json(entries, args.json)
    if not args.csv and not args.json:
        print_entries(entries)

    if args.detail:
        for entry in entries[: args.detail_limit]:
            await show_detail(client, entry)

    return 0


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Search Exchange Online message trace")
    parser.add_argument("--sender", help="Sender address")
    parser.add_argument("--recipient", help="Recipient address")
    parser.add_argument("--status", choices=sorted(TRACE_STATUSES), help="Delivery status")
    parser.add_argument("--message-id", help="Internet Message-ID header value")
    parser.add_argument("--subject", help="Subject contains")
    parser.add_argument(
        "--hours",
        type=int,
        default=48,
        help="Search the last N hours when --start is not given (default: 48)",
    )
    parser.add_argument("--start", type=parse_datetime, help="Window start (UTC)")
    parser.add_argument("--end", type=parse_datetime, help="Window end (UTC, default: now)")
    parser.add_argument("--limit", type=int, help="Max results, 1-5000")
    parser.add_argument(
        "--detail",
        action="store_true",
        help="Also show processing events for each message",
    )
    parser.add_argument(
        "--detail-limit",
        type=int,
        default=10,
        help="Max messages to fetch detail for (default: 10)",
    )
    parser.add_argument("--csv", type=Path, help="Write results to a CSV file")
    parser.add_argument("--json", type=Path, help="Write results to a JSON file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        exit_code = asyncio.run(run_trace(args))
    except (ValueError, FileNotFoundError) as e:
        logger.error(str(e))
        sys.exit(1)

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
