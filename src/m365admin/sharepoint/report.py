"""Site audit report rendering (HTML and CSV)."""

import csv
import logging
from pathlib import Path

from jinja2 import Environment, FileSystemLoader

from m365admin.sharepoint.audit import Severity, SiteAuditReport

logger = logging.getLogger(__name__)

# Jinja2 template environment for report HTML.
_TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"
_jinja_env = Environment(loader=FileSystemLoader(_TEMPLATES_DIR), autoescape=True)

CSV_FIELDS = [
    "Site URL",
    "Title",
    "Template",
    "Owner",
    "Storage Used (MB)",
    "Last Content Modified",
    "Sharing",
    "Rule",
    "Severity",
    "Finding",
]


def render_html(report: SiteAuditReport) -> str:
    """Render the audit report as a standalone HTML page."""
    template = _jinja_env.get_template("site_audit.html")
    return template.render(
        report=report,
        severities=list(Severity),
        by_severity=report.count_by_severity(),
        by_rule=report.count_by_rule(),
    )


def write_csv(report: SiteAuditReport, path: Path | str) -> Path:
    """Write one CSV row per finding.

    Sites without findings get a single row with rule "ok" so the CSV is a
    complete inventory.
    """
    path = Path(path)
    with path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=CSV_FIELDS)
        writer.writeheader()

        for result in report.results:
            site = result.site
            base = {
                "Site URL": site.url,
                "Title": site.title,
                "Template": site.template,
                "Owner": site.owner or "",
                "Storage Used (MB)": f"{site.storage_used_mb:.0f}",
                "Last Content Modified": (
                    site.last_content_modified.strftime("%Y-%m-%d")
                    if site.last_content_modified
                    else ""
                ),
                "Sharing": site.sharing_capability,
            }
            if not result.findings:
                writer.writerow({**base, "Rule": "ok", "Severity": "", "Finding": ""})
                continue
            for finding in result.findings:
                writer.writerow(
                    {
                        **base,
                        "Rule": finding.rule,
                        "Severity": finding.severity.value,
                        "Finding": finding.message,
                    }
                )

    return path


def write_report(
    report: SiteAuditReport,
    output_dir: Path | str,
    include_csv: bool = True,
) -> dict[str, Path]:
    """Write the HTML (and optionally CSV) report with timestamped names.

    Returns:
        Dict of format ("html", "csv") to written path
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    stamp = report.generated.strftime("%Y%m%d-%H%M%S")

    paths: dict[str, Path] = {}
    html_path = output_dir / f"sharepoint-site-audit-{stamp}.html"
    html_path.write_text(render_html(report), encoding="utf-8")
    paths["html"] = html_path

    if include_csv:
        paths["csv"] = write_csv(report, output_dir / f"sharepoint-site-audit-{stamp}.csv")

    for kind, path in paths.items():
        logger.info(f"Wrote {kind.upper()} report: {path}")
    return paths
