"""PowerShell subprocess runner.

Exchange Online and SharePoint Online (PnP) admin operations go through the
vendor PowerShell modules, executed with PowerShell 7 (``pwsh``). Each call
runs a short script and reads its output back as JSON.
"""

import json
import logging
import subprocess
from datetime import UTC, datetime

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 120


def quote(value: object) -> str:
    """Return value as a single-quoted PowerShell string literal."""
    return "'" + str(value).replace("'", "''") + "'"


def secure_string(value: str) -> str:
    """Return a ConvertTo-SecureString expression for a plain-text value."""
    return f"(ConvertTo-SecureString -String {quote(value)} -AsPlainText -Force)"


def parse_json_output(output: str) -> dict | list:
    """Parse JSON from PowerShell output.

    Module banners may precede the JSON, so when the whole output does not
    parse, parsing is retried from the first ``{`` or ``[``.

    Returns:
        Parsed JSON, or {"raw": output} when no JSON can be found
    """
    try:
        return json.loads(output)
    except json.JSONDecodeError:
        pass

    starts = [i for i in (output.find("{"), output.find("[")) if i != -1]
    if starts:
        try:
            return json.loads(output[min(starts) :])
        except json.JSONDecodeError:
            pass
        # Only warn if output looks like it might contain JSON data
        logger.warning(f"Failed to parse JSON output: {output[:200]}")
    return {"raw": output}


def as_list(data: dict | list | None) -> list[dict]:
    """ConvertTo-Json emits a bare object for single results; normalise to a list."""
    if not data:
        return []
    if isinstance(data, dict):
        if "raw" in data and len(data) == 1:
            return []
        return [data]
    return [item for item in data if isinstance(item, dict)]


def parse_ps_datetime(value: str | None) -> datetime | None:
    """Parse a date emitted by ConvertTo-Json.

    Handles ISO 8601 strings and the legacy "/Date(1700000000000)/" form.
    Naive values are assumed to be UTC.
    """
    if not value:
        return None

    value = value.strip()
    if value.startswith("/Date(") and value.endswith(")/"):
        millis = value[6:-2].split("+")[0]
        try:
            return datetime.fromtimestamp(int(millis) / 1000, tz=UTC)
        except ValueError:
            return None

    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"Unparseable date from PowerShell: {value}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class PowerShellRunner:
    """Run PowerShell commands in a fresh, non-interactive pwsh process."""

    def __init__(
        self,
        timeout: int = DEFAULT_TIMEOUT_SECONDS,
        executable: str = "pwsh",
    ) -> None:
        """Initialize the runner.

        Args:
            timeout: Seconds before the process is killed
            executable: PowerShell executable name or path
        """
        self.timeout = timeout
        self.executable = executable

    def run(self, commands: list[str], parse_json: bool = True) -> dict | list | str | None:
        """Run PowerShell commands and return the result.

        Commands are joined with "; " so each must be a complete statement.

        Args:
            commands: List of PowerShell commands to execute
            parse_json: If True, parse output as JSON

        Returns:
            Parsed JSON, raw string output, or None on failure
        """
        script = "; ".join(commands)

        try:
            result = subprocess.run(  # noqa: S603
                [self.executable, "-NoProfile", "-NonInteractive", "-Command", script],
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            logger.error(f"PowerShell command timed out after {self.timeout}s")
            return None
        except FileNotFoundError:
            logger.error(f"PowerShell ({self.executable}) not found. Install PowerShell 7+.")
            return None
        except OSError as e:
            logger.error(f"Failed to run PowerShell: {e}")
            return None

        if result.returncode != 0:
            logger.error(f"PowerShell error: {result.stderr.strip()}")
            return None

        output = result.stdout.strip()
        if not output:
            return {} if parse_json else ""

        if parse_json:
            return parse_json_output(output)
        return output
