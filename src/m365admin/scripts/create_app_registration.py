"""CLI script to create an app registration for unattended admin scripts.

Generates a self-signed certificate, creates a single-tenant app registration
with the certificate as its credential, creates the service principal and
optionally grants the requested application permissions.

Usage:
    uv run create-app-registration "Tenant Admin Scripts" \\
        --permission Sites.Read.All --permission Exchange.ManageAsApp --grant-consent
"""

import argparse
import asyncio
import getpass
import logging
import sys
from pathlib import Path

from m365admin.core.certificates import generate_self_signed_certificate
from m365admin.core.config import get_graph_credentials
from m365admin.entra.app_registrations import AppRegistrationError, AppRegistrationManager

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
logger = logging.getLogger(__name__)

# Silence verbose HTTP request logging
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("azure").setLevel(logging.WARNING)
logging.getLogger("msal").setLevel(logging.WARNING)


def cert_file_name(display_name: str) -> str:
    """File-system friendly base name for the generated certificate."""
    name = "".join(c if c.isalnum() else "-" for c in display_name.lower())
    return "-".join(part for part in name.split("-") if part) or "app"


async def create_app(
    display_name: str,
    permissions: list[str],
    cert_dir: Path | None,
    cert_password: str | None,
    cert_valid_days: int,
    create_secret: bool,
    secret_valid_days: int,
    grant_consent: bool,
) -> int:
    """Create the app registration and print its connection details.

    Returns:
        Exit code (0 = success, 1 = failure)
    """
    certificate = None
    cert_paths: dict[str, Path] = {}
    if cert_dir:
        certificate = generate_self_signed_certificate(display_name, valid_days=cert_valid_days)

    manager = AppRegistrationManager()
    try:
        created = await manager.create_app_registration(
            display_name,
            certificate=certificate,
            application_permissions=permissions,
            create_secret=create_secret,
            secret_valid_days=secret_valid_days,
            grant_admin_consent=grant_consent,
        )
    except AppRegistrationError as e:
        logger.error(str(e))
        if e.app_id and certificate and cert_dir:
            # The certificate is already uploaded to the app
            paths = certificate.write(cert_dir, cert_file_name(display_name), cert_password)
            for kind, path in paths.items():
                logger.warning(f"Certificate ({kind}) for app {e.app_id} saved to {path}")
        return 1

    # Only keep the private key once the app actually exists
    if certificate and cert_dir:
        cert_paths = certificate.write(cert_dir, cert_file_name(display_name), cert_password)

    tenant_id = get_graph_credentials().tenant_id
    app = created.application

    print()
    print("=" * 60)
    print(f"App registration: {app.display_name}")
    print("=" * 60)
    print(f"  Tenant ID:          {tenant_id}")
    print(f"  Client (app) ID:    {app.app_id}")
    print(f"  Object ID:          {app.id}")
    print(f"  Service principal:  {created.service_principal_id}")
    if created.certificate_thumbprint:
        print(f"  Cert thumbprint:    {created.certificate_thumbprint}")
    for kind, path in cert_paths.items():
        print(f"  Certificate ({kind}):  {path}")
    if permissions:
        print(f"  Requested:          {', '.join(permissions)}")
    if grant_consent:
        print(f"  Granted:            {', '.join(created.granted_roles) or '(none)'}")
        missing = len(permissions) - len(created.granted_roles)
        if missing:
            logger.warning(f"{missing} permission(s) could not be granted, see errors above")
    if created.secret_text:
        print()
        print("  Client secret (shown once, store it now):")
        print(f"  {created.secret_text}")
    print()

    if grant_consent and len(created.granted_roles) < len(permissions):
        return 1
    return 0


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Create an Entra ID app registration with certificate authentication",
    )
    parser.add_argument("display_name", help="Display name for the app registration")
    parser.add_argument(
        "--permission",
        action="append",
        dest="permissions",
        default=[],
        help="Application permission to request, e.g. User.Read.All, Exchange.ManageAsApp, "
        "SharePoint:Sites.FullControl.All (can be specified multiple times)",
    )
    parser.add_argument(
        "--cert-dir",
        type=Path,
        default=Path("certs"),
        help="Directory for the generated certificate files (default: certs)",
    )
    parser.add_argument(
        "--no-certificate",
        action="store_true",
        help="Don't generate or upload a certificate",
    )
    parser.add_argument(
        "--cert-valid-days",
        type=int,
        default=365,
        help="Certificate lifetime in days (default: 365)",
    )
    parser.add_argument(
        "--cert-password",
        action="store_true",
        help="Prompt for a password to protect the .pfx file",
    )
    parser.add_argument("--secret", action="store_true", help="Also create a client secret")
    parser.add_argument(
        "--secret-valid-days",
        type=int,
        default=180,
        help="Client secret lifetime in days (default: 180)",
    )
    parser.add_argument(
        "--grant-consent",
        action="store_true",
        help="Grant admin consent for the requested permissions",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.no_certificate and not args.secret:
        parser.error("--no-certificate requires --secret (the app needs a credential)")

    password = getpass.getpass("PFX password: ") if args.cert_password else None

    try:
        exit_code = asyncio.run(
            create_app(
                args.display_name,
                permissions=args.permissions,
                cert_dir=None if args.no_certificate else args.cert_dir,
                cert_password=password,
                cert_valid_days=args.cert_valid_days,
                create_secret=args.secret,
                secret_valid_days=args.secret_valid_days,
                grant_consent=args.grant_consent,
            )
        )
    except ValueError as e:
        logger.error(str(e))
        sys.exit(1)

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
