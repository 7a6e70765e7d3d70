"""Entra ID app registration management."""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from uuid import UUID

from kiota_abstractions.base_request_configuration import RequestConfiguration
from msgraph import GraphServiceClient
from msgraph.generated.applications.applications_request_builder import (
    ApplicationsRequestBuilder,
)
from msgraph.generated.applications.item.add_password.add_password_post_request_body import (
    AddPasswordPostRequestBody,
)
from msgraph.generated.models.app_role_assignment import AppRoleAssignment
from msgraph.generated.models.application import Application
from msgraph.generated.models.key_credential import KeyCredential
from msgraph.generated.models.password_credential import PasswordCredential
from msgraph.generated.models.required_resource_access import RequiredResourceAccess
from msgraph.generated.models.resource_access import ResourceAccess
from msgraph.generated.models.service_principal import ServicePrincipal
from msgraph.generated.service_principals.service_principals_request_builder import (
    ServicePrincipalsRequestBuilder,
)

from m365admin.core.certificates import GeneratedCertificate
from m365admin.core.msgraph_client import get_graph_client

logger = logging.getLogger(__name__)

# Well-known first-party resource application IDs
MICROSOFT_GRAPH_APP_ID = "00000003-0000-0000-c000-000000000000"
EXCHANGE_ONLINE_APP_ID = "00000002-0000-0ff1-ce00-000000000000"
SHAREPOINT_ONLINE_APP_ID = "00000003-0000-0ff1-ce00-000000000000"

RESOURCE_PREFIXES = {
    "graph": MICROSOFT_GRAPH_APP_ID,
    "exchange": EXCHANGE_ONLINE_APP_ID,
    "sharepoint": SHAREPOINT_ONLINE_APP_ID,
}

# Roles that live on a resource other than Microsoft Graph
DEFAULT_ROLE_RESOURCES = {
    "Exchange.ManageAsApp": EXCHANGE_ONLINE_APP_ID,
}

MAX_SECRET_VALID_DAYS = 730

_APP_SELECT = [
    "id",
    "appId",
    "displayName",
    "signInAudience",
    "createdDateTime",
    "passwordCredentials",
    "keyCredentials",
]


class AppRegistrationError(Exception):
    """Raised when an app registration operation cannot be completed."""

    def __init__(self, message: str, app_id: str | None = None) -> None:
        # Set once the application exists in the tenant
        self.app_id = app_id
        super().__init__(message)


class CredentialStatus(Enum):
    """Expiry status of an app credential."""

    EXPIRED = "expired"
    EXPIRING = "expiring"
    OK = "ok"


@dataclass
class AppCredential:
    """A client secret or certificate on an app registration."""

    kind: str  # "secret" or "certificate"
    display_name: str | None
    key_id: str | None
    start: datetime | None
    end: datetime | None

    def is_expired(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(UTC)
        return self.end is not None and self.end <= now

    def days_remaining(self, now: datetime | None = None) -> int | None:
        """Whole days until expiry (negative once expired), None without an end date."""
        if self.end is None:
            return None
        now = now or datetime.now(UTC)
        return (self.end - now).days

    def expires_within(self, days: int, now: datetime | None = None) -> bool:
        """Not yet expired, but expiring within the given number of days."""
        now = now or datetime.now(UTC)
        if self.end is None or self.is_expired(now):
            return False
        return self.end - now <= timedelta(days=days)

    def status(self, warning_days: int, now: datetime | None = None) -> CredentialStatus:
        if self.is_expired(now):
            return CredentialStatus.EXPIRED
        if self.expires_within(warning_days, now):
            return CredentialStatus.EXPIRING
        return CredentialStatus.OK


@dataclass
class AppRegistration:
    """Represents an Entra ID app registration."""

    id: str
    app_id: str
    display_name: str
    sign_in_audience: str | None = None
    created: datetime | None = None
    credentials: list[AppCredential] = field(default_factory=list)

    @property
    def secrets(self) -> list[AppCredential]:
        return [c for c in self.credentials if c.kind == "secret"]

    @property
    def certificates(self) -> list[AppCredential]:
        return [c for c in self.credentials if c.kind == "certificate"]

    def expired_credentials(self, now: datetime | None = None) -> list[AppCredential]:
        return [c for c in self.credentials if c.is_expired(now)]

    def expiring_credentials(self, days: int, now: datetime | None = None) -> list[AppCredential]:
        return [c for c in self.credentials if c.expires_within(days, now)]


@dataclass
class CreatedApp:
    """Result of creating an app registration.

    secret_text is only available at creation time; it cannot be read back.
    """

    application: AppRegistration
    service_principal_id: str
    secret_text: str | None = None
    certificate_thumbprint: str | None = None
    granted_roles: list[str] = field(default_factory=list)


@dataclass
class CredentialReportRow:
    """One credential in an expiry report."""

    app: AppRegistration
    credential: AppCredential
    status: CredentialStatus
    days_remaining: int | None


@dataclass
class _ResolvedRole:
    name: str
    resource_app_id: str
    resource_sp_id: str
    role_id: UUID


def parse_permission(permission: str) -> tuple[str, str]:
    """Split a permission string into (resource app ID, role name).

    Accepts "User.Read.All" (Microsoft Graph), "Exchange.ManageAsApp"
    (Exchange Online) or an explicit "SharePoint:Sites.FullControl.All" /
    "Graph:..." / "Exchange:..." prefix.
    """
    if ":" in permission:
        prefix, _, name = permission.partition(":")
        resource = RESOURCE_PREFIXES.get(prefix.strip().lower())
        if not resource:
            raise AppRegistrationError(
                f"Unknown resource prefix '{prefix}' in '{permission}'. "
                f"Valid: {', '.join(sorted(RESOURCE_PREFIXES))}"
            )
        return resource, name.strip()

    name = permission.strip()
    return DEFAULT_ROLE_RESOURCES.get(name, MICROSOFT_GRAPH_APP_ID), name


def _escape_odata(value: str) -> str:
    return value.replace("'", "''")


class AppRegistrationManager:
    """Manage app registrations and their service principals in Entra ID."""

    def __init__(self) -> None:
        """Initialize the app registration manager."""
        self.client: GraphServiceClient = get_graph_client()

    async def list_app_registrations(self) -> list[AppRegistration]:
        """Fetch all app registrations with their credentials.

        Returns:
            List of AppRegistration objects
        """
        logger.info("Fetching app registrations")

        query_params = ApplicationsRequestBuilder.ApplicationsRequestBuilderGetQueryParameters(
            select=_APP_SELECT,
            top=999,
        )
        config = RequestConfiguration(query_parameters=query_params)
        result = await self.client.applications.get(request_configuration=config)

        apps = []
        if result and result.value:
            apps.extend(self._to_app_registration(app) for app in result.value)

        # Handle pagination
        while result and result.odata_next_link:
            result = await self.client.applications.with_url(result.odata_next_link).get()
            if result and result.value:
                apps.extend(self._to_app_registration(app) for app in result.value)

        logger.info(f"Found {len(apps)} app registrations")
        return apps

    async def get_app_by_name(self, display_name: str) -> AppRegistration | None:
        """Get an app registration by exact display name.

        Args:
            display_name: The app's display name

        Returns:
            AppRegistration if found, None otherwise
        """
        query_params = ApplicationsRequestBuilder.ApplicationsRequestBuilderGetQueryParameters(
            filter=f"displayName eq '{_escape_odata(display_name)}'",
            select=_APP_SELECT,
        )
        config = RequestConfiguration(query_parameters=query_params)
        result = await self.client.applications.get(request_configuration=config)

        if result and result.value:
            if len(result.value) > 1:
                logger.warning(f"Multiple app registrations named '{display_name}'")
            return self._to_app_registration(result.value[0])
        return None

    async def _get_resource_service_principal(self, resource_app_id: str) -> ServicePrincipal:
        """Look up the tenant's service principal for a first-party resource."""
        query_params = (
            ServicePrincipalsRequestBuilder.ServicePrincipalsRequestBuilderGetQueryParameters(
                filter=f"appId eq '{resource_app_id}'",
                select=["id", "appId", "displayName", "appRoles"],
            )
        )
        config = RequestConfiguration(query_parameters=query_params)
        result = await self.client.service_principals.get(request_configuration=config)

        if not result or not result.value:
            raise AppRegistrationError(
                f"Service principal for resource {resource_app_id} not found"
            )
        return result.value[0]

    async def resolve_permissions(self, permissions: list[str]) -> list[_ResolvedRole]:
        """Resolve application permission names to app role IDs.

        Raises:
            AppRegistrationError: If a permission name doesn't exist on its resource
        """
        resources: dict[str, ServicePrincipal] = {}
        resolved: list[_ResolvedRole] = []
        unknown: list[str] = []

        for permission in permissions:
            resource_app_id, name = parse_permission(permission)
            if resource_app_id not in resources:
                resources[resource_app_id] = await self._get_resource_service_principal(
                    resource_app_id
                )
            resource = resources[resource_app_id]

            role = next(
                (
                    r
                    for r in resource.app_roles or []
                    if r.value == name
                    and r.is_enabled is not False
                    and "Application" in (r.allowed_member_types or [])
                ),
                None,
            )
            if role is None or role.id is None:
                unknown.append(permission)
                continue

            resolved.append(
                _ResolvedRole(
                    name=name,
                    resource_app_id=resource_app_id,
                    resource_sp_id=resource.id or "",
                    role_id=role.id,
                )
            )

        if unknown:
            raise AppRegistrationError(f"Unknown application permissions: {', '.join(unknown)}")
        return resolved

    async def create_app_registration(
        self,
        display_name: str,
        certificate: GeneratedCertificate | None = None,
        application_permissions: list[str] | tuple[str, ...] = (),
        create_secret: bool = False,
        secret_valid_days: int = 180,
        grant_admin_consent: bool = False,
    ) -> CreatedApp:
        """Create a single-tenant app registration and its service principal.

        Args:
            display_name: Display name for the new app
            certificate: Certificate to upload as a key credential
            application_permissions: Application (app-only) permissions to request
            create_secret: Also create a client secret
            secret_valid_days: Lifetime of the client secret
            grant_admin_consent: Grant the requested permissions immediately

        Returns:
            CreatedApp with the new app, service principal and any secret

        Raises:
            AppRegistrationError: If the name is taken, a permission is unknown,
                or Graph rejects a step
        """
        if create_secret and not 1 <= secret_valid_days <= MAX_SECRET_VALID_DAYS:
            raise AppRegistrationError(
                f"Secret lifetime must be between 1 and {MAX_SECRET_VALID_DAYS} days, "
                f"got {secret_valid_days}"
            )

        if await self.get_app_by_name(display_name):
            raise AppRegistrationError(f"An app registration named '{display_name}' already exists")

        # Resolve everything before creating anything
        roles = await self.resolve_permissions(list(application_permissions))

        required_access: dict[str, list[ResourceAccess]] = {}
        for role in roles:
            required_access.setdefault(role.resource_app_id, []).append(
                ResourceAccess(id=role.role_id, type="Role")
            )

        application = Application(
            display_name=display_name,
            sign_in_audience="AzureADMyOrg",
            required_resource_access=[
                RequiredResourceAccess(resource_app_id=resource_app_id, resource_access=access)
                for resource_app_id, access in required_access.items()
            ],
        )
        if certificate:
            application.key_credentials = [
                KeyCredential(
                    display_name=f"CN={display_name}",
                    type="AsymmetricX509Cert",
                    usage="Verify",
                    key=certificate.public_der(),
                    start_date_time=certificate.not_valid_before,
                    end_date_time=certificate.not_valid_after,
                )
            ]

        try:
            created = await self.client.applications.post(application)
        except Exception as e:
            raise AppRegistrationError(f"Failed to create app '{display_name}': {e}") from e
        if not created or not created.id:
            raise AppRegistrationError(f"Graph returned no application for '{display_name}'")

        logger.info(f"Created app registration: {display_name} (appId {created.app_id})")

        try:
            service_principal = await self.client.service_principals.post(
                ServicePrincipal(app_id=created.app_id)
            )
        except Exception as e:
            raise AppRegistrationError(
                f"App '{display_name}' created (id {created.id}) but its service principal "
                f"could not be created: {e}",
                app_id=created.app_id,
            ) from e
        sp_id = service_principal.id if service_principal else None
        if not sp_id:
            raise AppRegistrationError(
                f"Graph returned no service principal for '{display_name}'",
                app_id=created.app_id,
            )
        logger.info(f"Created service principal {sp_id}")

        secret_text = None
        if create_secret:
            secret = await self.add_client_secret(
                created.id,
                display_name=f"{display_name} secret",
                valid_days=secret_valid_days,
            )
            if not secret or not secret.secret_text:
                raise AppRegistrationError(
                    f"App '{display_name}' created (id {created.id}, service principal "
                    f"{sp_id}) but its client secret could not be added",
                    app_id=created.app_id,
                )
            secret_text = secret.secret_text

        granted: list[str] = []
        if grant_admin_consent and roles:
            granted = await self.grant_app_roles(sp_id, roles)

        return CreatedApp(
            application=self._to_app_registration(created),
            service_principal_id=sp_id,
            secret_text=secret_text,
            certificate_thumbprint=certificate.thumbprint if certificate else None,
            granted_roles=granted,
        )

    async def add_client_secret(
        self,
        application_id: str,
        display_name: str,
        valid_days: int = 180,
    ) -> PasswordCredential | None:
        """Add a client secret to an app registration.

        Args:
            application_id: Object ID of the application (not the appId)
            display_name: Description shown in the portal
            valid_days: Secret lifetime in days (max 730)

        Returns:
            The new PasswordCredential (secret_text is only returned here), or None on failure
        """
        if not 1 <= valid_days <= MAX_SECRET_VALID_DAYS:
            raise ValueError(f"valid_days must be between 1 and {MAX_SECRET_VALID_DAYS}")

        request_body = AddPasswordPostRequestBody(
            password_credential=PasswordCredential(
                display_name=display_name,
                end_date_time=datetime.now(UTC) + timedelta(days=valid_days),
            ),
        )

        try:
            secret = await self.client.applications.by_application_id(
                application_id
            ).add_password.post(request_body)
        except Exception as e:
            logger.error(f"Failed to add client secret to {application_id}: {e}")
            return None

        logger.info(f"Added client secret '{display_name}' to {application_id}")
        return secret

    async def grant_app_roles(
        self, service_principal_id: str, roles: list[_ResolvedRole]
    ) -> list[str]:
        """Grant admin consent for application permissions.

        Args:
            service_principal_id: The client app's service principal ID
            roles: Resolved roles to assign

        Returns:
            Names of the roles that were granted
        """
        granted = []
        for role in roles:
            assignment = AppRoleAssignment(
                principal_id=UUID(service_principal_id),
                resource_id=UUID(role.resource_sp_id),
                app_role_id=role.role_id,
            )
            try:
                await self.client.service_principals.by_service_principal_id(
                    service_principal_id
                ).app_role_assignments.post(assignment)
                granted.append(role.name)
                logger.info(f"Granted {role.name} to {service_principal_id}")
            except Exception as e:
                logger.error(f"Failed to grant {role.name} to {service_principal_id}: {e}")
        return granted

    async def delete_app_registration(self, application_id: str) -> bool:
        """Delete an app registration (its service principal goes with it).

        Args:
            application_id: Object ID of the application

        Returns:
            True if successful
        """
        try:
            await self.client.applications.by_application_id(application_id).delete()
            logger.info(f"Deleted app registration: {application_id}")
            return True
        except Exception as e:
            logger.error(f"Failed to delete app registration {application_id}: {e}")
            return False

    def _to_app_registration(self, app: Application) -> AppRegistration:
        """Convert MS Graph Application to AppRegistration."""
        credentials = [
            AppCredential(
                kind="secret",
                display_name=cred.display_name,
                key_id=str(cred.key_id) if cred.key_id else None,
                start=cred.start_date_time,
                end=cred.end_date_time,
            )
            for cred in app.password_credentials or []
        ]
        credentials.extend(
            AppCredential(
                kind="certificate",
                display_name=cred.display_name,
                key_id=str(cred.key_id) if cred.key_id else None,
                start=cred.start_date_time,
                end=cred.end_date_time,
            )
            for cred in app.key_credentials or []
        )

        return AppRegistration(
            id=app.id or "",
            app_id=app.app_id or "",
            display_name=app.display_name or "",
            sign_in_audience=app.sign_in_audience,
            created=app.created_date_time,
            credentials=credentials,
        )


def credential_report(
    apps: list[AppRegistration],
    warning_days: int,
    now: datetime | None = None,
    include_ok: bool = False,
) -> list[CredentialReportRow]:
    """Build an expiry report across app registrations.

    Args:
        apps: App registrations with credentials
        warning_days: Credentials expiring within this many days are "expiring"
        now: Reference time (defaults to current UTC time)
        include_ok: Also include credentials that are not expiring

    Returns:
        Rows sorted by expiry date, soonest (or longest expired) first
    """
    now = now or datetime.now(UTC)
    rows = []
    for app in apps:
        for cred in app.credentials:
            status = cred.status(warning_days, now)
            if status is CredentialStatus.OK and not include_ok:
                continue
            rows.append(
                CredentialReportRow(
                    app=app,
                    credential=cred,
                    status=status,
                    days_remaining=cred.days_remaining(now),
                )
            )

    far_future = datetime.max.replace(tzinfo=UTC)
    rows.sort(key=lambda r: (r.credential.end or far_future, r.app.display_name.lower()))
    return rows
