"""Microsoft Graph API client wrapper."""

from azure.core.credentials import TokenCredential
from azure.identity import CertificateCredential, ClientSecretCredential
from msgraph import GraphServiceClient

from m365admin.core.config import get_graph_credentials

GRAPH_SCOPES = ["https://graph.microsoft.com/.default"]


def get_graph_credential() -> TokenCredential:
    """Build the app-only credential for the configured service principal.

    A configured certificate takes precedence over a client secret.
    """
    creds = get_graph_credentials()

    if creds.uses_certificate:
        return CertificateCredential(
            tenant_id=creds.tenant_id,
            client_id=creds.client_id,
            certificate_path=creds.certificate_path,
            password=creds.certificate_password,
        )

    return ClientSecretCredential(
        tenant_id=creds.tenant_id,
        client_id=creds.client_id,
        client_secret=creds.client_secret,
    )


def get_graph_client() -> GraphServiceClient:
    """Create and return an authenticated MS Graph client.

    Uses client credentials flow (app-only authentication) with
    credentials from environment variables.

    Returns:
        Authenticated GraphServiceClient instance
    """
    return GraphServiceClient(credentials=get_graph_credential(), scopes=GRAPH_SCOPES)
