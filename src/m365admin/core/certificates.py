"""Certificate helpers for app-only (service principal) authentication.

Exchange Online and PnP PowerShell only accept certificates for app-only
auth, so new app registrations get a self-signed certificate whose public
part is uploaded to Entra ID and whose PFX is kept by the operator.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

logger = logging.getLogger(__name__)

MIN_KEY_SIZE = 2048
MAX_VALID_DAYS = 3650


def certificate_thumbprint(certificate: x509.Certificate) -> str:
    """SHA-1 thumbprint in the upper-case hex form Entra ID and Exchange display."""
    return certificate.fingerprint(hashes.SHA1()).hex().upper()  # noqa: S303


@dataclass
class GeneratedCertificate:
    """A freshly generated certificate and its private key."""

    certificate: x509.Certificate
    private_key: rsa.RSAPrivateKey

    @property
    def thumbprint(self) -> str:
        return certificate_thumbprint(self.certificate)

    @property
    def not_valid_before(self) -> datetime:
        return self.certificate.not_valid_before_utc

    @property
    def not_valid_after(self) -> datetime:
        return self.certificate.not_valid_after_utc

    def public_der(self) -> bytes:
        """DER encoded public certificate (the bytes uploaded as a keyCredential)."""
        return self.certificate.public_bytes(serialization.Encoding.DER)

    def public_pem(self) -> bytes:
        return self.certificate.public_bytes(serialization.Encoding.PEM)

    def private_key_pem(self) -> bytes:
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def to_pfx(self, password: str | None = None, friendly_name: str | None = None) -> bytes:
        """Serialize certificate and key as PKCS#12.

        Args:
            password: PFX password (None or empty for an unencrypted PFX)
            friendly_name: Optional friendly name stored in the bundle
        """
        if password:
            encryption = serialization.BestAvailableEncryption(password.encode("utf-8"))
        else:
            encryption = serialization.NoEncryption()

        return pkcs12.serialize_key_and_certificates(
            name=friendly_name.encode("utf-8") if friendly_name else None,
            key=self.private_key,
            cert=self.certificate,
            cas=None,
            encryption_algorithm=encryption,
        )

    def write(
        self,
        directory: Path | str,
        name: str,
        password: str | None = None,
    ) -> dict[str, Path]:
        """Write the certificate in the formats the admin tooling needs.

        Files written:
            <name>.cer  DER public certificate, for upload to the app registration
            <name>.pem  private key followed by the certificate (azure-identity)
            <name>.pfx  PKCS#12 bundle (Exchange Online / PnP PowerShell)

        Returns:
            Dict of format ("cer", "pem", "pfx") to written path
        """
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)

        paths = {
            "cer": directory / f"{name}.cer",
            "pem": directory / f"{name}.pem",
            "pfx": directory / f"{name}.pfx",
        }
        paths["cer"].write_bytes(self.public_der())
        paths["pem"].write_bytes(self.private_key_pem() + self.public_pem())
        paths["pfx"].write_bytes(self.to_pfx(password, friendly_name=name))

        # Key material is readable by the owner only
        paths["pem"].chmod(0o600)
        paths["pfx"].chmod(0o600)

        logger.info(f"Wrote certificate {self.thumbprint} to {directory}")
        return paths


def generate_self_signed_certificate(
    common_name: str,
    valid_days: int = 365,
    key_size: int = MIN_KEY_SIZE,
) -> GeneratedCertificate:
    """Generate a self-signed RSA certificate for app-only authentication.

    Args:
        common_name: Subject CN (usually the app registration display name)
        valid_days: Validity period in days (1-3650)
        key_size: RSA key size in bits (at least 2048)

    Returns:
        GeneratedCertificate holding the certificate and private key

    Raises:
        ValueError: If validity or key size is out of range
    """
    if not 1 <= valid_days <= MAX_VALID_DAYS:
        raise ValueError(f"valid_days must be between 1 and {MAX_VALID_DAYS}, got {valid_days}")
    if key_size < MIN_KEY_SIZE:
        raise ValueError(f"key_size must be at least {MIN_KEY_SIZE}, got {key_size}")

    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    subject = issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(UTC)

    certificate = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=valid_days))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .sign(private_key, hashes.SHA256())
    )

    generated = GeneratedCertificate(certificate=certificate, private_key=private_key)
    logger.info(f"Generated certificate CN={common_name}, thumbprint {generated.thumbprint}")
    return generated


def load_certificate(path: Path | str, password: str | None = None) -> x509.Certificate:
    """Load a certificate from a PEM, DER (.cer) or PFX file.

    Args:
        path: Certificate file path
        password: PFX password, if the bundle is encrypted

    Raises:
        ValueError: If the file does not contain a certificate
    """
    path = Path(path)
    data = path.read_bytes()

    if path.suffix.lower() in (".pfx", ".p12"):
        _, certificate, _ = pkcs12.load_key_and_certificates(
            data, password.encode("utf-8") if password else None
        )
        if certificate is None:
            raise ValueError(f"No certificate found in {path}")
        return certificate

    if b"-----BEGIN CERTIFICATE-----" in data:
        return x509.load_pem_x509_certificate(data)

    return x509.load_der_x509_certificate(data)
