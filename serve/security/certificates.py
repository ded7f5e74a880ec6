"""Self-signed certificate provisioning for local TLS serving.

Generates an RSA key and a self-signed ``localhost`` certificate, either kept
in memory for the lifetime of the process or persisted as ``cert.pem`` and
``key.pem`` under a certificate directory. Persisted material is reused on the
next start and never overwritten.
"""

import datetime
import ipaddress
import logging
import os
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from serve.domain.correlation_id import CorrelationLoggerAdapter

CERT_LOGGER = CorrelationLoggerAdapter(
    logging.getLogger("serve.security.certificates"), {}
)

CERTIFICATE_FILENAME = "cert.pem"
PRIVATE_KEY_FILENAME = "key.pem"
HOSTS = ("localhost",)
ORGANIZATION = "Acme Co"
RSA_KEY_BITS = 2048
RSA_PUBLIC_EXPONENT = 65537
VALIDITY = datetime.timedelta(days=365)
SERIAL_NUMBER_LIMIT = 1 << 128
PRIVATE_KEY_MODE = 0o600
CERTIFICATE_MODE = 0o644


class ProvisioningError(Exception):
    """Raised when certificate material cannot be generated or stored."""


@dataclass(frozen=True)
class CertificateMaterial:
    """PEM-encoded certificate and private key, plus their files if persisted."""

    certificate_pem: bytes
    private_key_pem: bytes
    certificate_path: Optional[Path] = None
    private_key_path: Optional[Path] = None

    @property
    def persisted(self) -> bool:
        """True when the material was read from or written to disk."""
        return self.certificate_path is not None


def generate_private_key() -> rsa.RSAPrivateKey:
    """Generate a fresh 2048-bit RSA key."""
    return rsa.generate_private_key(
        public_exponent=RSA_PUBLIC_EXPONENT, key_size=RSA_KEY_BITS
    )


def _subject_alternative_names(hosts: tuple[str, ...]) -> x509.SubjectAlternativeName:
    entries: list[x509.GeneralName] = []
    for host in hosts:
        try:
            entries.append(x509.IPAddress(ipaddress.ip_address(host)))
        except ValueError:
            entries.append(x509.DNSName(host))
    return x509.SubjectAlternativeName(entries)


def random_serial_number() -> int:
    """Draw a serial number uniformly from ``[1, 2**128)``."""
    # x509 forbids a zero serial.
    return secrets.randbelow(SERIAL_NUMBER_LIMIT - 1) + 1


def create_certificate(
    key: rsa.RSAPrivateKey,
    hosts: tuple[str, ...] = HOSTS,
    now: Optional[datetime.datetime] = None,
) -> x509.Certificate:
    """Build and self-sign a server certificate for ``hosts``.

    Subject and issuer are the same name, and the certificate is signed with
    the key it certifies. The validity window starts at ``now`` and lasts
    exactly 365 days.
    """
    not_before = now or datetime.datetime.now(datetime.timezone.utc)
    not_after = not_before + VALIDITY
    name = x509.Name([x509.NameAttribute(NameOID.ORGANIZATION_NAME, ORGANIZATION)])

    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
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
        .add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False
        )
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(_subject_alternative_names(hosts), critical=False)
        .add_extension(
            x509.SubjectKeyIdentifier.from_public_key(key.public_key()),
            critical=False,
        )
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(key.public_key()),
            critical=False,
        )
    )
    return builder.sign(key, hashes.SHA256())


def encode_certificate(certificate: x509.Certificate) -> bytes:
    """PEM-encode a certificate as a ``CERTIFICATE`` block."""
    return certificate.public_bytes(serialization.Encoding.PEM)


def encode_private_key(key: rsa.RSAPrivateKey) -> bytes:
    """PEM-encode an RSA key as an unencrypted ``RSA PRIVATE KEY`` block."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def generate_material() -> CertificateMaterial:
    """Generate a key and certificate held only in memory."""
    try:
        key = generate_private_key()
        certificate = create_certificate(key)
        return CertificateMaterial(
            certificate_pem=encode_certificate(certificate),
            private_key_pem=encode_private_key(key),
        )
    except (ValueError, TypeError, UnsupportedAlgorithm) as error:
        raise ProvisioningError(f"Failed to create certificate: {error}") from error


def _write_file(path: Path, payload: bytes, mode: int) -> None:
    # O_EXCL: an existing file is never opened, so it is never removed here.
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
    try:
        with os.fdopen(fd, "wb") as file_handle:
            file_handle.write(payload)
        # The umask may have narrowed the creation mode.
        os.chmod(path, mode)
    except OSError:
        path.unlink(missing_ok=True)
        raise


def _parse_material(certificate_pem: bytes, private_key_pem: bytes) -> None:
    try:
        x509.load_pem_x509_certificate(certificate_pem)
        serialization.load_pem_private_key(private_key_pem, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as error:
        raise ProvisioningError(f"Unreadable certificate material: {error}") from error


def _load_persisted(certificate_path: Path, key_path: Path) -> CertificateMaterial:
    certificate_pem = certificate_path.read_bytes()
    private_key_pem = key_path.read_bytes()
    try:
        _parse_material(certificate_pem, private_key_pem)
    except ProvisioningError as error:
        raise ProvisioningError(
            f"{error}; remove {certificate_path} and {key_path} to generate "
            "a new pair"
        ) from error
    CERT_LOGGER.info(
        "Reusing certificate pair on disk",
        extra={
            "event": "certificate_reused",
            "directory": certificate_path.parent.as_posix(),
        },
    )
    return CertificateMaterial(
        certificate_pem=certificate_pem,
        private_key_pem=private_key_pem,
        certificate_path=certificate_path,
        private_key_path=key_path,
    )


def _persist(directory: Path) -> CertificateMaterial:
    certificate_path = directory / CERTIFICATE_FILENAME
    key_path = directory / PRIVATE_KEY_FILENAME

    if certificate_path.exists() and key_path.exists():
        return _load_persisted(certificate_path, key_path)
    if certificate_path.exists() or key_path.exists():
        present, missing = (
            (certificate_path, key_path)
            if certificate_path.exists()
            else (key_path, certificate_path)
        )
        raise ProvisioningError(
            f"Incomplete certificate pair: {present} exists but {missing} "
            "does not; remove it to generate a new pair"
        )

    material = generate_material()
    directory.mkdir(parents=True, exist_ok=True)
    _write_file(certificate_path, material.certificate_pem, CERTIFICATE_MODE)
    try:
        _write_file(key_path, material.private_key_pem, PRIVATE_KEY_MODE)
    except OSError:
        # A lone cert.pem would block every later start.
        certificate_path.unlink(missing_ok=True)
        raise
    CERT_LOGGER.info(
        "Wrote certificate pair",
        extra={
            "event": "certificate_written",
            "directory": directory.as_posix(),
            "path": certificate_path.as_posix(),
        },
    )
    return CertificateMaterial(
        certificate_pem=material.certificate_pem,
        private_key_pem=material.private_key_pem,
        certificate_path=certificate_path,
        private_key_path=key_path,
    )


def provision(directory: Path, persist: bool) -> CertificateMaterial:
    """Return certificate material for the TLS listener.

    With ``persist`` the pair under ``directory`` is reused when both files
    exist, and generated and written there otherwise. Without it a new pair
    is generated in memory on every call.
    """
    if not persist:
        material = generate_material()
        CERT_LOGGER.info(
            "Generated in-memory certificate",
            extra={"event": "certificate_generated", "persist": False},
        )
        return material
    try:
        return _persist(Path(directory))
    except OSError as error:
        raise ProvisioningError(
            f"Failed to store certificate in {directory}: {error}"
        ) from error


def load_certificate(material: CertificateMaterial) -> x509.Certificate:
    """Parse the PEM certificate back into an ``x509.Certificate``."""
    try:
        return x509.load_pem_x509_certificate(material.certificate_pem)
    except ValueError as error:
        raise ProvisioningError(f"Unreadable certificate: {error}") from error
