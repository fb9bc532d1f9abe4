"""Registry credential and certificate material."""

import datetime
import ipaddress
import os
from pathlib import Path

import bcrypt
from cryptography import x509
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from kubefleet.logging_config import get_logger

logger = get_logger(__name__)

CA_COMMON_NAME = "registry-ca"
CA_VALID_YEARS = 100


def generate_htpasswd(username: str, password: str) -> str:
    """Return an htpasswd line with a bcrypt password hash.

    The registry only accepts bcrypt entries, so the ``$2b$`` prefix python
    bcrypt produces is rewritten to the ``$2y$`` variant htpasswd writes.
    """
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")
    return f"{username}:{hashed.replace('$2b$', '$2y$', 1)}\n"


def generate_ca_cert(
    dns_names: list[str],
    ips: list[str] | None = None,
    common_name: str = CA_COMMON_NAME,
    years: int = CA_VALID_YEARS,
) -> tuple[bytes, bytes]:
    """Generate a self-signed CA certificate valid for the given names.

    Returns:
        Tuple of (certificate PEM, private key PEM)
    """
    key = rsa.generate_private_key(backend=default_backend(), public_exponent=65537, key_size=2048)
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])

    alt_names = [x509.DNSName(name) for name in dict.fromkeys(dns_names)]
    alt_names += [x509.IPAddress(ipaddress.ip_address(ip)) for ip in dict.fromkeys(ips or [])]

    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=365 * years))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.SubjectAlternativeName(alt_names), critical=False)
        .sign(key, hashes.SHA256(), default_backend())
    )

    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return cert_pem, key_pem


def write_cert_pair(cert_dir: Path, name: str, cert_pem: bytes, key_pem: bytes) -> None:
    """Write ``<name>.crt`` and ``<name>.key`` into ``cert_dir``."""
    cert_dir.mkdir(parents=True, exist_ok=True)
    (cert_dir / f"{name}.crt").write_bytes(cert_pem)
    key_path = cert_dir / f"{name}.key"
    key_path.write_bytes(key_pem)
    os.chmod(key_path, 0o600)
    logger.debug(f"Wrote registry certificate pair {name} to {cert_dir}")
