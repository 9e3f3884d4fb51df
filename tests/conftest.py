"""
Global test fixtures.

Provides isolated settings pointing at a temporary SSL root, a mocked
Docker service, and a factory for throwaway certificate/key pairs.
"""

import ipaddress
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "api"))


from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtensionOID, NameOID

from config import Settings

_KEYS: list = []


def _rsa_key(index: int = 0):
    """Reuse generated keys across tests; RSA generation is slow."""
    while len(_KEYS) <= index:
        _KEYS.append(rsa.generate_private_key(public_exponent=65537, key_size=2048))
    return _KEYS[index]


def make_pem_pair(
    common_name: str = "example.com",
    dns_names: list[str] | None = None,
    ip_addresses: list[str] | None = None,
    days_valid: float = 90,
    days_before: float = 1,
    key_index: int = 0,
    signing_key_index: int | None = None,
    san_der: bytes | None = None,
) -> tuple[bytes, bytes]:
    """
    Build a self-signed certificate and return (cert_pem, key_pem).

    ``signing_key_index`` different from ``key_index`` produces a
    certificate whose public key does not match the returned private key.
    ``san_der`` replaces the SAN extension with raw, possibly malformed, DER.
    """
    key = _rsa_key(key_index)
    cert_key = _rsa_key(signing_key_index if signing_key_index is not None else key_index)

    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(cert_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=days_before))
        .not_valid_after(now + timedelta(days=days_valid))
    )
    entries = [x509.DNSName(n) for n in (dns_names if dns_names is not None else [common_name])]
    entries += [x509.IPAddress(ipaddress.ip_address(ip)) for ip in (ip_addresses or [])]
    if san_der is not None:
        builder = builder.add_extension(
            x509.UnrecognizedExtension(ExtensionOID.SUBJECT_ALTERNATIVE_NAME, san_der), critical=False
        )
    elif entries:
        builder = builder.add_extension(x509.SubjectAlternativeName(entries), critical=False)
    cert = builder.sign(cert_key, hashes.SHA256())

    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return cert_pem, key_pem


@pytest.fixture
def pem_pair():
    """Factory for certificate/key PEM pairs."""
    return make_pem_pair


@pytest.fixture
def test_settings(tmp_path):
    """Settings isolated to a temporary directory, with small keys for speed."""
    return Settings(
        SSL_ROOT=str(tmp_path / "ssl"),
        CERT_NAME="server",
        LETSENCRYPT_LIVE_DIR=str(tmp_path / "letsencrypt" / "live"),
        PROD_KEY_SIZE=2048,
        DEV_KEY_SIZE=2048,
        LOCK_TIMEOUT=1.0,
        PROXY_CONTAINER_NAME="proxy-nginx",
        PROXY_HTTPS_PROBE_URL="",
    )


@pytest.fixture
def mock_docker_service():
    """Pre-configured mock docker service with common methods."""
    service = MagicMock()
    service.is_container_running = AsyncMock(return_value=True)
    service.get_container_status = AsyncMock(
        return_value={"running": True, "container_id": "abc123", "container_name": "proxy-nginx"}
    )
    service.stop_container = AsyncMock(return_value=True)
    service.start_container = AsyncMock(return_value=True)
    service.restart_container = AsyncMock(return_value=True)
    service.test_config = AsyncMock(return_value=(True, "nginx: configuration file test is successful", ""))
    service.reload_proxy = AsyncMock(return_value=(True, "", ""))
    service.put_file = AsyncMock(return_value=None)
    service.read_file = AsyncMock(return_value=None)
    service.exec_in_container = AsyncMock(return_value=(0, "", ""))
    return service


@pytest.fixture
def in_container_files(mock_docker_service):
    """
    Make the mock container behave like a filesystem.

    put_file stores content by path and read_file returns it.
    """
    files: dict[str, bytes] = {}

    async def _put(path, content, mode=0o644, name=None):
        files[path] = content

    async def _read(path, name=None):
        return files.get(path)

    mock_docker_service.put_file.side_effect = _put
    mock_docker_service.read_file.side_effect = _read
    return files
