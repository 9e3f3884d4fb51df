"""
Certificate/key validation.

Checks a bundle for structural validity, key-pair match, domain
applicability and expiry. Validation never raises: missing or corrupt
material is reported through ValidationResult fields and errors.
"""

import hashlib
import ipaddress
import logging
import math
from datetime import datetime, timezone
from pathlib import Path

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import ExtensionOID, NameOID

from config import Settings, settings as default_settings
from models.certificate import CertificateBundle, ExpiryStatus, ValidationResult

logger = logging.getLogger(__name__)

_PARSE_ERRORS = (ValueError, TypeError, UnsupportedAlgorithm)


def load_leaf_certificate(cert_pem: bytes) -> x509.Certificate:
    """Load the first certificate of a PEM file (leaf of a fullchain)."""
    certs = x509.load_pem_x509_certificates(cert_pem)
    return certs[0]


def public_key_digest(public_key) -> str:
    """
    Deterministic digest identifying a public key.

    RSA keys are identified by their modulus; other key types by their
    DER SubjectPublicKeyInfo.
    """
    if isinstance(public_key, rsa.RSAPublicKey):
        n = public_key.public_numbers().n
        material = n.to_bytes((n.bit_length() + 7) // 8, "big")
    else:
        material = public_key.public_bytes(
            encoding=serialization.Encoding.DER, format=serialization.PublicFormat.SubjectPublicKeyInfo
        )
    return hashlib.sha256(material).hexdigest()


def _common_name(name: x509.Name) -> str | None:
    attrs = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    return str(attrs[0].value) if attrs else None


def _san_entries(cert: x509.Certificate) -> tuple[list[str], list[str]]:
    """Return (dns_names, ip_addresses) from the SAN extension."""
    try:
        san = cert.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME).value
    except x509.ExtensionNotFound:
        return [], []
    dns_names = san.get_values_for_type(x509.DNSName)
    ip_addresses = [str(ip) for ip in san.get_values_for_type(x509.IPAddress)]
    return dns_names, ip_addresses


def normalize_domain(domain: str) -> str:
    return domain.strip().lower().rstrip(".")


def matches_domain(domain: str, common_name: str | None, dns_names: list[str], ip_addresses: list[str]) -> bool:
    """
    Check whether a certificate applies to a domain.

    Matches the Common Name exactly, a SAN DNS entry exactly, or a
    wildcard SAN ``*.parent`` covering exactly one extra label. IP
    literals are matched against SAN IP entries.
    """
    domain = normalize_domain(domain)
    if not domain:
        return False

    if common_name and normalize_domain(common_name) == domain:
        return True

    try:
        ip = ipaddress.ip_address(domain)
    except ValueError:
        ip = None
    if ip is not None:
        return any(ipaddress.ip_address(entry) == ip for entry in ip_addresses)

    for entry in dns_names:
        entry = normalize_domain(entry)
        if entry == domain:
            return True
        if entry.startswith("*.") and "." in domain:
            _, parent = domain.split(".", 1)
            if parent == entry[2:]:
                return True
    return False


def days_until(not_after: datetime, now: datetime) -> int:
    """Whole days until not_after: partial days count while valid, negative once expired."""
    remaining = (not_after - now).total_seconds() / 86400
    if remaining > 0:
        return math.ceil(remaining)
    return min(-1, math.floor(remaining))


class CertificateValidator:
    """Validates certificate bundles against structure, key, domain and expiry."""

    def __init__(self, settings: Settings | None = None, store=None):
        self.settings = settings or default_settings
        self.store = store
        self.warning_days = self.settings.cert_expiry_warning_days

    def validate(
        self, bundle: CertificateBundle | None, domain: str | None = None, now: datetime | None = None
    ) -> ValidationResult:
        """
        Validate a bundle.

        Args:
            bundle: Bundle to inspect (None means no bundle exists)
            domain: If given, also check domain applicability
            now: Reference time (defaults to current UTC time)

        Returns:
            ValidationResult; never raises
        """
        if bundle is None:
            result = ValidationResult(domain=domain)
            result.errors.append("No certificate bundle present")
            if domain is not None:
                result.domain_matches = False
            return result
        return self.validate_pem(bundle.cert_pem, bundle.key_pem, domain=domain, now=now)

    def validate_files(
        self, cert_path: str | Path, key_path: str | Path, domain: str | None = None, now: datetime | None = None
    ) -> ValidationResult:
        """Validate a certificate/key pair on disk."""
        try:
            cert_pem = Path(cert_path).read_bytes()
            key_pem = Path(key_path).read_bytes()
        except OSError as e:
            result = ValidationResult(domain=domain, domain_matches=False if domain is not None else None)
            result.errors.append(f"Cannot read certificate files: {e}")
            return result
        return self.validate_pem(cert_pem, key_pem, domain=domain, now=now)

    def validate_current(self, domain: str | None = None) -> ValidationResult:
        """Validate whatever bundle the store currently holds."""
        if self.store is None:
            raise RuntimeError("CertificateValidator was created without a store")
        return self.validate(self.store.read(), domain=domain)

    def validate_pem(
        self, cert_pem: bytes, key_pem: bytes, domain: str | None = None, now: datetime | None = None
    ) -> ValidationResult:
        """Validate PEM-encoded certificate and key bytes."""
        now = now or datetime.now(timezone.utc)
        result = ValidationResult(domain=normalize_domain(domain) if domain is not None else None)

        cert = None
        try:
            cert = load_leaf_certificate(cert_pem)
        except _PARSE_ERRORS as e:
            result.errors.append(f"Certificate is not valid PEM X.509: {e}")

        private_key = None
        try:
            private_key = serialization.load_pem_private_key(key_pem, password=None)
        except _PARSE_ERRORS as e:
            result.errors.append(f"Private key is not a readable PEM key: {e}")

        if private_key is not None and not isinstance(private_key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
            result.errors.append(f"Unsupported private key type: {type(private_key).__name__}")
            private_key = None

        # Extensions, subject and public key are parsed lazily by cryptography.
        if cert is not None:
            try:
                cert_public = cert.public_key()
                result.public_key_digest = public_key_digest(cert_public)
                result.key_size = getattr(cert_public, "key_size", None)
                result.subject_cn = _common_name(cert.subject)
                result.issuer_cn = _common_name(cert.issuer)
                result.self_signed = cert.issuer == cert.subject
                dns_names, ip_addresses = _san_entries(cert)
                result.san_names = dns_names + ip_addresses
                result.not_before = cert.not_valid_before_utc
                result.not_after = cert.not_valid_after_utc
            except _PARSE_ERRORS + (x509.DuplicateExtension,) as e:
                result.errors.append(f"Certificate contents cannot be parsed: {e}")
                result.public_key_digest = None
                cert = None

        result.structurally_valid = cert is not None and private_key is not None

        if cert is not None:
            if private_key is not None:
                result.key_matches_cert = public_key_digest(private_key.public_key()) == result.public_key_digest
                if not result.key_matches_cert:
                    result.errors.append("Private key does not match certificate")

            if domain is not None:
                result.domain_matches = matches_domain(domain, result.subject_cn, dns_names, ip_addresses)
                if not result.domain_matches:
                    result.errors.append(f"Certificate does not cover {result.domain}")

            result.days_until_expiry = days_until(result.not_after, now)
            if now >= result.not_after:
                result.expiry_status = ExpiryStatus.EXPIRED
                result.errors.append(f"Certificate expired {-result.days_until_expiry} day(s) ago")
            elif result.days_until_expiry > self.warning_days:
                result.expiry_status = ExpiryStatus.HEALTHY
            else:
                result.expiry_status = ExpiryStatus.WARNING

            if now < result.not_before:
                result.not_yet_valid = True
                result.errors.append("Certificate is not yet valid")
        elif domain is not None:
            result.domain_matches = False

        logger.debug(
            f"Validated certificate (cn={result.subject_cn}, structure={result.structurally_valid}, "
            f"key_match={result.key_matches_cert}, expiry={result.expiry_status.value})"
        )
        return result
