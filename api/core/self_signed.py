"""
Self-signed certificate generation.

Builds a subject/SAN profile for a domain and signs a fresh RSA key
with it. Generation happens entirely in memory, so a failure can never
leave a key on disk without its certificate; the store writes the
resulting bundle atomically.
"""

import asyncio
import ipaddress
import logging
from datetime import datetime, timedelta, timezone

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from config import Settings, settings as default_settings
from core.cert_errors import GenerationFailedError
from core.cert_validator import normalize_domain
from models.certificate import (
    AcquisitionMode,
    CertificateBundle,
    CertificateMetadata,
    MetadataAction,
    SelfSignedProfile,
)

logger = logging.getLogger(__name__)

LOCAL_DNS_NAMES = ["localhost"]
LOCAL_IP_ADDRESSES = ["127.0.0.1", "::1"]

MINIMAL_KEY_SIZE = 2048
MINIMAL_VALIDITY_DAYS = 30


def is_local_domain(domain: str) -> bool:
    return normalize_domain(domain) in ("localhost", "localhost.localdomain")


def _is_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
        return True
    except ValueError:
        return False


class SelfSignedGenerator:
    """Generates self-signed certificate bundles."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or default_settings

    def build_profile(self, domain: str, production: bool | None = None) -> SelfSignedProfile:
        """
        Describe subject fields and SANs for a domain.

        ``localhost`` gets the development profile unless ``production`` is
        forced; any other domain gets the production profile.
        """
        domain = normalize_domain(domain)
        if production is None:
            production = not is_local_domain(domain)

        dns_names = list(LOCAL_DNS_NAMES)
        ip_addresses = list(LOCAL_IP_ADDRESSES)
        if _is_ip(domain):
            if domain not in ip_addresses:
                ip_addresses.append(domain)
        elif not is_local_domain(domain):
            dns_names.extend([domain, f"*.{domain}"])

        if production:
            return SelfSignedProfile(
                name="production",
                key_size=self.settings.prod_key_size,
                validity_days=self.settings.prod_validity_days,
                organization=self.settings.self_signed_organization,
                common_name=domain,
                dns_names=dns_names,
                ip_addresses=ip_addresses,
            )
        return SelfSignedProfile(
            name="development",
            key_size=self.settings.dev_key_size,
            validity_days=self.settings.dev_validity_days,
            organization=self.settings.self_signed_organization,
            organizational_unit="Development",
            common_name=domain,
            dns_names=dns_names,
            ip_addresses=ip_addresses,
        )

    def minimal_profile(self, domain: str) -> SelfSignedProfile:
        """Smallest usable profile, used when the regular one fails."""
        domain = normalize_domain(domain)
        return SelfSignedProfile(
            name="minimal",
            key_size=MINIMAL_KEY_SIZE,
            validity_days=MINIMAL_VALIDITY_DAYS,
            organization=self.settings.self_signed_organization,
            organizational_unit=None,
            common_name=domain,
            dns_names=[] if _is_ip(domain) else [domain],
            ip_addresses=[domain] if _is_ip(domain) else [],
        )

    async def generate(
        self,
        domain: str,
        key_size: int | None = None,
        validity_days: int | None = None,
        profile: SelfSignedProfile | None = None,
    ) -> CertificateBundle:
        """
        Generate a self-signed bundle for a domain.

        Args:
            domain: Certificate subject
            key_size: Override the profile's RSA key size
            validity_days: Override the profile's validity period
            profile: Explicit profile (defaults to build_profile(domain))

        Returns:
            In-memory CertificateBundle with metadata mode self-signed

        Raises:
            GenerationFailedError: If key generation or signing fails
        """
        if not domain or not domain.strip():
            raise ValueError("domain must not be empty")

        profile = profile or self.build_profile(domain)
        updates = {}
        if key_size is not None:
            updates["key_size"] = key_size
        if validity_days is not None:
            updates["validity_days"] = validity_days
        if updates:
            profile = profile.model_copy(update=updates)

        if profile.name == "development":
            logger.info(
                f"Generating development certificate for {profile.common_name} "
                f"({profile.key_size} bits, {profile.validity_days} days); browsers will not trust it"
            )
        else:
            logger.info(
                f"Generating {profile.name} self-signed certificate for {profile.common_name} "
                f"({profile.key_size} bits, {profile.validity_days} days)"
            )

        return await asyncio.to_thread(self._generate_sync, profile)

    def _generate_sync(self, profile: SelfSignedProfile) -> CertificateBundle:
        """Synchronous key generation and signing."""
        try:
            key = rsa.generate_private_key(public_exponent=65537, key_size=profile.key_size)

            name_attrs = [
                x509.NameAttribute(NameOID.COUNTRY_NAME, profile.country),
                x509.NameAttribute(NameOID.STATE_OR_PROVINCE_NAME, profile.state),
                x509.NameAttribute(NameOID.LOCALITY_NAME, profile.locality),
                x509.NameAttribute(NameOID.ORGANIZATION_NAME, profile.organization),
            ]
            if profile.organizational_unit:
                name_attrs.append(x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, profile.organizational_unit))
            name_attrs.append(x509.NameAttribute(NameOID.COMMON_NAME, profile.common_name))
            subject = x509.Name(name_attrs)

            san_entries = [x509.DNSName(name) for name in profile.dns_names]
            san_entries += [x509.IPAddress(ipaddress.ip_address(ip)) for ip in profile.ip_addresses]

            now = datetime.now(timezone.utc)
            builder = (
                x509.CertificateBuilder()
                .subject_name(subject)
                .issuer_name(subject)
                .public_key(key.public_key())
                .serial_number(x509.random_serial_number())
                .not_valid_before(now - timedelta(minutes=1))
                .not_valid_after(now + timedelta(days=profile.validity_days))
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
                .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
                .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
            )
            if san_entries:
                builder = builder.add_extension(x509.SubjectAlternativeName(san_entries), critical=False)

            cert = builder.sign(key, hashes.SHA256())
        except (ValueError, TypeError) as e:
            raise GenerationFailedError(
                f"Failed to generate {profile.name} certificate for {profile.common_name}: {e}",
                domain=profile.common_name,
                suggestion="Retry, or use a smaller key size",
            )

        cert_pem = cert.public_bytes(serialization.Encoding.PEM)
        key_pem = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )

        metadata = CertificateMetadata(
            domain=profile.common_name,
            mode=AcquisitionMode.SELF_SIGNED,
            action=MetadataAction.GENERATED,
            validity_days=profile.validity_days,
            key_size=profile.key_size,
        )
        logger.info(f"Generated self-signed certificate for {profile.common_name} (profile {profile.name})")
        return CertificateBundle(cert_pem=cert_pem, key_pem=key_pem, metadata=metadata)
