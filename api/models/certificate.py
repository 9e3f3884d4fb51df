"""
Certificate models for TLS lifecycle management.

Provides Pydantic models for the certificate bundle, its persisted
metadata, validation results, backups, and the ACME capability/port
probe results used by the acquisition engine.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict

from pydantic import BaseModel, Field


class AcquisitionMode(str, Enum):
    """How a certificate bundle is obtained. Exactly one per request."""
    AUTO = "auto"                  # Preserve if valid, else ACME with self-signed fallback
    PRESERVE = "preserve"          # Keep the existing bundle untouched
    SELF_SIGNED = "self-signed"    # Locally generated, untrusted by browsers
    ACME = "acme"                  # Publicly trusted via HTTP-01
    IMPORT = "import"              # Caller-supplied files
    DISABLED = "disabled"          # No TLS, bundle removed


class MetadataAction(str, Enum):
    """What the last acquisition did to the bundle."""
    GENERATED = "generated"
    IMPORTED = "imported"
    PRESERVED = "preserved"
    DISABLED = "disabled"


class ExpiryStatus(str, Enum):
    """Expiry classification of a certificate."""
    HEALTHY = "healthy"      # More days left than the warning threshold
    WARNING = "warning"      # Valid, but within the warning threshold
    EXPIRED = "expired"      # notAfter is in the past
    UNKNOWN = "unknown"      # Certificate could not be read


class PortState(str, Enum):
    """Occupancy of the ACME challenge port."""
    FREE = "free"
    OCCUPIED_BY_PROXY = "occupied_by_proxy"
    OCCUPIED_BY_OTHER = "occupied_by_other"


class BackupOrigin(str, Enum):
    STORE = "store"
    CONTAINER = "container"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# .cert_info key => model field
_INFO_KEYS = {
    "DOMAIN": "domain",
    "SSL_TYPE": "mode",
    "ACTION": "action",
    "GENERATED_AT": "generated_at",
    "VALIDITY_DAYS": "validity_days",
    "KEY_SIZE": "key_size",
    "CERT_FILE": "cert_file",
    "KEY_FILE": "key_file",
}


class CertificateMetadata(BaseModel):
    """
    Display metadata persisted next to the bundle as key=value lines.

    Never authoritative: validation always re-reads the certificate file.
    """
    domain: str = Field(..., description="Domain the bundle was acquired for")
    mode: AcquisitionMode = Field(..., description="Acquisition path that produced the bundle")
    action: MetadataAction = Field(default=MetadataAction.GENERATED, description="Last action on the bundle")
    generated_at: datetime = Field(default_factory=utc_now, description="UTC time of the action")
    validity_days: Optional[int] = Field(None, description="Validity period of the certificate in days")
    key_size: Optional[int] = Field(None, description="Private key size in bits")
    cert_file: Optional[str] = Field(None, description="Certificate path at time of writing")
    key_file: Optional[str] = Field(None, description="Key path at time of writing")

    def to_info_text(self) -> str:
        """Render as the key=value text stored in .cert_info."""
        generated = self.generated_at.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        values = {
            "DOMAIN": self.domain,
            "SSL_TYPE": self.mode.value,
            "ACTION": self.action.value,
            "GENERATED_AT": generated,
            "VALIDITY_DAYS": self.validity_days,
            "KEY_SIZE": self.key_size,
            "CERT_FILE": self.cert_file,
            "KEY_FILE": self.key_file,
        }
        lines = [f"{key}={value}" for key, value in values.items() if value is not None]
        return "\n".join(lines) + "\n"

    @classmethod
    def from_info_text(cls, text: str) -> "CertificateMetadata":
        """Parse .cert_info content. Unknown keys and comments are ignored."""
        data: Dict[str, str] = {}
        for line in text.splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, value = line.partition("=")
            field_name = _INFO_KEYS.get(key.strip().upper())
            if field_name and value.strip():
                data[field_name] = value.strip()
        if "generated_at" in data:
            data["generated_at"] = data["generated_at"].replace("Z", "+00:00")
        return cls.model_validate(data)


class CertificateBundle(BaseModel):
    """A certificate plus its matching private key, treated as one unit."""
    cert_pem: bytes = Field(..., description="PEM certificate (leaf first if a chain)")
    key_pem: bytes = Field(..., description="PEM private key")
    metadata: Optional[CertificateMetadata] = Field(None, description="Metadata record, if any")
    cert_path: Optional[str] = Field(None, description="File the certificate was read from")
    key_path: Optional[str] = Field(None, description="File the key was read from")


class ValidationResult(BaseModel):
    """
    Outcome of validating a bundle.

    Derived on every call and never cached; a missing or corrupt bundle
    is reported here rather than raised.
    """
    structurally_valid: bool = Field(False, description="Certificate and key both parse")
    key_matches_cert: bool = Field(False, description="Private key belongs to the certificate")
    domain_matches: Optional[bool] = Field(None, description="Domain check result (None if no domain given)")
    days_until_expiry: Optional[int] = Field(None, description="Whole days left, negative once expired")
    expiry_status: ExpiryStatus = Field(default=ExpiryStatus.UNKNOWN)
    domain: Optional[str] = Field(None, description="Domain that was checked")
    subject_cn: Optional[str] = None
    issuer_cn: Optional[str] = None
    san_names: List[str] = Field(default_factory=list, description="SAN DNS and IP entries")
    not_before: Optional[datetime] = None
    not_after: Optional[datetime] = None
    self_signed: Optional[bool] = None
    key_size: Optional[int] = None
    public_key_digest: Optional[str] = Field(None, description="SHA-256 of the certificate's public key modulus")
    not_yet_valid: bool = Field(False, description="Reference time is before notBefore")
    errors: List[str] = Field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        """Structure, key match, domain (if checked), already valid and not expired."""
        return (
            self.structurally_valid
            and self.key_matches_cert
            and self.domain_matches is not False
            and not self.not_yet_valid
            and self.expiry_status in (ExpiryStatus.HEALTHY, ExpiryStatus.WARNING)
        )


class BackupRecord(BaseModel):
    """A timestamped copy of a superseded bundle."""
    timestamp: str = Field(..., description="Backup suffix, YYYYmmdd_HHMMSS[_n]")
    cert_path: str
    key_path: str
    metadata_path: Optional[str] = None
    origin: BackupOrigin = BackupOrigin.STORE
    created_at: datetime = Field(default_factory=utc_now)


class AcmeCapability(BaseModel):
    """Result of probing whether ACME acquisition can run on this host."""
    installed: bool = Field(..., description="Challenge client is installed")
    privileged: bool = Field(..., description="Process may bind the challenge port")

    @property
    def available(self) -> bool:
        return self.installed and self.privileged


class PortOccupant(BaseModel):
    """A process listening on the challenge port."""
    process: Optional[str] = None
    pid: Optional[int] = None
    line: str = ""


class PortProbeResult(BaseModel):
    port: int
    state: PortState
    occupants: List[PortOccupant] = Field(default_factory=list)


class SelfSignedProfile(BaseModel):
    """Subject and SAN configuration for a self-signed certificate."""
    name: str = Field(..., description="development, production or minimal")
    key_size: int = Field(..., ge=1024)
    validity_days: int = Field(..., ge=1)
    country: str = "US"
    state: str = "State"
    locality: str = "City"
    organization: str = "Self-Hosted Stack"
    organizational_unit: Optional[str] = "IT Department"
    common_name: str
    dns_names: List[str] = Field(default_factory=list)
    ip_addresses: List[str] = Field(default_factory=list)


class FallbackNotice(BaseModel):
    """A reported downgrade or fallback step during acquisition."""
    code: str
    message: str
    suggestion: Optional[str] = None


class AcquisitionResult(BaseModel):
    """What ModeResolver did for one resolve call."""
    domain: str
    requested_mode: AcquisitionMode
    mode: AcquisitionMode = Field(..., description="Mode of the resulting bundle")
    action: MetadataAction
    bundle: Optional[CertificateBundle] = None
    backup: Optional[BackupRecord] = None
    notices: List[FallbackNotice] = Field(default_factory=list)
    validation: Optional[ValidationResult] = None


class InjectionResult(BaseModel):
    """Outcome of pushing a bundle into the proxy container."""
    container: str
    cert_path: str
    key_path: str
    reloaded: bool = Field(False, description="Graceful reload succeeded")
    restarted: bool = Field(False, description="Container was restarted instead")
    backup: Optional[BackupRecord] = None
    validation: ValidationResult
    https_ok: Optional[bool] = Field(None, description="HTTPS probe outcome (None if not configured)")
