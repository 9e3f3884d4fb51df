"""
Request and response models for the TLS command surface.

Responses never carry private key material; they summarise bundles
through metadata and validation results.
"""

import ipaddress
import re
from enum import Enum
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, Field, field_validator, model_validator

from models.certificate import (
    AcquisitionMode,
    BackupRecord,
    CertificateMetadata,
    FallbackNotice,
    InjectionResult,
    MetadataAction,
    ValidationResult,
)

_DOMAIN_RE = re.compile(r"^[a-z0-9]([a-z0-9.-]*[a-z0-9])?$")


def check_domain(v: str) -> str:
    """Normalise and validate a domain name, localhost or IP literal."""
    v = v.strip().lower().rstrip(".")
    if not v:
        raise ValueError("Domain must not be empty")
    try:
        ipaddress.ip_address(v)
        return v
    except ValueError:
        pass
    if len(v) > 253 or not _DOMAIN_RE.match(v) or ".." in v:
        raise ValueError(f"Invalid domain format: {v}")
    return v


class SetupRequest(BaseModel):
    """Input for acquiring (or disabling) the certificate."""
    domain: str = Field(..., description="Domain name, localhost, or IP address", examples=["example.com"])
    mode: AcquisitionMode = Field(default=AcquisitionMode.AUTO, description="Acquisition mode")
    import_path: Optional[str] = Field(None, description="Certificate file or directory (import mode only)")
    email: Optional[str] = Field(None, description="ACME account email (defaults to admin@<domain>)")
    force: bool = Field(default=False, description="Replace a valid certificate without taking a backup")
    inject: bool = Field(default=True, description="Push the result into the proxy container if it is running")

    @field_validator("domain")
    @classmethod
    def validate_domain(cls, v: str) -> str:
        return check_domain(v)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        v = v.strip()
        local, _, host = v.partition("@")
        if not local or "." not in host:
            raise ValueError(f"Invalid email address: {v}")
        return v

    @model_validator(mode="after")
    def import_needs_path(self):
        if self.mode == AcquisitionMode.IMPORT and not self.import_path:
            raise ValueError("import_path is required when mode is 'import'")
        return self


class InjectRequest(BaseModel):
    container: Optional[str] = Field(None, description="Container to inject into (proxy container by default)")


class SetupResponse(BaseModel):
    """Outcome of a setup call."""
    domain: str
    requested_mode: AcquisitionMode
    mode: AcquisitionMode = Field(..., description="Trust level of the resulting certificate")
    action: MetadataAction
    message: str
    backup: Optional[BackupRecord] = None
    notices: List[FallbackNotice] = Field(default_factory=list, description="Fallback steps that were taken")
    validation: Optional[ValidationResult] = None
    injection: Optional[InjectionResult] = None
    injection_error: Optional[Dict[str, Any]] = Field(
        None, description="Why the certificate is not live in the proxy yet (it is still stored on disk)"
    )


class CertificateStatusResponse(BaseModel):
    """Current certificate state for display."""
    ssl_root: str
    cert_path: str
    key_path: str
    present: bool
    metadata: Optional[CertificateMetadata] = None
    validation: ValidationResult
    backup_count: int = 0
    latest_backup: Optional[BackupRecord] = None
    container: str
    container_running: Optional[bool] = Field(None, description="None when Docker is unreachable")


class BackupResponse(BaseModel):
    backup: Optional[BackupRecord] = None
    message: str


class BackupListResponse(BaseModel):
    backups: List[BackupRecord] = Field(default_factory=list)
    total: int = 0


class RestartResponse(BaseModel):
    container: str
    restarted: bool
    message: str


class WizardStep(str, Enum):
    DOMAIN = "domain"
    KEEP_EXISTING = "keep_existing"
    CHOOSE_MODE = "choose_mode"
    EMAIL = "email"
    IMPORT_PATH = "import_path"
    DONE = "done"


class WizardPrompt(BaseModel):
    """What the front-end should ask next."""
    step: WizardStep
    message: str
    choices: List[str] = Field(default_factory=list)
    default: Optional[str] = None
    error: Optional[str] = Field(None, description="Why the previous answer was rejected")


class WizardRequest(BaseModel):
    """Answers given so far, in order."""
    answers: List[str] = Field(default_factory=list)


class WizardResponse(BaseModel):
    prompt: WizardPrompt
    complete: bool = False
    request: Optional[SetupRequest] = Field(None, description="Ready-to-submit setup request once complete")
