"""
Certificate lifecycle error taxonomy.

Every error carries a human-readable message, the domain it concerns
(when known) and an actionable suggestion for the operator.
"""


class CertificateError(Exception):
    """Base exception for certificate lifecycle errors."""

    error_type = "certificate_error"

    def __init__(self, message: str, domain: str | None = None, suggestion: str | None = None):
        self.message = message
        self.domain = domain
        self.suggestion = suggestion
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": self.error_type,
            "message": self.message,
            "domain": self.domain,
            "suggestion": self.suggestion,
        }


class AcquisitionError(CertificateError):
    """Obtaining a certificate bundle failed."""

    error_type = "acquisition_failed"


class GenerationFailedError(AcquisitionError):
    """Key or certificate creation failed."""

    error_type = "generation_failed"


class ImportInvalidError(AcquisitionError):
    """Supplied files are missing, malformed or do not match."""

    error_type = "import_invalid"


class AcmeError(AcquisitionError):
    """Base for ACME path failures. Always recoverable by self-signed fallback."""

    error_type = "acme_error"


class AcmeUnavailableError(AcmeError):
    """Challenge client missing, not installable, or insufficient privilege."""

    error_type = "acme_unavailable"


class PortContentionError(AcmeError):
    """An unrelated process holds the challenge port."""

    error_type = "port_contention"


class ChallengeFailedError(AcmeError):
    """The HTTP-01 challenge did not complete."""

    error_type = "challenge_failed"

    def __init__(
        self,
        message: str,
        domain: str | None = None,
        suggestion: str | None = None,
        hints: list[str] | None = None,
    ):
        super().__init__(message, domain=domain, suggestion=suggestion)
        self.hints = hints or []

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["hints"] = self.hints
        return data


class StoreWriteError(CertificateError):
    """Filesystem or permission failure in the certificate store."""

    error_type = "store_write_failed"


class InjectionError(CertificateError):
    """Pushing the bundle into the proxy container failed."""

    error_type = "injection_failed"


class ContainerNotRunningError(InjectionError):
    """The target container is not running; it is never started implicitly."""

    error_type = "container_not_running"
