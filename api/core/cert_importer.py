"""
Import of caller-supplied certificate files.

Locates a certificate/key pair from a file or directory path and checks
it fully before anything in the store is touched.
"""

import logging
from pathlib import Path

from config import Settings, settings as default_settings
from core.cert_errors import ImportInvalidError
from core.cert_validator import CertificateValidator
from models.certificate import (
    AcquisitionMode,
    CertificateBundle,
    CertificateMetadata,
    ExpiryStatus,
    MetadataAction,
)

logger = logging.getLogger(__name__)

_DIR_CERT_NAMES = ["fullchain.pem", "server.crt", "certificate.crt", "cert.pem", "server.pem"]
_DIR_KEY_NAMES = ["privkey.pem", "server.key", "private.key", "key.pem", "server.pem"]
_KEY_SUFFIXES = [".key", "_key.pem", "-key.pem", ".pem"]


class CertificateImporter:
    """Finds and checks certificate/key files supplied by the operator."""

    def __init__(self, settings: Settings | None = None, validator: CertificateValidator | None = None):
        self.settings = settings or default_settings
        self.validator = validator or CertificateValidator(self.settings)

    def locate(self, import_path: str | Path) -> tuple[Path, Path]:
        """
        Resolve the certificate and key files for an import path.

        A file path is taken as the certificate and its key is looked up
        beside it; a directory is searched for conventional file names.

        Raises:
            ImportInvalidError: If either file cannot be found
        """
        path = Path(import_path).expanduser()
        if path.is_file():
            return path, self._key_beside(path)
        if path.is_dir():
            return self._pair_in_directory(path)
        raise ImportInvalidError(
            f"Import path does not exist: {path}",
            suggestion="Pass an existing certificate file or a directory containing the certificate and key",
        )

    def _key_beside(self, cert_file: Path) -> Path:
        stem = cert_file.name
        for ext in (".crt", ".pem", ".cer"):
            if stem.endswith(ext):
                stem = stem[: -len(ext)]
                break

        candidates = [cert_file.parent / f"{stem}{suffix}" for suffix in _KEY_SUFFIXES]
        if stem in ("fullchain", "cert"):
            candidates.insert(0, cert_file.parent / "privkey.pem")

        for candidate in candidates:
            if candidate != cert_file and candidate.is_file():
                return candidate
        raise ImportInvalidError(
            f"Could not find a private key next to {cert_file}",
            suggestion=f"Place {stem}.key beside the certificate or pass the containing directory",
        )

    def _pair_in_directory(self, directory: Path) -> tuple[Path, Path]:
        name = self.settings.cert_name
        cert_names = [f"{name}.crt"] + _DIR_CERT_NAMES
        key_names = [f"{name}.key"] + _DIR_KEY_NAMES

        cert_file = next((directory / n for n in cert_names if (directory / n).is_file()), None)
        if cert_file is None:
            raise ImportInvalidError(
                f"No certificate file found in {directory}",
                suggestion=f"Expected one of: {', '.join(cert_names)}",
            )
        key_file = next(
            (directory / n for n in key_names if (directory / n).is_file() and directory / n != cert_file), None
        )
        if key_file is None:
            raise ImportInvalidError(
                f"No private key file found in {directory}",
                suggestion=f"Expected one of: {', '.join(key_names)}",
            )
        return cert_file, key_file

    def load(self, import_path: str | Path, domain: str) -> CertificateBundle:
        """
        Load and check an importable bundle.

        The pair must parse, the key must match the certificate and the
        certificate must not be expired. A domain mismatch is logged but
        allowed, since the operator chose these files explicitly.

        Raises:
            ImportInvalidError: If the files are missing, malformed, mismatched or expired
        """
        cert_file, key_file = self.locate(import_path)
        logger.info(f"Importing certificate {cert_file} with key {key_file}")

        try:
            cert_pem = cert_file.read_bytes()
            key_pem = key_file.read_bytes()
        except OSError as e:
            raise ImportInvalidError(f"Cannot read import files: {e}", domain=domain)

        result = self.validator.validate_pem(cert_pem, key_pem, domain=domain)
        if not result.structurally_valid:
            raise ImportInvalidError(
                f"Import files are not a valid certificate/key pair: {'; '.join(result.errors)}",
                domain=domain,
                suggestion="Provide a PEM certificate and an unencrypted PEM private key",
            )
        if not result.key_matches_cert:
            raise ImportInvalidError(
                f"Private key {key_file.name} does not match certificate {cert_file.name}",
                domain=domain,
                suggestion="Make sure the key is the one the certificate was issued for",
            )
        if result.expiry_status == ExpiryStatus.EXPIRED:
            raise ImportInvalidError(
                f"Certificate {cert_file.name} expired on {result.not_after:%Y-%m-%d}",
                domain=domain,
                suggestion="Renew the certificate before importing it",
            )
        if result.domain_matches is False:
            logger.warning(f"Imported certificate does not list {domain} (CN={result.subject_cn})")

        validity_days = None
        if result.not_before and result.not_after:
            validity_days = (result.not_after - result.not_before).days

        metadata = CertificateMetadata(
            domain=domain,
            mode=AcquisitionMode.IMPORT,
            action=MetadataAction.IMPORTED,
            validity_days=validity_days,
            key_size=result.key_size,
        )
        return CertificateBundle(cert_pem=cert_pem, key_pem=key_pem, metadata=metadata)
