"""
Acquisition decision engine.

Decides whether to keep the current bundle, generate a self-signed one,
obtain one via ACME, import caller-supplied files or disable TLS, and
runs the chosen path. ACME and generation failures are recovered here
by falling back to a simpler path; every fallback is logged and
returned to the caller as a notice.
"""

import asyncio
import logging
from pathlib import Path

from config import Settings, settings as default_settings
from core.acme_client import ACMEClient, is_acme_eligible
from core.cert_errors import AcmeError, GenerationFailedError, ImportInvalidError, StoreWriteError
from core.cert_importer import CertificateImporter
from core.cert_store import CertificateStore
from core.cert_validator import CertificateValidator, normalize_domain
from core.docker_service import DockerServiceError
from core.self_signed import SelfSignedGenerator
from models.certificate import (
    AcmeCapability,
    AcquisitionMode,
    AcquisitionResult,
    BackupRecord,
    CertificateBundle,
    CertificateMetadata,
    FallbackNotice,
    MetadataAction,
    utc_now,
)

logger = logging.getLogger(__name__)


class ModeResolver:
    """Chooses and runs the acquisition path for a domain."""

    def __init__(
        self,
        store: CertificateStore,
        validator: CertificateValidator,
        generator: SelfSignedGenerator,
        acme: ACMEClient,
        importer: CertificateImporter,
        capability: AcmeCapability,
        settings: Settings | None = None,
    ):
        self.settings = settings or default_settings
        self.store = store
        self.validator = validator
        self.generator = generator
        self.acme = acme
        self.importer = importer
        self.capability = capability

    async def resolve(
        self,
        domain: str,
        requested_mode: AcquisitionMode | str = AcquisitionMode.AUTO,
        import_path: str | Path | None = None,
        force: bool = False,
        email: str | None = None,
    ) -> AcquisitionResult:
        """
        Resolve the certificate bundle for a domain.

        Args:
            domain: Domain name or localhost
            requested_mode: Acquisition mode (auto by default)
            import_path: Certificate file or directory, required for import
            force: Replace a valid bundle and skip the backup step
            email: ACME account email

        Returns:
            AcquisitionResult describing the resulting bundle and any fallbacks

        Raises:
            ValueError: Empty domain
            ImportInvalidError: Import files missing, malformed or mismatched
            GenerationFailedError: Even the minimal self-signed profile failed
            StoreWriteError: The store could not be written
        """
        domain = normalize_domain(domain or "")
        if not domain:
            raise ValueError("domain must not be empty")
        requested_mode = AcquisitionMode(requested_mode)
        if requested_mode == AcquisitionMode.IMPORT and not import_path:
            raise ImportInvalidError(
                "An import path is required for import mode",
                domain=domain,
                suggestion="Pass the certificate file or the directory that contains it",
            )

        notices: list[FallbackNotice] = []
        logger.info(f"Resolving certificate for {domain} (mode={requested_mode.value}, force={force})")

        async with self.store.async_lock():
            if requested_mode == AcquisitionMode.PRESERVE:
                preserved = self._try_preserve(domain, requested_mode, notices)
                if preserved is not None:
                    return preserved
                self._notice(
                    notices,
                    "preserve_unavailable",
                    f"No valid certificate for {domain} to preserve; acquiring a new one",
                )
                return await self._acquire(domain, requested_mode, AcquisitionMode.AUTO, None, False, email, notices)

            if requested_mode == AcquisitionMode.AUTO and not force:
                preserved = self._try_preserve(domain, requested_mode, notices)
                if preserved is not None:
                    return preserved

            return await self._acquire(domain, requested_mode, requested_mode, import_path, force, email, notices)

    def _notice(self, notices: list[FallbackNotice], code: str, message: str, suggestion: str | None = None):
        logger.warning(message)
        notices.append(FallbackNotice(code=code, message=message, suggestion=suggestion))

    def _try_preserve(
        self, domain: str, requested_mode: AcquisitionMode, notices: list[FallbackNotice]
    ) -> AcquisitionResult | None:
        """Keep the existing bundle if it fully validates for the domain."""
        existing = self.store.read()
        if existing is None:
            return None

        validation = self.validator.validate(existing, domain)
        if not validation.is_valid:
            logger.info(f"Existing certificate not reusable for {domain}: {'; '.join(validation.errors)}")
            return None

        previous = existing.metadata
        metadata = CertificateMetadata(
            domain=domain,
            mode=previous.mode if previous else AcquisitionMode.PRESERVE,
            action=MetadataAction.PRESERVED,
            validity_days=previous.validity_days if previous else None,
            key_size=validation.key_size,
            generated_at=previous.generated_at if previous else utc_now(),
            cert_file=str(self.store.cert_path),
            key_file=str(self.store.key_path),
        )
        self.store.write_metadata(metadata)

        logger.info(f"Preserving existing certificate for {domain} ({validation.days_until_expiry} days left)")
        return AcquisitionResult(
            domain=domain,
            requested_mode=requested_mode,
            mode=metadata.mode,
            action=MetadataAction.PRESERVED,
            bundle=existing.model_copy(update={"metadata": metadata}),
            notices=notices,
            validation=validation,
        )

    async def _acquire(
        self,
        domain: str,
        requested_mode: AcquisitionMode,
        mode: AcquisitionMode,
        import_path: str | Path | None,
        force: bool,
        email: str | None,
        notices: list[FallbackNotice],
    ) -> AcquisitionResult:
        # Imports are checked before the store is touched at all
        imported: CertificateBundle | None = None
        if mode == AcquisitionMode.IMPORT:
            imported = await asyncio.to_thread(self.importer.load, import_path, domain)

        prior = self.store.read()
        backup: BackupRecord | None = None
        if mode == AcquisitionMode.DISABLED or not force:
            backup = self.store.backup()

        if mode == AcquisitionMode.DISABLED:
            self.store.remove()
            logger.info(f"TLS disabled for {domain}")
            return AcquisitionResult(
                domain=domain,
                requested_mode=requested_mode,
                mode=AcquisitionMode.DISABLED,
                action=MetadataAction.DISABLED,
                backup=backup,
                notices=notices,
            )

        if mode == AcquisitionMode.IMPORT:
            bundle = imported
        elif mode == AcquisitionMode.ACME:
            bundle = await self._acme_or_self_signed(domain, email, notices)
        elif mode == AcquisitionMode.SELF_SIGNED:
            bundle = await self._self_signed(domain, notices)
        elif mode == AcquisitionMode.AUTO:
            if not is_acme_eligible(domain):
                bundle = await self._self_signed(domain, notices)
            elif self.capability.available:
                bundle = await self._acme_or_self_signed(domain, email, notices)
            else:
                self._notice(
                    notices,
                    "acme_prerequisites_missing",
                    f"ACME prerequisites not met for {domain} (installed={self.capability.installed}, "
                    f"privileged={self.capability.privileged}); falling back to self-signed",
                    suggestion="Run as root with certbot installed to get a trusted certificate",
                )
                bundle = await self._self_signed(domain, notices)
        elif mode == AcquisitionMode.PRESERVE:
            raise ValueError("preserve is resolved before acquisition")
        else:
            raise ValueError(f"Unhandled acquisition mode: {mode}")

        return self._commit(domain, requested_mode, bundle, prior, backup, notices)

    async def _acme_or_self_signed(
        self, domain: str, email: str | None, notices: list[FallbackNotice]
    ) -> CertificateBundle:
        try:
            return await self.acme.obtain(domain, email)
        except AcmeError as e:
            self._notice(
                notices,
                e.error_type,
                f"ACME failed for {domain}: {e.message}; falling back to self-signed",
                suggestion=e.suggestion,
            )
        except DockerServiceError as e:
            self._notice(
                notices,
                e.error_type,
                f"ACME failed for {domain} while handling the proxy container: {e.message}; "
                "falling back to self-signed",
                suggestion=e.suggestion,
            )
        return await self._self_signed(domain, notices)

    async def _self_signed(self, domain: str, notices: list[FallbackNotice]) -> CertificateBundle:
        try:
            return await self.generator.generate(domain)
        except GenerationFailedError as e:
            self._notice(
                notices,
                e.error_type,
                f"Self-signed generation failed for {domain}: {e.message}; retrying with the minimal profile",
            )
        return await self.generator.generate(domain, profile=self.generator.minimal_profile(domain))

    def _commit(
        self,
        domain: str,
        requested_mode: AcquisitionMode,
        bundle: CertificateBundle,
        prior: CertificateBundle | None,
        backup: BackupRecord | None,
        notices: list[FallbackNotice],
    ) -> AcquisitionResult:
        """Write the bundle, re-check it on disk, and undo the write if it does not hold up."""
        metadata = bundle.metadata or CertificateMetadata(domain=domain, mode=requested_mode)
        written = self.store.write(bundle, metadata)

        validation = self.validator.validate(written, domain)
        if not (validation.structurally_valid and validation.key_matches_cert):
            logger.error(f"Certificate for {domain} failed validation after write: {'; '.join(validation.errors)}")
            self._roll_back(prior)
            raise StoreWriteError(
                f"Certificate for {domain} failed validation after write; previous state restored",
                domain=domain,
                suggestion="Check the SSL directory for disk or permission problems",
            )

        if validation.domain_matches is False:
            self._notice(
                notices,
                "domain_mismatch",
                f"Installed certificate does not cover {domain} (CN={validation.subject_cn})",
                suggestion="Browsers will reject this certificate for the configured domain",
            )

        logger.info(
            f"Certificate for {domain} installed (mode={metadata.mode.value}, "
            f"expires in {validation.days_until_expiry} days)"
        )
        return AcquisitionResult(
            domain=domain,
            requested_mode=requested_mode,
            mode=metadata.mode,
            action=metadata.action,
            bundle=written,
            backup=backup,
            notices=notices,
            validation=validation,
        )

    def _roll_back(self, prior: CertificateBundle | None):
        if prior is None:
            self.store.remove()
        else:
            self.store.write(prior, prior.metadata)
