"""
TLS certificate manager.

Wires the store, validator, generators, ACME client and injector together
and exposes the operations of the command surface: setup, status,
validate, backup, inject and proxy restart.
"""

import logging

from config import Settings, settings as default_settings
from core.acme_client import ACMEClient, probe_acme_capability
from core.cert_errors import InjectionError
from core.cert_importer import CertificateImporter
from core.cert_store import CertificateStore
from core.cert_validator import CertificateValidator
from core.docker_service import DockerService, DockerServiceError, DockerUnavailableError
from core.injector import CertificateInjector
from core.mode_resolver import ModeResolver
from core.self_signed import SelfSignedGenerator
from core.setup_wizard import SetupWizard
from models.certificate import AcmeCapability, AcquisitionMode, InjectionResult, ValidationResult
from models.ssl_requests import (
    BackupListResponse,
    BackupResponse,
    CertificateStatusResponse,
    RestartResponse,
    SetupRequest,
    SetupResponse,
)

logger = logging.getLogger(__name__)


class SSLManager:
    """Entry point for certificate lifecycle operations."""

    def __init__(
        self,
        settings: Settings | None = None,
        docker: DockerService | None = None,
        capability: AcmeCapability | None = None,
    ):
        self.settings = settings or default_settings
        self.docker = docker or DockerService(self.settings)
        self.store = CertificateStore(self.settings)
        self.validator = CertificateValidator(self.settings, store=self.store)
        self.generator = SelfSignedGenerator(self.settings)
        self.importer = CertificateImporter(self.settings, self.validator)
        self.injector = CertificateInjector(self.docker, self.validator, store=self.store, settings=self.settings)
        self._capability = capability
        self._acme: ACMEClient | None = None
        self._resolver: ModeResolver | None = None

    @property
    def capability(self) -> AcmeCapability:
        """ACME capability, probed once per manager."""
        if self._capability is None:
            self._capability = probe_acme_capability(self.settings)
        return self._capability

    @property
    def acme(self) -> ACMEClient:
        if self._acme is None:
            self._acme = ACMEClient(self.settings, docker=self.docker, capability=self.capability)
        return self._acme

    @property
    def resolver(self) -> ModeResolver:
        if self._resolver is None:
            self._resolver = ModeResolver(
                store=self.store,
                validator=self.validator,
                generator=self.generator,
                acme=self.acme,
                importer=self.importer,
                capability=self.capability,
                settings=self.settings,
            )
        return self._resolver

    async def setup(self, request: SetupRequest) -> SetupResponse:
        """
        Acquire the certificate and push it live.

        Injection problems are reported in the response; they never undo
        the acquisition, the certificate stays correctly stored.
        """
        result = await self.resolver.resolve(
            request.domain,
            request.mode,
            import_path=request.import_path,
            force=request.force,
            email=request.email,
        )

        injection = None
        injection_error = None
        if request.inject and result.bundle is not None:
            try:
                injection = await self.injector.inject(result.bundle)
            except InjectionError as e:
                logger.warning(f"Certificate stored but not injected: {e.message}")
                injection_error = e.to_dict()
            except DockerServiceError as e:
                logger.warning(f"Certificate stored but not injected: {e.message}")
                injection_error = {"error": e.error_type, "message": e.message, "suggestion": e.suggestion}

        if result.mode == AcquisitionMode.DISABLED:
            message = f"TLS disabled for {result.domain}"
        else:
            message = f"Certificate for {result.domain} {result.action.value} (mode {result.mode.value})"
            if result.notices:
                message += f" after {len(result.notices)} fallback step(s)"

        return SetupResponse(
            domain=result.domain,
            requested_mode=result.requested_mode,
            mode=result.mode,
            action=result.action,
            message=message,
            backup=result.backup,
            notices=result.notices,
            validation=result.validation,
            injection=injection,
            injection_error=injection_error,
        )

    async def status(self) -> CertificateStatusResponse:
        """Metadata, validation and backup summary of the live bundle."""
        async with self.store.async_lock(shared=True):
            bundle = self.store.read()
            metadata = bundle.metadata if bundle else self.store.read_metadata()
            backups = self.store.list_backups()
        domain = metadata.domain if metadata else None
        validation = self.validator.validate(bundle, domain)

        try:
            container_running = await self.docker.is_container_running()
        except DockerUnavailableError as e:
            logger.warning(f"Proxy container state unknown: {e.message}")
            container_running = None

        return CertificateStatusResponse(
            ssl_root=str(self.store.root),
            cert_path=str(self.store.cert_path),
            key_path=str(self.store.key_path),
            present=bundle is not None,
            metadata=metadata,
            validation=validation,
            backup_count=len(backups),
            latest_backup=backups[-1] if backups else None,
            container=self.settings.proxy_container_name,
            container_running=container_running,
        )

    async def validate(self, domain: str | None = None) -> ValidationResult:
        """Validate the live bundle, optionally against a domain."""
        async with self.store.async_lock(shared=True):
            return self.validator.validate_current(domain)

    async def backup(self) -> BackupResponse:
        async with self.store.async_lock():
            record = self.store.backup()
        if record is None:
            return BackupResponse(message="No certificate to back up")
        return BackupResponse(backup=record, message=f"Certificate backed up ({record.timestamp})")

    async def list_backups(self) -> BackupListResponse:
        async with self.store.async_lock(shared=True):
            backups = self.store.list_backups()
        return BackupListResponse(backups=backups, total=len(backups))

    async def inject(self, container: str | None = None) -> InjectionResult:
        """Push the live bundle into the proxy container."""
        async with self.store.async_lock(shared=True):
            bundle = self.store.read()
        if bundle is None:
            raise InjectionError(
                "No certificate in the store to inject",
                suggestion="Run setup first",
            )
        return await self.injector.inject(bundle, container)

    async def restart_proxy(self) -> RestartResponse:
        """Restart the proxy container without touching certificates."""
        name = self.settings.proxy_container_name
        await self.docker.restart_container()
        return RestartResponse(container=name, restarted=True, message=f"Container '{name}' restarted")

    async def new_wizard(self) -> SetupWizard:
        """Wizard that offers to keep the live bundle when it is valid for the chosen domain."""
        async with self.store.async_lock(shared=True):
            existing = self.store.read()
        return SetupWizard(existing_valid=lambda domain: self.validator.validate(existing, domain).is_valid)


# Singleton instance
_ssl_manager: SSLManager | None = None


def get_ssl_manager() -> SSLManager:
    """Get the global SSL manager instance."""
    global _ssl_manager
    if _ssl_manager is None:
        _ssl_manager = SSLManager()
    return _ssl_manager
