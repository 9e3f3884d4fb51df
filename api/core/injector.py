"""
Certificate injection into the running reverse-proxy container.

Copies a validated bundle into the container, asks the proxy to pick it
up (reload first, restart only if reload cannot be signalled) and then
re-validates the copy that actually lives inside the container.
"""

import logging

from config import Settings, settings as default_settings
from core.cert_errors import ContainerNotRunningError, InjectionError
from core.cert_store import CERT_FILE_MODE, KEY_FILE_MODE, CertificateStore
from core.cert_validator import CertificateValidator
from core.docker_service import DockerService, DockerServiceError
from core.health_checker import HealthChecker, HealthCheckError
from models.certificate import BackupRecord, CertificateBundle, InjectionResult

logger = logging.getLogger(__name__)


class CertificateInjector:
    """Pushes certificate bundles into the proxy container."""

    def __init__(
        self,
        docker: DockerService,
        validator: CertificateValidator,
        store: CertificateStore | None = None,
        health_checker: HealthChecker | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or default_settings
        self.docker = docker
        self.validator = validator
        self.store = store
        self.health_checker = health_checker or HealthChecker(self.settings)

    async def inject(self, bundle: CertificateBundle, container_name: str | None = None) -> InjectionResult:
        """
        Copy a bundle into a running container and reload it.

        Args:
            bundle: Certificate bundle to install
            container_name: Target container (proxy container by default)

        Returns:
            InjectionResult with the in-container validation

        Raises:
            ContainerNotRunningError: The container is not running
            DockerUnavailableError: The Docker daemon cannot be reached
            InjectionError: Copy, config test, reload or in-container validation failed
        """
        name = container_name or self.settings.proxy_container_name
        cert_path = self.settings.proxy_cert_path
        key_path = self.settings.proxy_key_path

        if not await self.docker.is_container_running(name):
            raise ContainerNotRunningError(
                f"Container '{name}' is not running; certificate stays on disk until it is",
                suggestion="Start the application stack, then run inject again",
            )

        source = self.validator.validate(bundle)
        if not (source.structurally_valid and source.key_matches_cert):
            raise InjectionError(
                f"Refusing to inject an invalid bundle: {'; '.join(source.errors)}",
                suggestion="Run setup to produce a valid certificate first",
            )

        try:
            previous_cert = await self.docker.read_file(cert_path, name=name)
            previous_key = await self.docker.read_file(key_path, name=name)
            backup = await self._backup_existing(previous_cert, previous_key)

            logger.info(f"Copying certificate into container '{name}' at {cert_path}")
            await self.docker.put_file(cert_path, bundle.cert_pem, mode=CERT_FILE_MODE, name=name)
            await self.docker.put_file(key_path, bundle.key_pem, mode=KEY_FILE_MODE, name=name)

            config_ok, _, config_err = await self.docker.test_config(name)
            if not config_ok:
                await self._restore_previous(name, cert_path, key_path, previous_cert, previous_key)
                raise InjectionError(
                    f"Proxy configuration test failed after copying the certificate: {config_err.strip()}",
                    suggestion="Check the proxy's ssl_certificate paths and run 'nginx -t' in the container",
                )

            reloaded, restarted = await self._reload_or_restart(name)

            in_container = await self._validate_in_container(name, cert_path, key_path)
        except DockerServiceError as e:
            raise InjectionError(f"Injection into '{name}' failed: {e.message}", suggestion=e.suggestion)

        https_ok = await self._probe_https()

        logger.info(f"Certificate injected into '{name}' ({'reloaded' if reloaded else 'restarted'})")
        return InjectionResult(
            container=name,
            cert_path=cert_path,
            key_path=key_path,
            reloaded=reloaded,
            restarted=restarted,
            backup=backup,
            validation=in_container,
            https_ok=https_ok,
        )

    async def _backup_existing(self, cert_pem: bytes | None, key_pem: bytes | None) -> BackupRecord | None:
        if not (self.settings.inject_backup_existing and self.store is not None):
            return None
        async with self.store.async_lock():
            return self.store.save_container_backup(cert_pem, key_pem)

    async def _restore_previous(
        self, name: str, cert_path: str, key_path: str, cert_pem: bytes | None, key_pem: bytes | None
    ):
        """Put the pre-injection files back so a later restart does not load a rejected pair."""
        if cert_pem is not None and key_pem is not None:
            logger.warning(f"Restoring previous certificate in container '{name}'")
            await self.docker.put_file(cert_path, cert_pem, mode=CERT_FILE_MODE, name=name)
            await self.docker.put_file(key_path, key_pem, mode=KEY_FILE_MODE, name=name)
        else:
            logger.warning(f"Removing rejected certificate from container '{name}'")
            await self.docker.exec_in_container(["rm", "-f", cert_path, key_path], name=name)

    async def _reload_or_restart(self, name: str) -> tuple[bool, bool]:
        """Graceful reload, falling back to a restart if the signal cannot be delivered."""
        try:
            reloaded, _, stderr = await self.docker.reload_proxy(name)
        except DockerServiceError as e:
            reloaded, stderr = False, e.message

        if reloaded:
            return True, False

        logger.warning(f"Reload of '{name}' not possible ({stderr.strip()}); restarting container")
        await self.docker.restart_container(name)
        return False, True

    async def _validate_in_container(self, name: str, cert_path: str, key_path: str):
        cert_pem = await self.docker.read_file(cert_path, name=name)
        key_pem = await self.docker.read_file(key_path, name=name)
        if cert_pem is None or key_pem is None:
            raise InjectionError(
                f"Certificate files missing in container '{name}' after injection",
                suggestion="Check that the TLS directory is not a read-only mount",
            )

        result = self.validator.validate_pem(cert_pem, key_pem)
        if not (result.structurally_valid and result.key_matches_cert):
            raise InjectionError(
                f"In-container certificate failed validation: {'; '.join(result.errors)}",
                suggestion="Re-run inject; if it persists, check the container's TLS mount",
            )
        return result

    async def _probe_https(self) -> bool | None:
        if not self.settings.proxy_https_probe_url:
            return None
        try:
            return await self.health_checker.verify_https()
        except HealthCheckError as e:
            logger.warning(f"{e.message}: {e.last_error}")
            return False
