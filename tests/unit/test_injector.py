"""
Unit tests for certificate injection into the proxy container.

The Docker service is mocked; ``in_container_files`` makes it behave
like a small in-memory filesystem so the in-container validation runs
against what was actually copied.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from core.cert_errors import ContainerNotRunningError, InjectionError
from core.cert_store import CertificateStore
from core.cert_validator import CertificateValidator
from core.docker_service import ContainerOperationError, DockerUnavailableError
from core.health_checker import HealthCheckError
from core.injector import CertificateInjector
from models.certificate import BackupOrigin, CertificateBundle

CERT_PATH = "/etc/ssl/server.crt"
KEY_PATH = "/etc/ssl/server.key"


@pytest.fixture
def store(test_settings):
    return CertificateStore(test_settings)


@pytest.fixture
def injector(test_settings, mock_docker_service, store):
    return CertificateInjector(
        mock_docker_service, CertificateValidator(test_settings), store=store, settings=test_settings
    )


@pytest.fixture
def bundle(pem_pair):
    cert, key = pem_pair("example.com")
    return CertificateBundle(cert_pem=cert, key_pem=key)


class TestInjectSuccess:

    @pytest.mark.asyncio
    async def test_copies_and_reloads(self, injector, bundle, mock_docker_service, in_container_files):
        result = await injector.inject(bundle)

        assert in_container_files[CERT_PATH] == bundle.cert_pem
        assert in_container_files[KEY_PATH] == bundle.key_pem
        assert result.reloaded is True
        assert result.restarted is False
        assert result.validation.key_matches_cert is True
        assert result.https_ok is None
        mock_docker_service.restart_container.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_file_modes(self, injector, bundle, mock_docker_service, in_container_files):
        await injector.inject(bundle)

        modes = {call.args[0]: call.kwargs["mode"] for call in mock_docker_service.put_file.await_args_list}
        assert modes == {CERT_PATH: 0o644, KEY_PATH: 0o600}

    @pytest.mark.asyncio
    async def test_existing_container_cert_is_backed_up(
        self, injector, bundle, store, in_container_files, pem_pair
    ):
        old_cert, old_key = pem_pair("old.example.com", key_index=1)
        in_container_files[CERT_PATH] = old_cert
        in_container_files[KEY_PATH] = old_key

        result = await injector.inject(bundle)

        assert result.backup.origin == BackupOrigin.CONTAINER
        backups = store.list_backups()
        assert len(backups) == 1
        with open(backups[0].cert_path, "rb") as f:
            assert f.read() == old_cert

    @pytest.mark.asyncio
    async def test_nothing_in_container_means_no_backup(self, injector, bundle, in_container_files):
        result = await injector.inject(bundle)

        assert result.backup is None

    @pytest.mark.asyncio
    async def test_named_container(self, injector, bundle, mock_docker_service, in_container_files):
        result = await injector.inject(bundle, container_name="edge-proxy")

        assert result.container == "edge-proxy"
        mock_docker_service.is_container_running.assert_awaited_once_with("edge-proxy")


class TestReloadFallback:
    """Reload first, restart only if the signal cannot be delivered."""

    @pytest.mark.asyncio
    async def test_restart_when_reload_fails(self, injector, bundle, mock_docker_service, in_container_files):
        mock_docker_service.reload_proxy.return_value = (False, "", "nginx: [error] invalid PID number")

        result = await injector.inject(bundle)

        assert result.reloaded is False
        assert result.restarted is True
        mock_docker_service.restart_container.assert_awaited_once_with("proxy-nginx")

    @pytest.mark.asyncio
    async def test_restart_when_reload_raises(self, injector, bundle, mock_docker_service, in_container_files):
        mock_docker_service.reload_proxy.side_effect = ContainerOperationError(
            "exec timed out", error_type="exec_timeout"
        )

        result = await injector.inject(bundle)

        assert result.restarted is True


class TestInjectFailures:

    @pytest.mark.asyncio
    async def test_container_not_running(self, injector, bundle, mock_docker_service):
        mock_docker_service.is_container_running.return_value = False

        with pytest.raises(ContainerNotRunningError):
            await injector.inject(bundle)

        mock_docker_service.put_file.assert_not_awaited()
        mock_docker_service.start_container.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_source_bundle(self, injector, mock_docker_service, pem_pair):
        cert, key = pem_pair("example.com", key_index=0, signing_key_index=1)

        with pytest.raises(InjectionError, match="invalid bundle"):
            await injector.inject(CertificateBundle(cert_pem=cert, key_pem=key))

        mock_docker_service.put_file.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_config_test_failure(self, injector, bundle, mock_docker_service, in_container_files):
        mock_docker_service.test_config.return_value = (False, "", 'cannot load certificate "/etc/ssl/server.crt"')

        with pytest.raises(InjectionError, match="configuration test failed"):
            await injector.inject(bundle)

        mock_docker_service.reload_proxy.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_config_test_failure_restores_previous_files(
        self, injector, bundle, mock_docker_service, in_container_files, pem_pair
    ):
        old_cert, old_key = pem_pair("old.example.com", key_index=1)
        in_container_files[CERT_PATH] = old_cert
        in_container_files[KEY_PATH] = old_key
        mock_docker_service.test_config.return_value = (False, "", "nginx: [emerg] SSL_CTX_use_certificate failed")

        with pytest.raises(InjectionError):
            await injector.inject(bundle)

        assert in_container_files[CERT_PATH] == old_cert
        assert in_container_files[KEY_PATH] == old_key

    @pytest.mark.asyncio
    async def test_config_test_failure_removes_files_when_none_existed(
        self, injector, bundle, mock_docker_service, in_container_files
    ):
        mock_docker_service.test_config.return_value = (False, "", "nginx: [emerg] SSL_CTX_use_certificate failed")

        with pytest.raises(InjectionError):
            await injector.inject(bundle)

        mock_docker_service.exec_in_container.assert_awaited_once_with(
            ["rm", "-f", CERT_PATH, KEY_PATH], name="proxy-nginx"
        )

    @pytest.mark.asyncio
    async def test_docker_unavailable(self, injector, bundle, mock_docker_service):
        mock_docker_service.is_container_running.side_effect = DockerUnavailableError(
            "Cannot connect to Docker daemon", error_type="docker_unavailable"
        )

        with pytest.raises(DockerUnavailableError):
            await injector.inject(bundle)

        mock_docker_service.put_file.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_copy_failure(self, injector, bundle, mock_docker_service):
        mock_docker_service.put_file.side_effect = ContainerOperationError(
            "Failed to copy", error_type="copy_failed", suggestion="Ensure /etc/ssl exists"
        )

        with pytest.raises(InjectionError) as exc_info:
            await injector.inject(bundle)

        assert exc_info.value.suggestion == "Ensure /etc/ssl exists"

    @pytest.mark.asyncio
    async def test_files_missing_after_copy(self, injector, bundle):
        # read_file keeps returning None: the copy never landed
        with pytest.raises(InjectionError, match="missing in container"):
            await injector.inject(bundle)

    @pytest.mark.asyncio
    async def test_in_container_copy_is_corrupt(self, injector, bundle, mock_docker_service):
        mock_docker_service.read_file.side_effect = [None, None, bundle.cert_pem, b"truncated"]

        with pytest.raises(InjectionError, match="In-container certificate failed validation"):
            await injector.inject(bundle)


class TestHttpsProbe:

    @pytest.fixture
    def probing_injector(self, test_settings, mock_docker_service, store):
        settings = test_settings.model_copy(update={"proxy_https_probe_url": "https://localhost/"})
        checker = MagicMock()
        checker.verify_https = AsyncMock(return_value=True)
        return CertificateInjector(
            mock_docker_service,
            CertificateValidator(settings),
            store=store,
            health_checker=checker,
            settings=settings,
        )

    @pytest.mark.asyncio
    async def test_probe_success(self, probing_injector, bundle, in_container_files):
        result = await probing_injector.inject(bundle)

        assert result.https_ok is True

    @pytest.mark.asyncio
    async def test_probe_failure_is_not_fatal(self, probing_injector, bundle, in_container_files):
        probing_injector.health_checker.verify_https.side_effect = HealthCheckError(
            "HTTPS check failed", attempts=5, last_error="Connection refused"
        )

        result = await probing_injector.inject(bundle)

        assert result.https_ok is False
        assert result.reloaded is True
