"""
Unit tests for the Docker service wrapper.

The Docker SDK client is replaced by a MagicMock; these tests cover the
tar handling for file copies and the error translation.
"""

import io
import tarfile
from unittest.mock import MagicMock, patch

import pytest
from docker.errors import APIError, DockerException, NotFound

from core.docker_service import (
    ContainerNotFoundError,
    ContainerOperationError,
    DockerService,
    DockerUnavailableError,
)


def _tar_with(name: str, content: bytes) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        info = tarfile.TarInfo(name=name)
        info.size = len(content)
        tar.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


@pytest.fixture
def container():
    return MagicMock()


@pytest.fixture
def service(test_settings, container):
    service = DockerService(test_settings)
    service._client = MagicMock()
    service._client.containers.get.return_value = container
    return service


class TestFileCopy:
    """put_file and read_file."""

    @pytest.mark.asyncio
    async def test_put_file_builds_archive(self, service, container):
        container.put_archive.return_value = True

        await service.put_file("/etc/ssl/server.key", b"secret", mode=0o600)

        directory, data = container.put_archive.call_args.args
        assert directory == "/etc/ssl"
        with tarfile.open(fileobj=io.BytesIO(data), mode="r") as tar:
            member = tar.getmember("server.key")
            assert member.mode == 0o600
            assert tar.extractfile(member).read() == b"secret"

    @pytest.mark.asyncio
    async def test_put_file_rejected(self, service, container):
        container.put_archive.return_value = False

        with pytest.raises(ContainerOperationError) as exc_info:
            await service.put_file("/etc/ssl/server.crt", b"cert")

        assert exc_info.value.error_type == "copy_failed"

    @pytest.mark.asyncio
    async def test_put_file_missing_directory(self, service, container):
        container.put_archive.side_effect = NotFound("no such directory")

        with pytest.raises(ContainerOperationError):
            await service.put_file("/etc/missing/server.crt", b"cert")

    @pytest.mark.asyncio
    async def test_read_file(self, service, container):
        container.get_archive.return_value = (iter([_tar_with("server.crt", b"PEM DATA")]), {})

        content = await service.read_file("/etc/ssl/server.crt")

        assert content == b"PEM DATA"
        container.get_archive.assert_called_once_with("/etc/ssl/server.crt")

    @pytest.mark.asyncio
    async def test_read_missing_file(self, service, container):
        container.get_archive.side_effect = NotFound("no such file")

        assert await service.read_file("/etc/ssl/server.crt") is None


class TestContainerOperations:

    @pytest.mark.asyncio
    async def test_unknown_container(self, service):
        service._client.containers.get.side_effect = NotFound("missing")

        with pytest.raises(ContainerNotFoundError):
            await service.stop_container("ghost")

    @pytest.mark.asyncio
    async def test_unknown_container_is_not_running(self, service):
        service._client.containers.get.side_effect = NotFound("missing")

        assert await service.is_container_running() is False

    @pytest.mark.asyncio
    async def test_unreachable_daemon_is_not_reported_as_stopped(self, service):
        service._client = None

        with patch("core.docker_service.docker.from_env", side_effect=DockerException("socket missing")):
            with pytest.raises(DockerUnavailableError):
                await service.is_container_running()

    @pytest.mark.asyncio
    async def test_running_container(self, service, container):
        container.attrs = {"State": {"Status": "running", "Running": True}}

        assert await service.is_container_running() is True
        service._client.containers.get.assert_called_with("proxy-nginx")

    @pytest.mark.asyncio
    async def test_stop_uses_configured_timeout(self, service, container):
        await service.stop_container()

        container.stop.assert_called_once_with(timeout=10)

    @pytest.mark.asyncio
    async def test_start_failure(self, service, container):
        container.start.side_effect = APIError("port is already allocated")

        with pytest.raises(ContainerOperationError) as exc_info:
            await service.start_container()

        assert exc_info.value.error_type == "start_failed"

    @pytest.mark.asyncio
    async def test_config_test(self, service, container):
        container.exec_run.return_value = MagicMock(exit_code=1, output=(b"", b"nginx: [emerg] cannot load certificate"))

        ok, _, stderr = await service.test_config()

        assert ok is False
        assert "cannot load certificate" in stderr
        container.exec_run.assert_called_once_with(cmd=["nginx", "-t"], demux=True)

    @pytest.mark.asyncio
    async def test_reload(self, service, container):
        container.exec_run.return_value = MagicMock(exit_code=0, output=(None, None))

        ok, stdout, stderr = await service.reload_proxy()

        assert (ok, stdout, stderr) == (True, "", "")
