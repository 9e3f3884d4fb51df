"""
Docker service for the reverse-proxy container.

Provides an async-safe wrapper around the Docker SDK for the container
operations the certificate lifecycle needs: running checks, stop/start
around the ACME challenge, copying files in and out, config test,
reload and restart.
"""

import asyncio
import io
import logging
import tarfile
import time
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Any

import docker
from docker.errors import APIError, NotFound

from config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class DockerServiceError(Exception):
    """Base exception for Docker service errors."""

    def __init__(self, message: str, error_type: str, suggestion: str | None = None):
        self.message = message
        self.error_type = error_type
        self.suggestion = suggestion
        super().__init__(message)


class ContainerNotFoundError(DockerServiceError):
    """Container not found."""

    pass


class ContainerOperationError(DockerServiceError):
    """Error during container operation."""

    pass


class DockerUnavailableError(DockerServiceError):
    """Docker daemon not available."""

    pass


class DockerService:
    """Container runtime operations on the reverse proxy."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or default_settings
        self._client: docker.DockerClient | None = None

    @property
    def client(self) -> docker.DockerClient:
        """Lazy-load Docker client."""
        if self._client is None:
            try:
                self._client = docker.from_env()
            except docker.errors.DockerException as e:
                raise DockerUnavailableError(
                    f"Cannot connect to Docker daemon: {e}",
                    error_type="docker_unavailable",
                    suggestion="Ensure Docker daemon is running and socket is accessible",
                )
        return self._client

    def _get_container(self, name: str | None = None):
        """Get a container by name (the proxy container by default)."""
        name = name or self.settings.proxy_container_name
        try:
            return self.client.containers.get(name)
        except NotFound:
            raise ContainerNotFoundError(
                f"Container '{name}' not found",
                error_type="container_not_found",
                suggestion="Start the application stack so the proxy container exists",
            )
        except APIError as e:
            raise ContainerOperationError(
                f"Docker API error: {e}",
                error_type="docker_api_error",
                suggestion="Check Docker daemon status and permissions",
            )

    async def get_container_status(self, name: str | None = None) -> dict[str, Any]:
        """Get container status."""
        return await asyncio.to_thread(self._get_container_status_sync, name)

    def _get_container_status_sync(self, name: str | None) -> dict[str, Any]:
        """Synchronous container status retrieval."""
        container = self._get_container(name)
        container.reload()  # Refresh container data

        state = container.attrs.get("State", {})

        started_at = None
        if state.get("StartedAt"):
            try:
                # Docker returns ISO format with nanoseconds
                started_str = state["StartedAt"].split(".")[0].replace("Z", "")
                started_at = datetime.fromisoformat(started_str).replace(tzinfo=timezone.utc)
            except (ValueError, IndexError):
                pass

        return {
            "container_id": container.short_id,
            "container_name": container.name,
            "status": state.get("Status", "unknown"),
            "running": state.get("Running", False),
            "started_at": started_at,
            "health_status": state.get("Health", {}).get("Status", "unknown"),
        }

    async def is_container_running(self, name: str | None = None) -> bool:
        """
        Check if the container is running.

        A missing container counts as not running; an unreachable Docker
        daemon raises DockerUnavailableError.
        """
        try:
            status = await self.get_container_status(name)
            return status.get("running", False)
        except DockerUnavailableError:
            raise
        except DockerServiceError:
            return False

    async def exec_in_container(
        self, command: list[str], name: str | None = None, timeout: int | None = None
    ) -> tuple[int, str, str]:
        """
        Execute command in the container.

        Args:
            command: Command and arguments as list
            name: Container name (proxy container by default)
            timeout: Operation timeout in seconds

        Returns:
            Tuple of (exit_code, stdout, stderr)
        """
        timeout = timeout or self.settings.proxy_operation_timeout
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._exec_in_container_sync, command, name), timeout=timeout
            )
        except asyncio.TimeoutError:
            raise ContainerOperationError(
                f"Command {' '.join(command)} timed out after {timeout}s",
                error_type="exec_timeout",
                suggestion="Check that the proxy container is responsive",
            )

    def _exec_in_container_sync(self, command: list[str], name: str | None) -> tuple[int, str, str]:
        """Synchronous command execution."""
        container = self._get_container(name)
        try:
            exec_result = container.exec_run(cmd=command, demux=True)
        except APIError as e:
            raise ContainerOperationError(
                f"Exec failed in container: {e}",
                error_type="exec_failed",
                suggestion="Ensure the container is running",
            )

        stdout_bytes, stderr_bytes = exec_result.output or (None, None)
        stdout = stdout_bytes.decode() if stdout_bytes else ""
        stderr = stderr_bytes.decode() if stderr_bytes else ""
        return exec_result.exit_code, stdout, stderr

    async def test_config(self, name: str | None = None) -> tuple[bool, str, str]:
        """
        Test NGINX configuration (nginx -t).

        Returns:
            Tuple of (success, stdout, stderr)
        """
        logger.info("Testing proxy configuration")
        exit_code, stdout, stderr = await self.exec_in_container(["nginx", "-t"], name=name)
        success = exit_code == 0

        if success:
            logger.info("Proxy configuration test passed")
        else:
            logger.warning(f"Proxy configuration test failed: {stderr}")

        return success, stdout, stderr

    async def reload_proxy(self, name: str | None = None) -> tuple[bool, str, str]:
        """
        Send reload signal to NGINX (graceful reload).

        Returns:
            Tuple of (success, stdout, stderr)
        """
        logger.info("Sending reload signal to proxy")
        exit_code, stdout, stderr = await self.exec_in_container(["nginx", "-s", "reload"], name=name)
        success = exit_code == 0

        if success:
            logger.info("Proxy reload signal sent successfully")
        else:
            logger.error(f"Proxy reload failed: {stderr}")

        return success, stdout, stderr

    async def restart_container(self, name: str | None = None, timeout: int | None = None) -> bool:
        """
        Restart the container.

        Args:
            name: Container name (proxy container by default)
            timeout: Seconds to wait for graceful stop before killing
        """
        timeout = timeout if timeout is not None else self.settings.proxy_stop_timeout
        logger.info(f"Restarting container with {timeout}s timeout")
        return await asyncio.to_thread(self._restart_container_sync, name, timeout)

    def _restart_container_sync(self, name: str | None, timeout: int) -> bool:
        container = self._get_container(name)
        try:
            container.restart(timeout=timeout)
        except APIError as e:
            raise ContainerOperationError(
                f"Container restart failed: {e}",
                error_type="restart_failed",
                suggestion="Check container logs with 'docker logs'",
            )
        logger.info("Container restart completed")
        return True

    async def stop_container(self, name: str | None = None, timeout: int | None = None) -> bool:
        """Stop the container, waiting up to timeout seconds before killing."""
        timeout = timeout if timeout is not None else self.settings.proxy_stop_timeout
        logger.info(f"Stopping container with {timeout}s timeout")
        return await asyncio.to_thread(self._stop_container_sync, name, timeout)

    def _stop_container_sync(self, name: str | None, timeout: int) -> bool:
        container = self._get_container(name)
        try:
            container.stop(timeout=timeout)
        except APIError as e:
            raise ContainerOperationError(
                f"Container stop failed: {e}",
                error_type="stop_failed",
                suggestion="Check Docker daemon status and permissions",
            )
        logger.info("Container stopped")
        return True

    async def start_container(self, name: str | None = None) -> bool:
        """Start a container that this process stopped."""
        logger.info("Starting container")
        return await asyncio.to_thread(self._start_container_sync, name)

    def _start_container_sync(self, name: str | None) -> bool:
        container = self._get_container(name)
        try:
            container.start()
        except APIError as e:
            raise ContainerOperationError(
                f"Container start failed: {e}",
                error_type="start_failed",
                suggestion="Start the stack manually and check container logs",
            )
        logger.info("Container started")
        return True

    async def put_file(self, path: str, content: bytes, mode: int = 0o644, name: str | None = None) -> None:
        """
        Copy bytes into a file inside the container.

        Args:
            path: Absolute destination path in the container
            content: File content
            mode: File permission bits
            name: Container name (proxy container by default)
        """
        await asyncio.to_thread(self._put_file_sync, path, content, mode, name)

    def _put_file_sync(self, path: str, content: bytes, mode: int, name: str | None) -> None:
        container = self._get_container(name)
        target = PurePosixPath(path)

        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as tar:
            info = tarfile.TarInfo(name=target.name)
            info.size = len(content)
            info.mode = mode
            info.mtime = int(time.time())
            tar.addfile(info, io.BytesIO(content))
        buffer.seek(0)

        try:
            ok = container.put_archive(str(target.parent), buffer.getvalue())
        except (APIError, NotFound) as e:
            raise ContainerOperationError(
                f"Failed to copy {path} into container: {e}",
                error_type="copy_failed",
                suggestion=f"Ensure {target.parent} exists inside the container",
            )
        if not ok:
            raise ContainerOperationError(
                f"Container rejected archive for {path}",
                error_type="copy_failed",
                suggestion=f"Ensure {target.parent} is writable inside the container",
            )
        logger.debug(f"Copied {len(content)} bytes to {path} in container")

    async def read_file(self, path: str, name: str | None = None) -> bytes | None:
        """
        Read a file from inside the container.

        Returns:
            File content, or None if the file does not exist
        """
        return await asyncio.to_thread(self._read_file_sync, path, name)

    def _read_file_sync(self, path: str, name: str | None) -> bytes | None:
        container = self._get_container(name)
        try:
            stream, _ = container.get_archive(path)
        except NotFound:
            return None
        except APIError as e:
            raise ContainerOperationError(
                f"Failed to read {path} from container: {e}",
                error_type="copy_failed",
                suggestion="Ensure the container is running",
            )

        buffer = io.BytesIO(b"".join(stream))
        with tarfile.open(fileobj=buffer, mode="r") as tar:
            for member in tar.getmembers():
                if member.isfile():
                    extracted = tar.extractfile(member)
                    return extracted.read() if extracted else None
        return None
