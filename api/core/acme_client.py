"""
ACME certificate acquisition through the external certbot client.

Covers the capability probe, on-demand certbot installation, port-80
occupancy detection, and the arbitration that temporarily stops the
reverse-proxy container when it holds the challenge port. The client
never falls back on its own: every failure is raised to the caller.
"""

import asyncio
import logging
import os
import re
import shutil
import subprocess
from contextlib import asynccontextmanager
from pathlib import Path

from config import Settings, settings as default_settings
from core.cert_errors import AcmeUnavailableError, ChallengeFailedError, PortContentionError
from core.cert_validator import load_leaf_certificate, normalize_domain
from core.docker_service import DockerService, DockerServiceError
from models.certificate import (
    AcmeCapability,
    AcquisitionMode,
    CertificateBundle,
    CertificateMetadata,
    MetadataAction,
    PortOccupant,
    PortProbeResult,
    PortState,
)

logger = logging.getLogger(__name__)

_HOSTNAME_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?(\.[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?)+$")
_IPV4_RE = re.compile(r"^\d+\.\d+\.\d+\.\d+$")
_SS_USERS_RE = re.compile(r'\("([^"]+)",pid=(\d+)')

# (binary, install command) in order of preference
_PACKAGE_MANAGERS = [
    ("apt-get", ["sh", "-c", "apt-get update -qq && apt-get install -y -qq certbot"]),
    ("dnf", ["dnf", "install", "-y", "certbot"]),
    ("yum", ["yum", "install", "-y", "certbot"]),
    ("snap", ["snap", "install", "--classic", "certbot"]),
]
_INSTALL_TIMEOUT = 300
_PROBE_TIMEOUT = 10


def probe_acme_capability(settings: Settings | None = None) -> AcmeCapability:
    """Check once whether certbot is installed and the process is privileged."""
    settings = settings or default_settings
    capability = AcmeCapability(
        installed=shutil.which(settings.certbot_binary) is not None,
        privileged=os.geteuid() == 0,
    )
    logger.info(f"ACME capability: installed={capability.installed}, privileged={capability.privileged}")
    return capability


def is_acme_eligible(domain: str) -> bool:
    """A real public hostname: not localhost, not an IP literal, at least two labels."""
    domain = normalize_domain(domain)
    if domain in ("localhost", "localhost.localdomain") or domain.endswith(".localhost"):
        return False
    if _IPV4_RE.match(domain) or ":" in domain:
        return False
    return bool(_HOSTNAME_RE.match(domain))


def troubleshooting_hints(domain: str) -> list[str]:
    """Operator hints for a failed HTTP-01 challenge."""
    return [
        f"Ensure {domain} resolves to this server's public IP (check with: nslookup {domain})",
        "Port 80 must be reachable from the internet; check firewall rules (ufw status / iptables -L)",
        f"Test external access: curl -I http://{domain}",
        "Make sure no other web server (apache2, a host nginx) is bound to port 80: ss -tlnp | grep :80",
        "Let's Encrypt rate-limits failed validations (5 per hour); wait before retrying or use ACME_USE_STAGING",
        "Alternatives: import an existing certificate or use a self-signed certificate",
        f"Manual check: certbot certonly --dry-run --standalone -d {domain}",
    ]


class PortProbe:
    """Finds out who listens on the ACME challenge port."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or default_settings

    async def probe(self, port: int | None = None) -> PortProbeResult:
        """
        Probe the challenge port with ``ss``.

        Raises:
            AcmeUnavailableError: If the listener table cannot be read
        """
        port = port or self.settings.acme_challenge_port
        output = await asyncio.to_thread(self._run_ss)
        result = self.parse(output, port, self.settings.proxy_signatures)
        logger.info(f"Port {port} state: {result.state.value}")
        return result

    def _run_ss(self) -> str:
        try:
            completed = subprocess.run(
                ["ss", "-Htlnp"], check=True, capture_output=True, text=True, timeout=_PROBE_TIMEOUT
            )
        except FileNotFoundError:
            raise AcmeUnavailableError(
                "Cannot probe port usage: 'ss' is not installed",
                suggestion="Install iproute2 so port 80 usage can be checked",
            )
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
            raise AcmeUnavailableError(
                f"Cannot probe port usage: {e}",
                suggestion="Check that 'ss -tlnp' works on this host",
            )
        return completed.stdout

    @staticmethod
    def parse(output: str, port: int, signatures: list[str]) -> PortProbeResult:
        """
        Classify ``ss -Htlnp`` output for one port.

        Occupants are only considered the proxy when every listener's
        process name matches a proxy signature; anything unidentified is
        treated as a foreign process.
        """
        occupants: list[PortOccupant] = []
        for line in output.splitlines():
            fields = line.split()
            if len(fields) < 4:
                continue
            local = fields[3]
            _, _, local_port = local.rpartition(":")
            if local_port != str(port):
                continue

            matches = _SS_USERS_RE.findall(line)
            if not matches:
                occupants.append(PortOccupant(line=line.strip()))
                continue
            for process, pid in matches:
                occupants.append(PortOccupant(process=process, pid=int(pid), line=line.strip()))

        if not occupants:
            return PortProbeResult(port=port, state=PortState.FREE)

        if all(o.process and o.process in signatures for o in occupants):
            state = PortState.OCCUPIED_BY_PROXY
        else:
            state = PortState.OCCUPIED_BY_OTHER
        return PortProbeResult(port=port, state=state, occupants=occupants)


class ProxyController:
    """Stops and restarts the reverse-proxy container around a challenge."""

    def __init__(self, docker: DockerService, settings: Settings | None = None):
        self.docker = docker
        self.settings = settings or default_settings

    @asynccontextmanager
    async def stopped(self):
        """
        Keep the proxy stopped for the duration of the block.

        The proxy is started again on every exit path, including errors
        and cancellation.
        """
        name = self.settings.proxy_container_name
        logger.info(f"Stopping proxy container '{name}' to free port {self.settings.acme_challenge_port}")
        try:
            await self.docker.stop_container()
        except DockerServiceError as e:
            raise AcmeUnavailableError(
                f"Could not stop proxy container '{name}': {e.message}",
                suggestion=e.suggestion,
            )

        try:
            yield
        finally:
            logger.info(f"Restarting proxy container '{name}'")
            try:
                await self.docker.start_container()
            except DockerServiceError as e:
                logger.error(f"Proxy container '{name}' could not be restarted: {e.message}; start it manually")
                raise


class ChallengeClient:
    """Wraps the certbot CLI for standalone HTTP-01 challenges."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or default_settings

    def is_installed(self) -> bool:
        return shutil.which(self.settings.certbot_binary) is not None

    async def install(self) -> bool:
        """Install certbot with the first available package manager."""
        return await asyncio.to_thread(self._install_sync)

    def _install_sync(self) -> bool:
        for binary, command in _PACKAGE_MANAGERS:
            if shutil.which(binary) is None:
                continue
            logger.info(f"Installing certbot with {binary}")
            try:
                subprocess.run(command, check=True, capture_output=True, text=True, timeout=_INSTALL_TIMEOUT)
            except subprocess.CalledProcessError as e:
                logger.warning(f"certbot installation with {binary} failed: {e.stderr.strip()}")
                continue
            except subprocess.TimeoutExpired:
                logger.warning(f"certbot installation with {binary} timed out")
                continue
            if self.is_installed():
                logger.info("certbot installed")
                return True
        return False

    def build_command(self, domain: str, email: str) -> list[str]:
        cmd = [
            self.settings.certbot_binary,
            "certonly",
            "--standalone",
            "--non-interactive",
            "--agree-tos",
            "--email",
            email,
            "-d",
            domain,
            "--key-type",
            "rsa",
            "--rsa-key-size",
            str(self.settings.acme_rsa_key_size),
            "--preferred-challenges",
            "http",
            "--http-01-port",
            str(self.settings.acme_challenge_port),
        ]
        if self.settings.acme_use_staging:
            cmd.append("--staging")
        return cmd

    async def run_standalone(self, domain: str, email: str) -> None:
        """
        Run one standalone challenge, bounded by ACME_CHALLENGE_TIMEOUT.

        Raises:
            ChallengeFailedError: On non-zero exit or timeout
        """
        await asyncio.to_thread(self._run_standalone_sync, domain, email)

    def _run_standalone_sync(self, domain: str, email: str) -> None:
        cmd = self.build_command(domain, email)
        timeout = self.settings.acme_challenge_timeout
        logger.info(f"Running certbot: {' '.join(cmd)}")

        try:
            result = subprocess.run(cmd, check=True, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.error(f"certbot timed out after {timeout}s for {domain}")
            raise ChallengeFailedError(
                f"ACME challenge for {domain} timed out after {timeout}s",
                domain=domain,
                suggestion="Check that port 80 is reachable from the internet",
                hints=troubleshooting_hints(domain),
            )
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip()
            logger.error(f"certbot failed with exit code {e.returncode}: {stderr}")
            reason = stderr.splitlines()[-1] if stderr else f"exit code {e.returncode}"
            raise ChallengeFailedError(
                f"ACME challenge for {domain} failed: {reason}",
                domain=domain,
                suggestion="Verify DNS and port 80 reachability, then retry",
                hints=troubleshooting_hints(domain),
            )
        except FileNotFoundError:
            raise AcmeUnavailableError(
                f"certbot binary '{self.settings.certbot_binary}' not found",
                domain=domain,
                suggestion="Install certbot or set CERTBOT_BINARY",
            )

        logger.debug(f"certbot stdout: {result.stdout}")


class ACMEClient:
    """Obtains publicly trusted certificates via HTTP-01."""

    def __init__(
        self,
        settings: Settings | None = None,
        docker: DockerService | None = None,
        port_probe: PortProbe | None = None,
        challenge: ChallengeClient | None = None,
        proxy: ProxyController | None = None,
        capability: AcmeCapability | None = None,
    ):
        self.settings = settings or default_settings
        self.docker = docker or DockerService(self.settings)
        self.port_probe = port_probe or PortProbe(self.settings)
        self.challenge = challenge or ChallengeClient(self.settings)
        self.proxy = proxy or ProxyController(self.docker, self.settings)
        self._capability = capability

    @property
    def capability(self) -> AcmeCapability:
        if self._capability is None:
            self._capability = probe_acme_capability(self.settings)
        return self._capability

    def default_email(self, domain: str) -> str:
        return self.settings.acme_account_email or f"admin@{domain}"

    async def ensure_available(self, domain: str) -> None:
        """
        Check preconditions, installing certbot if allowed.

        Raises:
            AcmeUnavailableError: If ACME cannot be attempted
        """
        if not is_acme_eligible(domain):
            raise AcmeUnavailableError(
                f"{domain} is not a public domain name",
                domain=domain,
                suggestion="ACME needs a public DNS name; use self-signed for localhost or IP addresses",
            )
        if not self.capability.privileged:
            raise AcmeUnavailableError(
                "ACME standalone challenge requires root to bind port 80",
                domain=domain,
                suggestion="Run with root privileges or use a self-signed certificate",
            )
        if not self.challenge.is_installed():
            if not self.settings.acme_auto_install:
                raise AcmeUnavailableError(
                    "certbot is not installed",
                    domain=domain,
                    suggestion="Install certbot or set ACME_AUTO_INSTALL=true",
                )
            if not await self.challenge.install():
                raise AcmeUnavailableError(
                    "certbot is not installed and automatic installation failed",
                    domain=domain,
                    suggestion="Install certbot manually (apt-get install certbot)",
                )

    async def obtain(self, domain: str, email: str | None = None) -> CertificateBundle:
        """
        Obtain a certificate for a domain.

        Args:
            domain: Public domain name
            email: Account email (defaults to ACME_ACCOUNT_EMAIL or admin@<domain>)

        Returns:
            In-memory CertificateBundle with metadata mode acme

        Raises:
            AcmeUnavailableError: Prerequisites not met
            PortContentionError: A foreign process holds the challenge port
            ChallengeFailedError: The challenge did not succeed
        """
        domain = normalize_domain(domain)
        email = email or self.default_email(domain)
        await self.ensure_available(domain)

        probe = await self.port_probe.probe()
        if probe.state == PortState.FREE:
            await self.challenge.run_standalone(domain, email)
        elif probe.state == PortState.OCCUPIED_BY_PROXY:
            async with self.proxy.stopped():
                await self.challenge.run_standalone(domain, email)
        elif probe.state == PortState.OCCUPIED_BY_OTHER:
            holders = ", ".join(o.process or "unknown" for o in probe.occupants)
            raise PortContentionError(
                f"Port {probe.port} is held by another process ({holders})",
                domain=domain,
                suggestion="Stop the conflicting service or import a certificate instead",
            )
        else:
            raise ValueError(f"Unhandled port state: {probe.state}")

        return self._load_issued(domain)

    def _load_issued(self, domain: str) -> CertificateBundle:
        """Read the issued chain and key from certbot's live directory."""
        live_dir = Path(self.settings.letsencrypt_live_dir) / domain
        fullchain = live_dir / "fullchain.pem"
        privkey = live_dir / "privkey.pem"
        try:
            cert_pem = fullchain.read_bytes()
            key_pem = privkey.read_bytes()
        except OSError as e:
            raise ChallengeFailedError(
                f"certbot reported success but issued files are missing in {live_dir}: {e}",
                domain=domain,
                suggestion="Run 'certbot certificates' to inspect the issued certificate",
            )

        validity_days = None
        try:
            cert = load_leaf_certificate(cert_pem)
            validity_days = (cert.not_valid_after_utc - cert.not_valid_before_utc).days
        except ValueError as e:
            logger.warning(f"Issued certificate for {domain} could not be parsed: {e}")

        metadata = CertificateMetadata(
            domain=domain,
            mode=AcquisitionMode.ACME,
            action=MetadataAction.GENERATED,
            validity_days=validity_days,
            key_size=self.settings.acme_rsa_key_size,
        )
        logger.info(f"Obtained ACME certificate for {domain}")
        return CertificateBundle(cert_pem=cert_pem, key_pem=key_pem, metadata=metadata)
