"""
Unit tests for the acquisition decision engine.

Uses the real store, validator, generator and importer against a
temporary SSL root; only the ACME side (certbot, port probe, Docker) is
mocked.
"""

import asyncio
import os
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from core.acme_client import ACMEClient
from core.cert_errors import (
    ChallengeFailedError,
    GenerationFailedError,
    ImportInvalidError,
    PortContentionError,
    StoreWriteError,
)
from core.cert_importer import CertificateImporter
from core.cert_store import CertificateStore
from core.cert_validator import CertificateValidator
from core.mode_resolver import ModeResolver
from core.self_signed import SelfSignedGenerator
from models.certificate import (
    AcmeCapability,
    AcquisitionMode,
    CertificateBundle,
    CertificateMetadata,
    MetadataAction,
    PortProbeResult,
    PortState,
    ValidationResult,
)

AVAILABLE = AcmeCapability(installed=True, privileged=True)
UNAVAILABLE = AcmeCapability(installed=False, privileged=False)


class Harness:
    """Real components wired together, with a mockable ACME client."""

    def __init__(self, settings, capability=AVAILABLE, acme=None):
        self.settings = settings
        self.store = CertificateStore(settings)
        self.validator = CertificateValidator(settings, store=self.store)
        self.generator = SelfSignedGenerator(settings)
        self.importer = CertificateImporter(settings, self.validator)
        if acme is None:
            acme = MagicMock()
            acme.obtain = AsyncMock(side_effect=AssertionError("ACME must not be used"))
        self.acme = acme
        self.resolver = ModeResolver(
            store=self.store,
            validator=self.validator,
            generator=self.generator,
            acme=self.acme,
            importer=self.importer,
            capability=capability,
            settings=settings,
        )

    def seed(self, cert_pem: bytes, key_pem: bytes, domain: str, mode=AcquisitionMode.SELF_SIGNED):
        bundle = CertificateBundle(cert_pem=cert_pem, key_pem=key_pem)
        return self.store.write(bundle, CertificateMetadata(domain=domain, mode=mode))


@pytest.fixture
def harness(test_settings):
    return Harness(test_settings)


def _real_acme(settings, docker, state):
    """ACMEClient whose port probe and certbot run are mocked."""
    port_probe = MagicMock()
    port_probe.probe = AsyncMock(return_value=PortProbeResult(port=80, state=state))
    challenge = MagicMock()
    challenge.is_installed = MagicMock(return_value=True)
    challenge.run_standalone = AsyncMock()
    return ACMEClient(settings, docker=docker, port_probe=port_probe, challenge=challenge, capability=AVAILABLE)


def _issue(settings, pem_pair, domain="example.com"):
    live = Path(settings.letsencrypt_live_dir) / domain
    live.mkdir(parents=True)
    cert, key = pem_pair(domain, days_valid=89, days_before=1, key_index=2)
    (live / "fullchain.pem").write_bytes(cert)
    (live / "privkey.pem").write_bytes(key)
    return cert


class TestScenarios:
    """End-to-end acquisition outcomes."""

    @pytest.mark.asyncio
    async def test_localhost_auto_creates_self_signed(self, harness):
        result = await harness.resolver.resolve("localhost")

        assert result.mode == AcquisitionMode.SELF_SIGNED
        assert result.action == MetadataAction.GENERATED
        assert "localhost" in result.validation.san_names
        assert "127.0.0.1" in result.validation.san_names
        assert harness.validator.validate(result.bundle, "localhost").domain_matches is True
        assert result.notices == []
        harness.acme.obtain.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_public_domain_auto_uses_acme(self, test_settings, mock_docker_service, pem_pair):
        issued = _issue(test_settings, pem_pair)
        acme = _real_acme(test_settings, mock_docker_service, PortState.FREE)
        harness = Harness(test_settings, acme=acme)

        result = await harness.resolver.resolve("example.com")

        assert result.mode == AcquisitionMode.ACME
        assert harness.store.read().cert_pem == issued
        assert harness.store.read_metadata().mode == AcquisitionMode.ACME
        assert harness.store.read_metadata().validity_days == 90
        assert 89 <= result.validation.days_until_expiry <= 90

    @pytest.mark.asyncio
    async def test_port_contention_falls_back_to_self_signed(self, test_settings, mock_docker_service):
        acme = _real_acme(test_settings, mock_docker_service, PortState.OCCUPIED_BY_OTHER)
        harness = Harness(test_settings, acme=acme)

        result = await harness.resolver.resolve("example.com")

        assert result.mode == AcquisitionMode.SELF_SIGNED
        assert harness.store.read_metadata().mode == AcquisitionMode.SELF_SIGNED
        assert [n.code for n in result.notices] == [PortContentionError.error_type]
        acme.challenge.run_standalone.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_preserve_keeps_valid_bundle_without_backup(self, harness, pem_pair):
        cert, key = pem_pair("example.com")
        harness.seed(cert, key, "example.com")

        result = await harness.resolver.resolve("example.com", AcquisitionMode.PRESERVE)

        assert result.action == MetadataAction.PRESERVED
        assert result.bundle.cert_pem == cert
        assert result.backup is None
        assert harness.store.list_backups() == []
        assert harness.store.read().cert_pem == cert

    @pytest.mark.asyncio
    async def test_mismatched_import_leaves_store_untouched(self, harness, pem_pair, tmp_path):
        cert, key = pem_pair("example.com")
        harness.seed(cert, key, "example.com")
        import_dir = tmp_path / "incoming"
        import_dir.mkdir()
        bad_cert, bad_key = pem_pair("example.com", key_index=0, signing_key_index=1)
        (import_dir / "server.crt").write_bytes(bad_cert)
        (import_dir / "server.key").write_bytes(bad_key)

        with pytest.raises(ImportInvalidError):
            await harness.resolver.resolve("example.com", AcquisitionMode.IMPORT, import_path=str(import_dir))

        assert harness.store.read().cert_pem == cert
        assert harness.validator.validate_current("example.com").is_valid is True
        assert harness.store.list_backups() == []


class TestPreserve:
    """Idempotence and preservation rules."""

    @pytest.mark.asyncio
    async def test_auto_is_idempotent(self, harness):
        first = await harness.resolver.resolve("localhost")
        second = await harness.resolver.resolve("localhost")

        assert second.action == MetadataAction.PRESERVED
        assert second.mode == AcquisitionMode.SELF_SIGNED
        assert second.bundle.cert_pem == first.bundle.cert_pem
        assert harness.store.list_backups() == []

    @pytest.mark.asyncio
    async def test_preserve_keeps_original_timestamp(self, harness):
        first = await harness.resolver.resolve("localhost")
        await harness.resolver.resolve("localhost", AcquisitionMode.PRESERVE)

        metadata = harness.store.read_metadata()
        assert metadata.action == MetadataAction.PRESERVED
        assert metadata.generated_at.replace(microsecond=0) == first.bundle.metadata.generated_at.replace(
            microsecond=0
        )

    @pytest.mark.asyncio
    async def test_preserve_without_bundle_acquires(self, harness):
        result = await harness.resolver.resolve("localhost", AcquisitionMode.PRESERVE)

        assert result.mode == AcquisitionMode.SELF_SIGNED
        assert result.requested_mode == AcquisitionMode.PRESERVE
        assert [n.code for n in result.notices] == ["preserve_unavailable"]

    @pytest.mark.asyncio
    async def test_expired_bundle_is_replaced_with_backup(self, harness, pem_pair):
        cert, key = pem_pair("localhost", days_valid=-1, days_before=60)
        harness.seed(cert, key, "localhost")

        result = await harness.resolver.resolve("localhost")

        assert result.action == MetadataAction.GENERATED
        assert result.bundle.cert_pem != cert
        assert result.backup is not None
        assert Path(result.backup.cert_path).read_bytes() == cert

    @pytest.mark.asyncio
    async def test_bundle_for_other_domain_is_replaced(self, harness, pem_pair):
        cert, key = pem_pair("other.example.org")
        harness.seed(cert, key, "other.example.org")

        result = await harness.resolver.resolve("localhost")

        assert result.action == MetadataAction.GENERATED
        assert len(harness.store.list_backups()) == 1


class TestExplicitModes:
    """Forced replacement, disable and import."""

    @pytest.mark.asyncio
    async def test_self_signed_replaces_with_backup(self, harness, pem_pair):
        cert, key = pem_pair("localhost", dns_names=["localhost"])
        harness.seed(cert, key, "localhost")

        result = await harness.resolver.resolve("localhost", AcquisitionMode.SELF_SIGNED)

        assert result.bundle.cert_pem != cert
        assert Path(result.backup.cert_path).read_bytes() == cert

    @pytest.mark.asyncio
    async def test_force_skips_backup(self, harness, pem_pair):
        cert, key = pem_pair("localhost")
        harness.seed(cert, key, "localhost")

        result = await harness.resolver.resolve("localhost", AcquisitionMode.AUTO, force=True)

        assert result.action == MetadataAction.GENERATED
        assert result.bundle.cert_pem != cert
        assert result.backup is None
        assert harness.store.list_backups() == []

    @pytest.mark.asyncio
    async def test_disabled_backs_up_and_removes(self, harness, pem_pair):
        cert, key = pem_pair("localhost")
        harness.seed(cert, key, "localhost")

        result = await harness.resolver.resolve("localhost", AcquisitionMode.DISABLED, force=True)

        assert result.mode == AcquisitionMode.DISABLED
        assert result.bundle is None
        assert result.backup is not None
        assert harness.store.read() is None

    @pytest.mark.asyncio
    async def test_import(self, harness, pem_pair, tmp_path):
        cert, key = pem_pair("example.com", key_index=1)
        (tmp_path / "site.crt").write_bytes(cert)
        (tmp_path / "site.key").write_bytes(key)

        result = await harness.resolver.resolve(
            "example.com", AcquisitionMode.IMPORT, import_path=str(tmp_path / "site.crt")
        )

        assert result.mode == AcquisitionMode.IMPORT
        assert result.action == MetadataAction.IMPORTED
        assert harness.store.read().cert_pem == cert
        assert result.notices == []

    @pytest.mark.asyncio
    async def test_import_for_other_domain_is_reported(self, harness, pem_pair, tmp_path):
        cert, key = pem_pair("other.example.org")
        (tmp_path / "server.crt").write_bytes(cert)
        (tmp_path / "server.key").write_bytes(key)

        result = await harness.resolver.resolve("example.com", "import", import_path=str(tmp_path))

        assert [n.code for n in result.notices] == ["domain_mismatch"]

    @pytest.mark.asyncio
    async def test_import_without_path(self, harness):
        with pytest.raises(ImportInvalidError):
            await harness.resolver.resolve("example.com", AcquisitionMode.IMPORT)

    @pytest.mark.asyncio
    async def test_empty_domain(self, harness):
        with pytest.raises(ValueError):
            await harness.resolver.resolve("  ")


class TestFallbacks:
    """Every downgrade is recovered and reported."""

    @pytest.mark.asyncio
    async def test_missing_prerequisites(self, test_settings):
        harness = Harness(test_settings, capability=UNAVAILABLE)

        result = await harness.resolver.resolve("example.com")

        assert result.mode == AcquisitionMode.SELF_SIGNED
        assert [n.code for n in result.notices] == ["acme_prerequisites_missing"]
        harness.acme.obtain.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_explicit_acme_failure_falls_back(self, test_settings):
        acme = MagicMock()
        acme.obtain = AsyncMock(side_effect=ChallengeFailedError("DNS problem", domain="example.com"))
        harness = Harness(test_settings, acme=acme)

        result = await harness.resolver.resolve("example.com", AcquisitionMode.ACME, email="ops@example.com")

        acme.obtain.assert_awaited_once_with("example.com", "ops@example.com")
        assert result.requested_mode == AcquisitionMode.ACME
        assert result.mode == AcquisitionMode.SELF_SIGNED
        assert result.notices[0].code == "challenge_failed"
        assert "DNS problem" in result.notices[0].message

    @pytest.mark.asyncio
    async def test_minimal_profile_after_generation_failure(self, harness):
        real_generate = harness.generator._generate_sync

        def flaky(profile):
            if profile.name != "minimal":
                raise GenerationFailedError("entropy exhausted", domain=profile.common_name)
            return real_generate(profile)

        with patch.object(harness.generator, "_generate_sync", side_effect=flaky):
            result = await harness.resolver.resolve("localhost", AcquisitionMode.SELF_SIGNED)

        assert result.mode == AcquisitionMode.SELF_SIGNED
        assert result.bundle.metadata.validity_days == 30
        assert [n.code for n in result.notices] == ["generation_failed"]

    @pytest.mark.asyncio
    async def test_total_generation_failure_leaves_store(self, harness, pem_pair):
        cert, key = pem_pair("localhost")
        harness.seed(cert, key, "localhost")

        with patch.object(
            harness.generator, "_generate_sync", side_effect=GenerationFailedError("no key", domain="localhost")
        ):
            with pytest.raises(GenerationFailedError):
                await harness.resolver.resolve("localhost", AcquisitionMode.SELF_SIGNED, force=True)

        assert harness.store.read().cert_pem == cert


class TestCommit:
    """Post-write validation and rollback."""

    @pytest.mark.asyncio
    async def test_rollback_when_written_bundle_fails_validation(self, harness, pem_pair):
        cert, key = pem_pair("localhost")
        harness.seed(cert, key, "localhost")

        with patch.object(harness.validator, "validate", return_value=ValidationResult(errors=["corrupt"])):
            with pytest.raises(StoreWriteError, match="previous state restored"):
                await harness.resolver.resolve("localhost", AcquisitionMode.SELF_SIGNED)

        assert harness.store.read().cert_pem == cert

    @pytest.mark.asyncio
    async def test_rollback_without_prior_bundle_removes(self, harness):
        with patch.object(harness.validator, "validate", return_value=ValidationResult(errors=["corrupt"])):
            with pytest.raises(StoreWriteError):
                await harness.resolver.resolve("localhost", AcquisitionMode.SELF_SIGNED)

        assert harness.store.read() is None

    @pytest.mark.asyncio
    async def test_failed_metadata_write_keeps_previous_bundle(self, harness, pem_pair):
        cert, key = pem_pair("localhost")
        seeded = harness.seed(cert, key, "localhost")
        real_replace = os.replace

        def failing_metadata_replace(src, dst):
            if Path(dst) == harness.store.metadata_path and str(src).endswith(".tmp"):
                raise OSError("No space left on device")
            return real_replace(src, dst)

        with patch("core.cert_store.os.replace", side_effect=failing_metadata_replace):
            with pytest.raises(StoreWriteError):
                await harness.resolver.resolve("localhost", AcquisitionMode.SELF_SIGNED)

        current = harness.store.read()
        assert current.cert_pem == cert
        assert current.key_pem == key
        assert current.metadata.generated_at == seeded.metadata.generated_at


class TestConcurrency:
    """Pipelines sharing one store run one at a time."""

    @pytest.mark.asyncio
    async def test_concurrent_resolves_do_not_interleave(self, test_settings):
        harness = Harness(test_settings.model_copy(update={"lock_timeout": 30.0}))
        real_generate = harness.generator.generate
        inside = 0
        max_inside = 0

        async def slow_generate(*args, **kwargs):
            nonlocal inside, max_inside
            inside += 1
            max_inside = max(max_inside, inside)
            try:
                await asyncio.sleep(0.1)
                return await real_generate(*args, **kwargs)
            finally:
                inside -= 1

        with patch.object(harness.generator, "generate", side_effect=slow_generate):
            results = await asyncio.gather(
                harness.resolver.resolve("localhost", AcquisitionMode.SELF_SIGNED),
                harness.resolver.resolve("localhost", AcquisitionMode.SELF_SIGNED),
            )

        assert max_inside == 1
        assert [r.action for r in results] == [MetadataAction.GENERATED, MetadataAction.GENERATED]
        # The second pipeline backed up what the first one installed
        backups = harness.store.list_backups()
        assert len(backups) == 1
        with open(backups[0].cert_path, "rb") as f:
            assert f.read() == results[0].bundle.cert_pem
        assert harness.store.read().cert_pem == results[1].bundle.cert_pem
