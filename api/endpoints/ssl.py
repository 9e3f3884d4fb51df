"""
TLS certificate endpoints.

REST surface for the certificate lifecycle: setup (acquire or disable),
status, validation, backups, injection into the proxy container and
proxy restart.
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from core.cert_errors import (
    CertificateError,
    ContainerNotRunningError,
    ImportInvalidError,
    InjectionError,
    PortContentionError,
    AcmeError,
)
from core.docker_service import (
    ContainerNotFoundError,
    DockerServiceError,
    DockerUnavailableError,
)
from core.ssl_manager import get_ssl_manager
from models.certificate import InjectionResult, ValidationResult
from models.ssl_requests import (
    BackupListResponse,
    BackupResponse,
    CertificateStatusResponse,
    InjectRequest,
    RestartResponse,
    SetupRequest,
    SetupResponse,
    WizardRequest,
    WizardResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ssl", tags=["TLS Certificates"])


def _handle_certificate_error(e: CertificateError) -> HTTPException:
    """Convert certificate errors to HTTP exceptions."""
    if isinstance(e, ImportInvalidError):
        status_code = 400
    elif isinstance(e, (PortContentionError, ContainerNotRunningError)):
        status_code = 409
    elif isinstance(e, (AcmeError, InjectionError)):
        status_code = 502
    else:
        status_code = 500
    return HTTPException(status_code=status_code, detail=e.to_dict())


def _handle_docker_error(e: DockerServiceError) -> HTTPException:
    """Convert Docker errors to HTTP exceptions."""
    status_code = 503 if isinstance(e, (ContainerNotFoundError, DockerUnavailableError)) else 500
    return HTTPException(
        status_code=status_code,
        detail={"error": e.error_type, "message": e.message, "suggestion": e.suggestion},
    )


@router.post(
    "/setup",
    response_model=SetupResponse,
    summary="Acquire, Replace or Disable the Certificate",
    description="""
    Decide how the certificate is obtained and install it.

    **Modes:**
    - `auto` (default): keep a valid certificate, otherwise try Let's Encrypt
      for public domains and fall back to self-signed
    - `preserve`: keep the current certificate if it is valid for the domain
    - `self-signed`, `acme`, `import`: use that path directly
    - `disabled`: back up and remove the certificate

    Every fallback step is listed in `notices` so the trust level of the
    result is always visible. If the proxy container is running the new
    certificate is injected; injection problems are reported in
    `injection_error` without undoing the acquisition.
    """,
)
async def setup_certificate(request: SetupRequest) -> SetupResponse:
    try:
        return await get_ssl_manager().setup(request)
    except CertificateError as e:
        logger.error(f"Certificate setup for {request.domain} failed: {e.message}")
        raise _handle_certificate_error(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail={"error": "invalid_request", "message": str(e)})


@router.post(
    "/wizard",
    response_model=WizardResponse,
    summary="Step Through the Setup Wizard",
    description="""
    Replay the answers given so far and return the next question. Once the
    wizard is complete, `request` holds the body to submit to `/ssl/setup`.
    """,
)
async def setup_wizard(request: WizardRequest) -> WizardResponse:
    try:
        wizard = await get_ssl_manager().new_wizard()
    except CertificateError as e:
        raise _handle_certificate_error(e)
    prompt = wizard.replay(request.answers)
    if wizard.done:
        return WizardResponse(prompt=prompt, complete=True, request=wizard.result())
    return WizardResponse(prompt=prompt)


@router.get(
    "/status",
    response_model=CertificateStatusResponse,
    summary="Certificate Status",
    description="Metadata, validation result, backup summary and proxy container state.",
)
async def certificate_status() -> CertificateStatusResponse:
    try:
        return await get_ssl_manager().status()
    except CertificateError as e:
        raise _handle_certificate_error(e)


@router.get(
    "/validate",
    response_model=ValidationResult,
    summary="Validate the Certificate",
    description="""
    Check structure, key match, expiry and (if `domain` is given) domain
    coverage of the live certificate. Never fails: problems are reported
    in the result.
    """,
)
async def validate_certificate(
    domain: Optional[str] = Query(None, description="Domain the certificate must cover"),
) -> ValidationResult:
    try:
        return await get_ssl_manager().validate(domain)
    except CertificateError as e:
        raise _handle_certificate_error(e)


@router.post("/backup", response_model=BackupResponse, summary="Back Up the Certificate")
async def backup_certificate() -> BackupResponse:
    try:
        return await get_ssl_manager().backup()
    except CertificateError as e:
        raise _handle_certificate_error(e)


@router.get("/backups", response_model=BackupListResponse, summary="List Certificate Backups")
async def list_backups() -> BackupListResponse:
    try:
        return await get_ssl_manager().list_backups()
    except CertificateError as e:
        raise _handle_certificate_error(e)


@router.post(
    "/inject",
    response_model=InjectionResult,
    summary="Inject the Certificate into the Proxy",
    description="""
    Copy the live certificate into the running proxy container, reload it
    (restart only if reload is not possible) and validate the copy inside
    the container. A stopped container is never started.
    """,
)
async def inject_certificate(request: Optional[InjectRequest] = None) -> InjectionResult:
    container = request.container if request else None
    try:
        return await get_ssl_manager().inject(container)
    except CertificateError as e:
        logger.error(f"Certificate injection failed: {e.message}")
        raise _handle_certificate_error(e)
    except DockerServiceError as e:
        logger.error(f"Certificate injection failed: {e.message}")
        raise _handle_docker_error(e)


@router.post("/restart", response_model=RestartResponse, summary="Restart the Proxy Container")
async def restart_proxy() -> RestartResponse:
    try:
        return await get_ssl_manager().restart_proxy()
    except DockerServiceError as e:
        logger.error(f"Proxy restart failed: {e.message}")
        raise _handle_docker_error(e)
