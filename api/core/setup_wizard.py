"""
Certificate setup wizard as a pure state machine.

The wizard only decides what to ask next and what the answers mean; it
never reads input or touches the filesystem itself. A front-end feeds
answers through ``answer()`` and, once complete, passes ``result()`` to
the setup operation.
"""

import os
from typing import Callable, Optional, List

from pydantic import ValidationError

from core.acme_client import is_acme_eligible
from models.certificate import AcquisitionMode
from models.ssl_requests import SetupRequest, WizardPrompt, WizardStep, check_domain


LOCAL_CHOICES = [AcquisitionMode.SELF_SIGNED, AcquisitionMode.IMPORT, AcquisitionMode.DISABLED]
PUBLIC_CHOICES = [
    AcquisitionMode.ACME,
    AcquisitionMode.IMPORT,
    AcquisitionMode.SELF_SIGNED,
    AcquisitionMode.DISABLED,
]

_YES = {"y", "yes"}
_NO = {"n", "no"}


class SetupWizard:
    """Walks domain → keep existing? → mode → email/import path → done."""

    def __init__(
        self,
        existing_valid: Optional[Callable[[str], bool]] = None,
        path_exists: Callable[[str], bool] = os.path.exists,
        default_domain: str = "localhost",
    ):
        self._existing_valid = existing_valid or (lambda domain: False)
        self._path_exists = path_exists
        self.default_domain = default_domain

        self.step = WizardStep.DOMAIN
        self.error: Optional[str] = None
        self.domain: Optional[str] = None
        self.mode: Optional[AcquisitionMode] = None
        self.email: Optional[str] = None
        self.import_path: Optional[str] = None

    @property
    def done(self) -> bool:
        return self.step == WizardStep.DONE

    def mode_choices(self) -> List[AcquisitionMode]:
        if self.domain and is_acme_eligible(self.domain):
            return list(PUBLIC_CHOICES)
        return list(LOCAL_CHOICES)

    @property
    def prompt(self) -> WizardPrompt:
        if self.step == WizardStep.DOMAIN:
            return WizardPrompt(
                step=self.step, message="Domain name for the certificate", default=self.default_domain, error=self.error
            )
        if self.step == WizardStep.KEEP_EXISTING:
            return WizardPrompt(
                step=self.step,
                message=f"A valid certificate for {self.domain} already exists. Keep it?",
                choices=["yes", "no"],
                default="yes",
                error=self.error,
            )
        if self.step == WizardStep.CHOOSE_MODE:
            choices = [m.value for m in self.mode_choices()]
            return WizardPrompt(
                step=self.step,
                message=f"How should the certificate for {self.domain} be obtained?",
                choices=choices,
                default=choices[0],
                error=self.error,
            )
        if self.step == WizardStep.EMAIL:
            return WizardPrompt(
                step=self.step,
                message="Email for Let's Encrypt notifications",
                default=f"admin@{self.domain}",
                error=self.error,
            )
        if self.step == WizardStep.IMPORT_PATH:
            return WizardPrompt(
                step=self.step, message="Path to the certificate file or its directory", error=self.error
            )
        return WizardPrompt(step=self.step, message="Setup complete")

    def answer(self, value: Optional[str]) -> WizardPrompt:
        """
        Feed one answer and advance.

        An invalid answer leaves the step unchanged and sets ``prompt.error``.

        Raises:
            RuntimeError: If the wizard is already complete
        """
        if self.done:
            raise RuntimeError("Wizard is already complete")

        value = (value or "").strip()
        self.error = None

        if self.step == WizardStep.DOMAIN:
            self._answer_domain(value or self.default_domain)
        elif self.step == WizardStep.KEEP_EXISTING:
            self._answer_keep(value.lower() or "yes")
        elif self.step == WizardStep.CHOOSE_MODE:
            self._answer_mode(value)
        elif self.step == WizardStep.EMAIL:
            self._answer_email(value or f"admin@{self.domain}")
        elif self.step == WizardStep.IMPORT_PATH:
            self._answer_import_path(value)
        return self.prompt

    def replay(self, answers: List[str]) -> WizardPrompt:
        """Feed answers in order, stopping once the wizard is complete."""
        for value in answers:
            if self.done:
                break
            self.answer(value)
        return self.prompt

    def _answer_domain(self, value: str):
        try:
            self.domain = check_domain(value)
        except ValueError as e:
            self.error = str(e)
            return
        if self._existing_valid(self.domain):
            self.step = WizardStep.KEEP_EXISTING
        else:
            self.step = WizardStep.CHOOSE_MODE

    def _answer_keep(self, value: str):
        if value in _YES:
            self.mode = AcquisitionMode.PRESERVE
            self.step = WizardStep.DONE
        elif value in _NO:
            self.step = WizardStep.CHOOSE_MODE
        else:
            self.error = "Please answer yes or no"

    def _answer_mode(self, value: str):
        choices = self.mode_choices()
        if not value:
            selected = choices[0]
        elif value.isdigit() and 1 <= int(value) <= len(choices):
            selected = choices[int(value) - 1]
        else:
            selected = next((m for m in choices if m.value == value.lower()), None)
            if selected is None:
                self.error = f"Choose one of: {', '.join(m.value for m in choices)}"
                return

        self.mode = selected
        if selected == AcquisitionMode.ACME:
            self.step = WizardStep.EMAIL
        elif selected == AcquisitionMode.IMPORT:
            self.step = WizardStep.IMPORT_PATH
        else:
            self.step = WizardStep.DONE

    def _answer_email(self, value: str):
        local, _, host = value.partition("@")
        if not local or "." not in host:
            self.error = f"Invalid email address: {value}"
            return
        self.email = value
        self.step = WizardStep.DONE

    def _answer_import_path(self, value: str):
        if not value:
            self.error = "A certificate path is required"
            return
        if not self._path_exists(value):
            self.error = f"Path does not exist: {value}"
            return
        self.import_path = value
        self.step = WizardStep.DONE

    def result(self) -> SetupRequest:
        """
        The setup request the answers describe.

        Raises:
            RuntimeError: If the wizard has not finished
        """
        if not self.done:
            raise RuntimeError(f"Wizard not complete (waiting for {self.step.value})")
        try:
            return SetupRequest(domain=self.domain, mode=self.mode, email=self.email, import_path=self.import_path)
        except ValidationError as e:
            raise RuntimeError(f"Wizard produced an invalid request: {e}") from e
