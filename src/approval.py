"""
Consent step for one pending client authorization.

The approval page is driven by an explicit state machine:

    loading --fetch ok--> ready --submit--> submitting --ok--> submitted
       |                    ^                    |
       +--fetch failed--> error                  +--failed--> ready (inline error)

- loading:    the AuthorizationRequest is being fetched; only a spinner shows
- error:      terminal; the backend message is shown verbatim with a way home
- ready:      the consent summary and the Cancel / Authorize form
- submitting: the decision is in flight; further submissions are rejected
- submitted:  terminal; the backend has answered with the redirect to follow

The controller never navigates and never talks to the network directly. The
fetch and submit operations are injected, so the machine can be driven in
tests without a browser or a server.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class ApprovalDecision(str, enum.Enum):
    APPROVED = "approved"
    DENIED = "denied"


class ApprovalState(str, enum.Enum):
    LOADING = "loading"
    ERROR = "error"
    READY = "ready"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"


_TRANSITIONS: dict[ApprovalState, set[ApprovalState]] = {
    ApprovalState.LOADING: {ApprovalState.READY, ApprovalState.ERROR},
    ApprovalState.READY: {ApprovalState.SUBMITTING},
    ApprovalState.SUBMITTING: {ApprovalState.READY, ApprovalState.SUBMITTED},
    ApprovalState.ERROR: set(),
    ApprovalState.SUBMITTED: set(),
}


class InvalidTransition(RuntimeError):
    """Raised when the controller is asked to move along an edge it doesn't have."""


@dataclass(frozen=True)
class SummaryRow:
    label: str
    values: tuple[str, ...]
    link: bool = False


class AuthorizationRequest(BaseModel):
    """
    What a client is asking for, as shown to the user.

    Serialized with the camelCase names used on the wire. An absent optional
    field and an empty list both mean "leave it off the page".
    """

    model_config = ConfigDict(populate_by_name=True)

    client_name: str = Field(alias="clientName", min_length=1)
    client_uri: str | None = Field(default=None, alias="clientUri")
    policy_uri: str | None = Field(default=None, alias="policyUri")
    tos_uri: str | None = Field(default=None, alias="tosUri")
    redirect_uris: list[str] | None = Field(default=None, alias="redirectUris")
    contacts: list[str] | None = Field(default=None, alias="contacts")

    def summary(self) -> list[SummaryRow]:
        rows = [SummaryRow("Name", (self.client_name,))]
        if self.client_uri:
            rows.append(SummaryRow("Website", (self.client_uri,), link=True))
        if self.policy_uri:
            rows.append(SummaryRow("Privacy Policy", (self.policy_uri,), link=True))
        if self.tos_uri:
            rows.append(SummaryRow("Terms of Service", (self.tos_uri,), link=True))
        if self.redirect_uris:
            rows.append(SummaryRow("Redirect URIs", tuple(self.redirect_uris)))
        if self.contacts:
            rows.append(SummaryRow("Contact", (", ".join(self.contacts),)))
        return rows


FetchRequest = Callable[[], Awaitable[AuthorizationRequest]]
SubmitDecision = Callable[[ApprovalDecision], Awaitable[str]]


class ApprovalController:
    """
    State machine for a single authorization request.

    Args:
        fetch_request: Loads the AuthorizationRequest. Any exception it raises
                       becomes the error message.
        submit_decision: Records the decision with the backend and returns the
                         redirect the backend wants the browser to follow.
    """

    def __init__(self, fetch_request: FetchRequest, submit_decision: SubmitDecision):
        self._fetch_request = fetch_request
        self._submit_decision = submit_decision
        self.state = ApprovalState.LOADING
        self.request: AuthorizationRequest | None = None
        self.error: str | None = None
        self.inline_error: str | None = None
        self.redirect_to: str | None = None
        self.cancelled = False

    def _move(self, target: ApprovalState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state.value} -> {target.value}")
        self.state = target

    async def load(self) -> ApprovalState:
        if self.state is not ApprovalState.LOADING:
            return self.state
        try:
            request = await self._fetch_request()
        except Exception as e:
            self.error = str(e) or "Authorization request could not be loaded"
            self._move(ApprovalState.ERROR)
            return self.state

        self.request = request
        self._move(ApprovalState.READY)
        return self.state

    async def submit(self) -> bool:
        """
        Post the approval.

        Returns False without touching the backend unless the controller is in
        the ready state, so a second click while a submission is outstanding
        is ignored.
        """
        if self.state is not ApprovalState.READY:
            logger.info(
                "Approval submission ignored",
                extra={"auth_data": {"state": self.state.value, "decision": "ignored"}},
            )
            return False

        self._move(ApprovalState.SUBMITTING)
        self.inline_error = None
        try:
            redirect_to = await self._submit_decision(ApprovalDecision.APPROVED)
        except Exception as e:
            self.inline_error = str(e) or "Authorization failed. Please try again."
            self._move(ApprovalState.READY)
            return False

        self.redirect_to = redirect_to
        self._move(ApprovalState.SUBMITTED)
        return True

    def cancel(self) -> None:
        # Closing the window leaves no decision behind; the backend is not told.
        self.cancelled = True

    @property
    def can_submit(self) -> bool:
        return self.state is ApprovalState.READY
