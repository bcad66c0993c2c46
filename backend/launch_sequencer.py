"""
SMART on FHIR EHR launch sequence.

The handshake spans two requests to /launch:

1. The EHR sends the user in with ``launch`` and ``iss``. We resolve the
   issuer, generate anti-forgery state and a PKCE pair, persist them in the
   launch store and redirect to the authorization endpoint.
2. The authorization server sends the user back with ``code`` and
   ``state``. We validate them against the store, exchange the code for an
   access token and persist the resulting session.

A standalone launch (from the home page) runs the same first step without a
``launch`` parameter.

Nothing survives between the two requests except what was written to the
launch store. A LaunchSequencer instance serves exactly one request.
"""
import hmac
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Mapping, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

import requests

import config
import launch_store as keys
from client_identity import select_client_id
from errors import (
    ExpiredSession,
    LaunchAlreadyStarted,
    MissingLaunchParameters,
    MissingParameter,
    OAuthProviderError,
    SmartLaunchError,
    StateMismatch,
    TokenExchangeFailed,
)
from issuer_config import IssuerConfiguration, IssuerConfigurationResolver
from launch_store import LaunchStore
from pkce import build_pkce, generate_state

logger = logging.getLogger(__name__)


class LaunchPhase(Enum):
    IDLE = "idle"
    INITIATING = "initiating"
    AWAITING_CALLBACK = "awaiting_callback"
    VALIDATING = "validating"
    EXCHANGING = "exchanging"
    AUTHENTICATED = "authenticated"
    ERRORED = "errored"


class LaunchAction(Enum):
    AUTHORIZE = "authorize"  # redirect out to the authorization endpoint
    HOME = "home"
    DASHBOARD = "dashboard"


@dataclass(frozen=True)
class TokenResult:
    access_token: str
    patient_id: str


@dataclass(frozen=True)
class Session:
    base_url: str
    access_token: str
    patient_id: str


@dataclass(frozen=True)
class LaunchOutcome:
    action: LaunchAction
    location: Optional[str] = None
    session: Optional[Session] = None


def mask(value: Optional[str], n: int = 8) -> str:
    return value[:n] + "…" if value else "<none>"


def load_session(store: LaunchStore) -> Optional[Session]:
    """Read the authenticated session triple back from the store."""
    access_token = store.get(keys.SMART_ACCESS_TOKEN)
    patient_id = store.get(keys.SMART_PATIENT)
    base_url = store.get(keys.SMART_BASE_URL)
    if not (access_token and patient_id and base_url):
        return None
    return Session(base_url=base_url, access_token=access_token, patient_id=patient_id)


def build_authorization_url(authorization_endpoint: str, params: Mapping[str, str]) -> str:
    """Replace the endpoint's query string with the authorization request parameters."""
    parts = urlsplit(authorization_endpoint)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(params), ""))


class LaunchSequencer:
    """Drives one step of the EHR launch handshake for a single request."""

    def __init__(
        self,
        store: LaunchStore,
        resolver: Optional[IssuerConfigurationResolver] = None,
        http: Optional[requests.Session] = None,
        redirect_uri: Optional[str] = None,
        scope: Optional[str] = None,
        state_ttl: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.http = http or (resolver.http if resolver else requests.Session())
        self.resolver = resolver or IssuerConfigurationResolver(self.http)
        self.redirect_uri = redirect_uri or config.REDIRECT_URI
        self.scope = scope or config.FHIR_SCOPE
        self.state_ttl = config.LAUNCH_STATE_TTL_SECONDS if state_ttl is None else state_ttl
        self.clock = clock
        self.phase = LaunchPhase.IDLE
        self.error: Optional[SmartLaunchError] = None
        self._started = False

    def handle(self, params: Mapping[str, str]) -> LaunchOutcome:
        """Run the step selected by the request's query parameters. Only once per instance."""
        return self._run(self._dispatch, params)

    def start_standalone(self, iss: str) -> LaunchOutcome:
        """Begin a standalone launch against iss: same handshake, no EHR launch context."""
        return self._run(self._begin, iss, None, {})

    def _run(self, step, *args) -> LaunchOutcome:
        if self._started:
            raise LaunchAlreadyStarted()
        # Set before any I/O so a re-entrant call is rejected
        self._started = True

        try:
            return step(*args)
        except SmartLaunchError as e:
            self.phase = LaunchPhase.ERRORED
            self.error = e
            logger.warning(f"SMART launch failed ({e.kind}): {e.message}")
            raise
        except Exception:
            self.phase = LaunchPhase.ERRORED
            raise

    def _dispatch(self, params: Mapping[str, str]) -> LaunchOutcome:
        error = params.get("error")
        if error:
            raise OAuthProviderError(error, params.get("error_description"))

        launch = params.get("launch")
        code = params.get("code")

        if not launch and not code:
            if self.store.has_session():
                logger.info("Already authenticated, redirecting to patient page")
                self.phase = LaunchPhase.AUTHENTICATED
                return LaunchOutcome(LaunchAction.DASHBOARD, session=load_session(self.store))
            logger.info("No SMART launch params, redirecting to home")
            self.phase = LaunchPhase.IDLE
            return LaunchOutcome(LaunchAction.HOME)

        if launch:
            return self._initiate(params)

        return self._complete(params)

    def _initiate(self, params: Mapping[str, str]) -> LaunchOutcome:
        self.phase = LaunchPhase.INITIATING
        iss = params.get("iss")
        launch = params.get("launch")
        if not iss:
            raise MissingLaunchParameters("Missing iss parameter for EHR launch")

        logger.info(f"Starting EHR launch with iss: {iss}")
        return self._begin(iss, launch, params)

    def _begin(self, iss: str, launch: Optional[str], params: Mapping[str, str]) -> LaunchOutcome:
        self.phase = LaunchPhase.INITIATING
        previous = self.store.snapshot()

        # A new launch abandons any handshake still in flight
        self.store.clear_handshake()
        self.store.put(keys.SMART_ISS, iss)

        try:
            issuer_config = self.resolver.resolve(iss)

            state = generate_state()
            code_verifier, code_challenge = build_pkce()
            client_id = select_client_id(params, iss)

            auth_params = {
                "response_type": "code",
                "client_id": client_id,
                "scope": self.scope,
                "redirect_uri": self.redirect_uri,
                "state": state,
                "aud": iss,
                "code_challenge": code_challenge,
                "code_challenge_method": "S256",
            }
            if launch:
                auth_params["launch"] = launch
            location = build_authorization_url(issuer_config.authorization_endpoint, auth_params)

            self.store.put(keys.SMART_STATE, state)
            self.store.put(keys.SMART_CODE_VERIFIER, code_verifier)
            self.store.put(keys.SMART_STARTED_AT, str(self.clock()))
        except Exception:
            # Keep the issuer for diagnostics, drop everything else written by this step
            self.store.restore(previous)
            self.store.put(keys.SMART_ISS, iss)
            raise

        logger.info(f"Redirecting to authorization endpoint {issuer_config.authorization_endpoint} (client_id={client_id})")
        self.phase = LaunchPhase.AWAITING_CALLBACK
        return LaunchOutcome(LaunchAction.AUTHORIZE, location=location)

    def _complete(self, params: Mapping[str, str]) -> LaunchOutcome:
        logger.info("Processing authorization response")
        self.phase = LaunchPhase.VALIDATING

        code = params.get("code")
        state = params.get("state")
        missing = [name for name, value in (("code", code), ("state", state)) if not value]
        if missing:
            self.store.clear_handshake(keep_issuer=True)
            raise MissingParameter(missing)

        if not self.store.claim(keys.SMART_EXCHANGE_CODE, code):
            logger.warning("Duplicate authorization response ignored")
            raise LaunchAlreadyStarted()

        try:
            iss, code_verifier = self._validate(state)
            self.phase = LaunchPhase.EXCHANGING
            issuer_config = self.resolver.resolve(iss)
            client_id = select_client_id(params, iss)
            token = self.exchange_code(issuer_config, code, client_id, code_verifier)
        except Exception:
            self.store.clear_handshake(keep_issuer=True)
            raise

        self.store.put(keys.SMART_PATIENT, token.patient_id)
        self.store.put(keys.SMART_ACCESS_TOKEN, token.access_token)
        self.store.put(keys.SMART_BASE_URL, iss)
        self.store.clear_handshake()

        self.phase = LaunchPhase.AUTHENTICATED
        logger.info(f"SMART launch complete: patient={token.patient_id}, access_token={mask(token.access_token)}")
        return LaunchOutcome(
            LaunchAction.DASHBOARD,
            session=Session(base_url=iss, access_token=token.access_token, patient_id=token.patient_id),
        )

    def _validate(self, state: str) -> tuple[str, str]:
        stored_state = self.store.get(keys.SMART_STATE)
        if not stored_state or not hmac.compare_digest(state.encode(), stored_state.encode()):
            logger.error(f"State mismatch: received={mask(state)} stored={mask(stored_state)}")
            raise StateMismatch()

        code_verifier = self.store.get(keys.SMART_CODE_VERIFIER)
        if not code_verifier:
            raise ExpiredSession()

        started_at = self.store.get(keys.SMART_STARTED_AT)
        if started_at and self.state_ttl > 0 and self.clock() - float(started_at) > self.state_ttl:
            raise ExpiredSession("Launch took too long - session expired.")

        iss = self.store.get(keys.SMART_ISS)
        if not iss:
            raise ExpiredSession("No issuer found in session storage.")

        return iss, code_verifier

    def exchange_code(self, issuer_config: IssuerConfiguration, code: str, client_id: str,
                      code_verifier: str) -> TokenResult:
        """POST the authorization code and PKCE verifier to the token endpoint."""
        token_data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
            "client_id": client_id,
            "code_verifier": code_verifier,
        }
        logger.info(f"Exchanging authorization code for access token at {issuer_config.token_endpoint}")

        try:
            token_resp = self.http.post(
                issuer_config.token_endpoint,
                data=token_data,
                headers={"Accept": "application/json"},
                timeout=self.resolver.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Token exchange request failed: {e}")
            raise TokenExchangeFailed(None, str(e)) from e

        if not token_resp.ok:
            logger.error(f"Token exchange failed: status={token_resp.status_code} body={token_resp.text[:300]}")
            raise TokenExchangeFailed(token_resp.status_code, token_resp.text)

        try:
            token_response = token_resp.json()
        except ValueError as e:
            raise TokenExchangeFailed(token_resp.status_code, "token response is not valid JSON") from e

        if not isinstance(token_response, dict) or not token_response.get("access_token"):
            raise TokenExchangeFailed(token_resp.status_code, "token response did not include an access_token")
        if not token_response.get("patient"):
            raise TokenExchangeFailed(token_resp.status_code, "token response did not include a patient context")

        return TokenResult(access_token=token_response["access_token"], patient_id=token_response["patient"])
