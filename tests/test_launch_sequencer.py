from urllib.parse import parse_qs, urlsplit

import pytest

import config
from conftest import AUTHORIZE_URL, ISS, TOKEN_URL, FakeResponse
from errors import (
    ConfigurationUnavailable,
    ExpiredSession,
    LaunchAlreadyStarted,
    MissingLaunchParameters,
    MissingParameter,
    OAuthProviderError,
    StateMismatch,
    TokenExchangeFailed,
)
from launch_sequencer import (
    LaunchAction,
    LaunchPhase,
    LaunchSequencer,
    build_authorization_url,
    load_session,
)
from launch_store import (
    SMART_ACCESS_TOKEN,
    SMART_BASE_URL,
    SMART_CODE_VERIFIER,
    SMART_EXCHANGE_CODE,
    SMART_ISS,
    SMART_PATIENT,
    SMART_STARTED_AT,
    SMART_STATE,
)


def initiate(store, http, **params):
    params = {"launch": "abc123", "iss": ISS, **params}
    return LaunchSequencer(store, http=http).handle(params)


def callback(store, http, **params):
    return LaunchSequencer(store, http=http).handle(params)


def query_of(url):
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


class TestInitiation:
    def test_redirects_to_authorization_endpoint(self, store, http):
        outcome = initiate(store, http)

        assert outcome.action is LaunchAction.AUTHORIZE
        assert outcome.location.startswith(AUTHORIZE_URL + "?")
        query = query_of(outcome.location)
        assert query["response_type"] == "code"
        assert query["aud"] == ISS
        assert query["launch"] == "abc123"
        assert query["scope"] == "launch/patient patient/*.read"
        assert query["redirect_uri"] == config.REDIRECT_URI
        assert query["client_id"] == config.DEFAULT_CLIENT_ID
        assert query["code_challenge_method"] == "S256"
        assert len(query["code_challenge"]) == 43
        assert query["state"] == store.get(SMART_STATE)

    def test_persists_handshake_state(self, store, http):
        initiate(store, http)

        assert store.get(SMART_ISS) == ISS
        assert store.get(SMART_STATE)
        assert store.get(SMART_CODE_VERIFIER)
        assert store.get(SMART_STARTED_AT)

    def test_verifier_is_never_sent(self, store, http):
        outcome = initiate(store, http)

        assert store.get(SMART_CODE_VERIFIER) not in outcome.location

    def test_explicit_client_id(self, store, http):
        outcome = initiate(store, http, client_id="my-app")

        assert query_of(outcome.location)["client_id"] == "my-app"

    def test_new_launch_replaces_inflight_handshake(self, store, http):
        initiate(store, http)
        first_state = store.get(SMART_STATE)
        initiate(store, http)

        assert store.get(SMART_STATE) != first_state

    def test_missing_iss(self, store, http):
        sequencer = LaunchSequencer(store, http=http)
        with pytest.raises(MissingLaunchParameters):
            sequencer.handle({"launch": "abc123"})

        assert sequencer.phase is LaunchPhase.ERRORED
        assert http.calls == []

    def test_discovery_failure_leaves_no_partial_state(self, store, http):
        http.route("GET", f"{ISS}/.well-known/smart-configuration", FakeResponse(status_code=500, text="boom"))
        store.put(SMART_STATE, "previous-state")

        with pytest.raises(ConfigurationUnavailable):
            initiate(store, http)

        assert store.get(SMART_ISS) == ISS
        assert store.get(SMART_STATE) == "previous-state"
        assert store.get(SMART_CODE_VERIFIER) is None

    def test_discovery_failure_keeps_session_written_meanwhile(self, store, http):
        def session_written_during_discovery(*args, **kwargs):
            store.put(SMART_ACCESS_TOKEN, "tok-concurrent")
            return FakeResponse(status_code=500, text="boom")

        http.get = session_written_during_discovery

        with pytest.raises(ConfigurationUnavailable):
            initiate(store, http)

        assert store.get(SMART_ACCESS_TOKEN) == "tok-concurrent"
        assert store.get(SMART_STATE) is None


class TestStandalone:
    def test_persists_handshake_without_launch_context(self, store, http):
        outcome = LaunchSequencer(store, http=http).start_standalone(ISS)

        query = query_of(outcome.location)
        assert outcome.action is LaunchAction.AUTHORIZE
        assert "launch" not in query
        assert query["aud"] == ISS
        assert query["code_challenge_method"] == "S256"
        assert query["state"] == store.get(SMART_STATE)
        assert store.get(SMART_ISS) == ISS
        assert store.get(SMART_CODE_VERIFIER)

    def test_callback_completes_standalone_launch(self, store, http):
        LaunchSequencer(store, http=http).start_standalone(ISS)

        outcome = callback(store, http, code="code1", state=store.get(SMART_STATE))

        assert outcome.action is LaunchAction.DASHBOARD
        assert store.get(SMART_ACCESS_TOKEN) == "tok1"

    def test_runs_once(self, store, http):
        sequencer = LaunchSequencer(store, http=http)
        sequencer.start_standalone(ISS)

        with pytest.raises(LaunchAlreadyStarted):
            sequencer.start_standalone(ISS)


class TestCallback:
    def test_exchanges_code_and_persists_session(self, store, http):
        initiate(store, http)
        state = store.get(SMART_STATE)
        verifier = store.get(SMART_CODE_VERIFIER)

        outcome = callback(store, http, code="code1", state=state)

        [post] = http.calls_for("POST")
        assert post["url"] == TOKEN_URL
        assert post["data"] == {
            "grant_type": "authorization_code",
            "code": "code1",
            "redirect_uri": config.REDIRECT_URI,
            "client_id": config.DEFAULT_CLIENT_ID,
            "code_verifier": verifier,
        }
        assert outcome.action is LaunchAction.DASHBOARD
        assert outcome.session.access_token == "tok1"
        assert outcome.session.patient_id == "pat1"
        assert outcome.session.base_url == ISS

        assert store.get(SMART_ACCESS_TOKEN) == "tok1"
        assert store.get(SMART_PATIENT) == "pat1"
        assert store.get(SMART_BASE_URL) == ISS
        for key in (SMART_ISS, SMART_STATE, SMART_CODE_VERIFIER, SMART_STARTED_AT, SMART_EXCHANGE_CODE):
            assert store.get(key) is None

    def test_configuration_resolved_again(self, store, http):
        initiate(store, http)
        callback(store, http, code="code1", state=store.get(SMART_STATE))

        assert len(http.calls_for("GET")) == 2

    def test_state_mismatch(self, store, http):
        initiate(store, http)

        with pytest.raises(StateMismatch) as excinfo:
            callback(store, http, code="code1", state="forged")

        assert "launching the app again" in excinfo.value.message
        assert http.calls_for("POST") == []
        assert store.get(SMART_STATE) is None
        assert store.get(SMART_CODE_VERIFIER) is None
        assert store.get(SMART_ISS) == ISS

    def test_state_without_prior_launch(self, store, http):
        with pytest.raises(StateMismatch):
            callback(store, http, code="code1", state="anything")

        assert http.calls == []

    def test_missing_verifier(self, store, http):
        initiate(store, http)
        store.remove(SMART_CODE_VERIFIER)

        with pytest.raises(ExpiredSession):
            callback(store, http, code="code1", state=store.get(SMART_STATE))

        assert http.calls_for("POST") == []

    def test_stale_handshake(self, store, http):
        LaunchSequencer(store, http=http, clock=lambda: 1000.0).handle({"launch": "abc123", "iss": ISS})
        state = store.get(SMART_STATE)

        sequencer = LaunchSequencer(store, http=http, state_ttl=600, clock=lambda: 1601.0)
        with pytest.raises(ExpiredSession):
            sequencer.handle({"code": "code1", "state": state})

        assert http.calls_for("POST") == []

    def test_missing_state(self, store, http):
        with pytest.raises(MissingParameter) as excinfo:
            callback(store, http, code="code1")

        assert excinfo.value.missing == ["state"]

    def test_oauth_error_short_circuits(self, store, http):
        initiate(store, http)
        state = store.get(SMART_STATE)

        with pytest.raises(OAuthProviderError) as excinfo:
            callback(store, http, error="access_denied", error_description="User denied", code="c", state=state)

        assert excinfo.value.message == "OAuth error: access_denied - User denied"
        assert http.calls_for("POST") == []
        assert store.get(SMART_STATE) == state

    def test_token_endpoint_rejects_code(self, store, http):
        http.route("POST", TOKEN_URL, FakeResponse(status_code=400, text='{"error":"invalid_grant"}'))
        initiate(store, http)

        with pytest.raises(TokenExchangeFailed) as excinfo:
            callback(store, http, code="code1", state=store.get(SMART_STATE))

        assert excinfo.value.status == 400
        assert "invalid_grant" in excinfo.value.message
        assert store.get(SMART_CODE_VERIFIER) is None
        assert store.get(SMART_ACCESS_TOKEN) is None

    def test_token_response_without_patient(self, store, http):
        http.route("POST", TOKEN_URL, FakeResponse(payload={"access_token": "tok1"}))
        initiate(store, http)

        with pytest.raises(TokenExchangeFailed):
            callback(store, http, code="code1", state=store.get(SMART_STATE))

        assert store.get(SMART_ACCESS_TOKEN) is None


class TestOneShot:
    def test_same_instance_runs_once(self, store, http):
        initiate(store, http)
        sequencer = LaunchSequencer(store, http=http)
        params = {"code": "code1", "state": store.get(SMART_STATE)}

        sequencer.handle(params)
        with pytest.raises(LaunchAlreadyStarted):
            sequencer.handle(params)

        assert len(http.calls_for("POST")) == 1

    def test_concurrent_duplicate_callback(self, store, http):
        initiate(store, http)
        params = {"code": "code1", "state": store.get(SMART_STATE)}
        duplicate_errors = []

        def duplicate_arrives():
            http.on_post = None
            try:
                LaunchSequencer(store, http=http).handle(params)
            except LaunchAlreadyStarted as e:
                duplicate_errors.append(e)

        http.on_post = duplicate_arrives
        outcome = LaunchSequencer(store, http=http).handle(params)

        assert outcome.action is LaunchAction.DASHBOARD
        assert len(duplicate_errors) == 1
        assert len(http.calls_for("POST")) == 1
        assert store.get(SMART_ACCESS_TOKEN) == "tok1"


class TestNoLaunchParams:
    def test_goes_home_without_session(self, store, http):
        sequencer = LaunchSequencer(store, http=http)
        outcome = sequencer.handle({})

        assert outcome.action is LaunchAction.HOME
        assert sequencer.phase is LaunchPhase.IDLE

    def test_goes_to_dashboard_with_session(self, store, http):
        store.put(SMART_ACCESS_TOKEN, "tok1")
        store.put(SMART_PATIENT, "pat1")
        store.put(SMART_BASE_URL, ISS)

        outcome = LaunchSequencer(store, http=http).handle({})

        assert outcome.action is LaunchAction.DASHBOARD
        assert outcome.session == load_session(store)
        assert http.calls == []

    def test_token_without_base_url_is_not_a_session(self, store, http):
        store.put(SMART_ACCESS_TOKEN, "tok1")
        store.put(SMART_PATIENT, "pat1")

        outcome = LaunchSequencer(store, http=http).handle({})

        assert outcome.action is LaunchAction.HOME
        assert outcome.session is None


def test_authorization_url_replaces_existing_query():
    url = build_authorization_url("https://auth.example.org/authorize?stale=1", {"state": "s"})
    assert url == "https://auth.example.org/authorize?state=s"

