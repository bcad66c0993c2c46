from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.middleware.cors import CORSMiddleware
from typing import Optional
import httpx
import requests
import logging

import config
from errors import SmartLaunchError
from fhir_data import fetch_patient_data
from issuer_config import IssuerConfigurationResolver, smart_configuration_url
from launch_sequencer import (
    LaunchAction,
    LaunchSequencer,
    load_session,
    mask,
)
from launch_store import MemoryLaunchStore, drop_session, find_store, new_session_id, open_store

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="SMART on FHIR Launch Backend", version="1.0.0")

# CORS middleware for frontend communication
app.add_middleware(
    CORSMiddleware,
    allow_origins=[config.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_http_session = requests.Session()


def get_http() -> requests.Session:
    """Outbound HTTP session for discovery and token exchange."""
    return _http_session


def get_fhir_transport() -> Optional[httpx.AsyncBaseTransport]:
    """Transport for downstream FHIR reads; None uses httpx's default."""
    return None


@app.exception_handler(SmartLaunchError)
async def smart_launch_error_handler(request: Request, exc: SmartLaunchError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def _session_id(request: Request) -> Optional[str]:
    return request.cookies.get(config.SESSION_COOKIE_NAME)


def _set_session_cookie(response, session_id: str) -> None:
    # samesite=lax so the cookie rides along on the redirect back from the authorization server
    response.set_cookie(
        config.SESSION_COOKIE_NAME,
        session_id,
        httponly=True,
        samesite="lax",
        secure=config.SESSION_COOKIE_SECURE,
    )


def _launch_response(outcome) -> RedirectResponse:
    if outcome.action is LaunchAction.AUTHORIZE:
        return RedirectResponse(url=outcome.location)
    if outcome.action is LaunchAction.DASHBOARD:
        return RedirectResponse(url=f"{config.FRONTEND_URL}/patient")
    return RedirectResponse(url=f"{config.FRONTEND_URL}/")


def _open_launch_store(request: Request):
    """Store that a new handshake writes to, creating the session on first use."""
    session_id = _session_id(request)
    is_new_session = not session_id
    if is_new_session:
        session_id = new_session_id()
    return session_id, is_new_session, open_store(session_id)


@app.get("/")
async def root():
    """
    Service banner plus the standalone launch options
    (launch straight against a sandbox, without an EHR launch context)
    """
    return {
        "message": "SMART on FHIR launch backend is running",
        "launch_options": [
            {
                "name": option["name"],
                "iss": option["iss"],
                "url": f"/standalone-launch?option={key}",
            }
            for key, option in config.STANDALONE_LAUNCH_OPTIONS.items()
        ],
    }


@app.get("/standalone-launch")
def standalone_launch(request: Request, option: str, http: requests.Session = Depends(get_http)):
    """
    Standalone launch: persist state and PKCE verifier for the caller's session,
    then redirect to the sandbox's authorization endpoint
    """
    launch_option = config.STANDALONE_LAUNCH_OPTIONS.get(option)
    if not launch_option:
        raise HTTPException(status_code=404, detail=f"Unknown launch option: {option}")

    logger.info(f"Starting standalone launch with {launch_option['name']}")
    session_id, is_new_session, store = _open_launch_store(request)
    try:
        response = _launch_response(LaunchSequencer(store, http=http).start_standalone(launch_option["iss"]))
    except SmartLaunchError as e:
        response = JSONResponse(status_code=e.status_code, content=e.to_dict())

    if is_new_session:
        _set_session_cookie(response, session_id)
    return response


@app.get("/test-smart-config")
def test_smart_config(iss: str, http: requests.Session = Depends(get_http)):
    """
    Test endpoint to verify SMART configuration discovery
    """
    issuer_config = IssuerConfigurationResolver(http).resolve(iss)
    return {
        "status": "success",
        "smart_config_url": smart_configuration_url(iss),
        "authorization_endpoint": issuer_config.authorization_endpoint,
        "token_endpoint": issuer_config.token_endpoint,
    }


@app.get("/launch")
def launch_app(request: Request, http: requests.Session = Depends(get_http)):
    """
    SMART on FHIR launch endpoint

    Handles both halves of the EHR launch:
    - launch + iss from the EHR: redirect to the authorization endpoint
    - code + state (or error) from the authorization server: exchange the code
      and redirect to the patient dashboard

    Declared sync so the blocking discovery and token calls run in the threadpool.
    """
    params = dict(request.query_params)
    safe_params = {k: (mask(v) if k in ("code", "state") else v) for k, v in params.items()}
    logger.info(f"Launch page params: {safe_params}")

    session_id, is_new_session = None, False
    if params.get("launch") and params.get("iss"):
        session_id, is_new_session, store = _open_launch_store(request)
    else:
        # Callbacks and bare visits only read an existing session; nothing is registered for them
        store = find_store(_session_id(request)) or MemoryLaunchStore()

    try:
        response = _launch_response(LaunchSequencer(store, http=http).handle(params))
    except SmartLaunchError as e:
        response = JSONResponse(status_code=e.status_code, content=e.to_dict())

    if is_new_session:
        _set_session_cookie(response, session_id)
    return response


@app.get("/session")
async def get_session_info(request: Request):
    """
    Authenticated session for the caller (access token masked)
    """
    store = find_store(_session_id(request))
    session = load_session(store) if store else None
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")

    return {
        "authenticated": True,
        "base_url": session.base_url,
        "patient_id": session.patient_id,
        "access_token": mask(session.access_token),
    }


@app.delete("/session")
async def delete_session(request: Request):
    """
    End the caller's session
    """
    removed = drop_session(_session_id(request))
    response = JSONResponse({"message": "Session deleted" if removed else "No session"})
    response.delete_cookie(config.SESSION_COOKIE_NAME)
    return response


@app.get("/patient-data")
async def get_patient_data(request: Request,
                           transport: Optional[httpx.AsyncBaseTransport] = Depends(get_fhir_transport)):
    """
    Fetch the patient dashboard resources using the stored access token
    """
    store = find_store(_session_id(request))
    session = load_session(store) if store else None
    if not session:
        raise HTTPException(status_code=401, detail="Not authenticated - launch the app from your EHR")

    return await fetch_patient_data(session, transport=transport)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.BACKEND_PORT)
