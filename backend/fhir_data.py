"""
Patient dashboard reads for an authenticated SMART session.

The dashboard resources are independent, so they are requested concurrently
and joined before the response is built. Resources are passed through as
raw FHIR JSON.
"""
import asyncio
import logging
import time
from typing import Optional

import httpx

import config
from launch_sequencer import Session

logger = logging.getLogger(__name__)


def fhir_headers(access_token: str) -> dict:
    return {
        "Authorization": f"Bearer {access_token}",
        "Accept": "application/fhir+json",
        "User-Agent": "SMART-on-FHIR-Launch/1.0",
    }


async def fetch_fhir_resource(client: httpx.AsyncClient, base_url: str, resource_path: str) -> dict:
    """
    Fetch a single FHIR resource or search bundle.
    Returns a result dict with either "data" or "error" set.
    """
    url = f"{base_url.rstrip('/')}/{resource_path}"
    logger.info(f"Fetching FHIR resource: {url}")
    try:
        response = await client.get(url)
    except httpx.TimeoutException:
        return {"success": False, "status": None, "error": "Request timeout"}
    except httpx.HTTPError as e:
        return {"success": False, "status": None, "error": f"Request failed: {e}"}

    if response.status_code == 200:
        try:
            return {"success": True, "status": 200, "data": response.json()}
        except ValueError:
            return {"success": False, "status": 200, "error": "Response is not valid JSON"}
    return {"success": False, "status": response.status_code, "error": f"HTTP {response.status_code}: {response.text[:300]}"}


async def fetch_patient_data(session: Session, transport: Optional[httpx.AsyncBaseTransport] = None,
                             resources: Optional[dict] = None) -> dict:
    """Fetch every dashboard resource for the session's patient in parallel."""
    resources = resources or config.FHIR_RESOURCES
    paths = {name: path.format(patient_id=session.patient_id) for name, path in resources.items()}

    async with httpx.AsyncClient(
        headers=fhir_headers(session.access_token),
        timeout=config.HTTP_TIMEOUT_SECONDS,
        transport=transport,
    ) as client:
        results = await asyncio.gather(
            *(fetch_fhir_resource(client, session.base_url, path) for path in paths.values())
        )

    patient_data = {
        "metadata": {
            "fhir_server": session.base_url,
            "patient_id": session.patient_id,
            "fetch_timestamp": time.time(),
            "resources_fetched": [],
            "resources_failed": [],
            "errors": [],
        }
    }
    for name, result in zip(paths, results):
        if result["success"]:
            patient_data[name] = result["data"]
            patient_data["metadata"]["resources_fetched"].append(name)
        else:
            patient_data[name] = None
            patient_data["metadata"]["resources_failed"].append(name)
            patient_data["metadata"]["errors"].append(f"{name}: {result['error']}")
            logger.warning(f"Failed to fetch {name}: {result['error']}")

    if any(result.get("status") == 401 for result in results):
        patient_data["metadata"]["needs_reauth"] = True

    logger.info(f"Resources fetched successfully: {patient_data['metadata']['resources_fetched']}")
    return patient_data
