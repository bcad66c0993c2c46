# Configuration for the SMART on FHIR launch backend
import os

# Client configuration
MEDPLUM_CLIENT_ID = os.getenv("MEDPLUM_CLIENT_ID", "d68a6a98-d5ea-4e1b-9dff-ae215249179f")
SMART_HEALTH_IT_CLIENT_ID = os.getenv("SMART_HEALTH_IT_CLIENT_ID", "your-client-id")

# Standalone launch targets offered on the home page (FHIR base urls, used as iss)
MEDPLUM_FHIR_URL = os.getenv("MEDPLUM_FHIR_URL", "https://api.medplum.com/fhir/R4")
SMART_HEALTH_IT_FHIR_URL = os.getenv("SMART_HEALTH_IT_FHIR_URL", "https://launch.smarthealthit.org/v/r4/fhir")

STANDALONE_LAUNCH_OPTIONS = {
    "medplum": {"name": "Medplum", "iss": MEDPLUM_FHIR_URL},
    "smarthealthit": {"name": "SMART Health IT Sandbox", "iss": SMART_HEALTH_IT_FHIR_URL},
}

# Server configuration
BACKEND_PORT = int(os.getenv("BACKEND_PORT", "9001"))
APP_ORIGIN = os.getenv("APP_ORIGIN", f"http://localhost:{BACKEND_PORT}")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3002")

# OAuth2 configuration
REDIRECT_URI = f"{APP_ORIGIN}/launch"
FHIR_SCOPE = "launch/patient patient/*.read"
HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "30"))
LAUNCH_STATE_TTL_SECONDS = int(os.getenv("LAUNCH_STATE_TTL_SECONDS", "600"))

# Session cookie
SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "smart_session")
SESSION_COOKIE_SECURE = os.getenv("SESSION_COOKIE_SECURE", "false").lower() == "true"

# Issuers whose discovery document is skipped. Matched against the issuer hostname
# (exact host or any subdomain of the listed domain).
KNOWN_ISSUERS = {
    "medplum.com": {
        "authorization_endpoint": "https://api.medplum.com/oauth2/authorize",
        "token_endpoint": "https://api.medplum.com/oauth2/token",
    },
}

# Pre-registered client ids, matched against the exact issuer hostname
CLIENT_IDS_BY_HOST = {
    "smarthealthit.org": SMART_HEALTH_IT_CLIENT_ID,
    "launch.smarthealthit.org": SMART_HEALTH_IT_CLIENT_ID,
}
DEFAULT_CLIENT_ID = MEDPLUM_CLIENT_ID

# FHIR resources read for the patient dashboard
FHIR_RESOURCES = {
    "patient": "Patient/{patient_id}",
    "observations": "Observation?patient={patient_id}&_sort=-date&_count=20",
    "conditions": "Condition?patient={patient_id}",
    "allergies": "AllergyIntolerance?patient={patient_id}",
    "medications": "MedicationRequest?patient={patient_id}&_count=20",
}
