"""
Error kinds raised while running the SMART on FHIR EHR launch.

Every error is terminal for the current handshake attempt. The HTTP layer
renders them as {"error": kind, "detail": message} with ``status_code``.
"""

RELAUNCH_HINT = "Please try launching the app again from your EHR."


class SmartLaunchError(Exception):
    kind = "SmartLaunchError"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.kind, "detail": self.message}


class MissingLaunchParameters(SmartLaunchError):
    kind = "MissingLaunchParameters"


class ConfigurationUnavailable(SmartLaunchError):
    """Discovery document could not be fetched (network error or non-2xx status)."""

    kind = "ConfigurationUnavailable"
    status_code = 502

    def __init__(self, url: str, status: int | None = None, detail: str = ""):
        message = f"Failed to fetch SMART configuration from {url}"
        if status is not None:
            message += f": {status}"
        if detail:
            message += f" {detail}"
        super().__init__(message)
        self.url = url
        self.status = status


class ConfigurationMalformed(SmartLaunchError):
    kind = "ConfigurationMalformed"
    status_code = 502


class MissingParameter(SmartLaunchError):
    kind = "MissingParameter"

    def __init__(self, missing: list[str]):
        super().__init__(f"Missing required parameters in authorization response: {', '.join(missing)}")
        self.missing = missing


class StateMismatch(SmartLaunchError):
    kind = "StateMismatch"

    def __init__(self):
        super().__init__(f"State parameter mismatch - possible session expired. {RELAUNCH_HINT}")


class ExpiredSession(SmartLaunchError):
    kind = "ExpiredSession"

    def __init__(self, reason: str = "Missing code verifier - session may have expired."):
        super().__init__(f"{reason} {RELAUNCH_HINT}")


class TokenExchangeFailed(SmartLaunchError):
    kind = "TokenExchangeFailed"
    status_code = 502

    def __init__(self, status: int | None, detail: str):
        if status is None:
            super().__init__(f"Failed to get access token: {detail}")
        else:
            super().__init__(f"Failed to get access token: {status} {detail}")
        self.status = status


class OAuthProviderError(SmartLaunchError):
    kind = "OAuthProviderError"

    def __init__(self, error: str, description: str | None = None):
        message = f"OAuth error: {error}"
        if description:
            message += f" - {description}"
        super().__init__(message)
        self.error = error
        self.description = description


class LaunchAlreadyStarted(SmartLaunchError):
    """A second callback run for the same navigation; the first one owns the exchange."""

    kind = "LaunchAlreadyStarted"
    status_code = 409

    def __init__(self):
        super().__init__("Authorization response is already being processed")
