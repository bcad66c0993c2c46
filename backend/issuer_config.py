"""
Issuer configuration discovery.

Known issuers resolve from the static KNOWN_ISSUERS table in config; every
other issuer is resolved from its .well-known/smart-configuration document.
Nothing is cached: each handshake resolves again.
"""
import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

import requests

import config
from errors import ConfigurationMalformed, ConfigurationUnavailable

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("authorization_endpoint", "token_endpoint")


@dataclass(frozen=True)
class IssuerConfiguration:
    authorization_endpoint: str
    token_endpoint: str


def smart_configuration_url(iss: str) -> str:
    return f"{iss.rstrip('/')}/.well-known/smart-configuration"


def known_issuer_configuration(iss: str, known_issuers: Optional[dict] = None) -> Optional[IssuerConfiguration]:
    """Look the issuer hostname up in the static override table."""
    table = config.KNOWN_ISSUERS if known_issuers is None else known_issuers
    hostname = (urlparse(iss).hostname or "").lower()
    for domain, endpoints in table.items():
        if hostname == domain or hostname.endswith("." + domain):
            return IssuerConfiguration(
                authorization_endpoint=endpoints["authorization_endpoint"],
                token_endpoint=endpoints["token_endpoint"],
            )
    return None


class IssuerConfigurationResolver:
    """Resolve an issuer URL to its authorization and token endpoints."""

    def __init__(self, http: Optional[requests.Session] = None, known_issuers: Optional[dict] = None,
                 timeout: Optional[float] = None):
        self.http = http or requests.Session()
        self.known_issuers = known_issuers
        self.timeout = config.HTTP_TIMEOUT_SECONDS if timeout is None else timeout

    def resolve(self, iss: str) -> IssuerConfiguration:
        known = known_issuer_configuration(iss, self.known_issuers)
        if known is not None:
            logger.info(f"Using static SMART configuration for known issuer {iss}")
            return known

        smart_config_url = smart_configuration_url(iss)
        logger.info(f"Discovering SMART configuration from {smart_config_url}")

        try:
            response = self.http.get(
                smart_config_url,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Error discovering SMART configuration: {e}")
            raise ConfigurationUnavailable(smart_config_url, detail=str(e)) from e

        if not response.ok:
            logger.error(f"SMART configuration request failed: {response.status_code} {response.reason}")
            raise ConfigurationUnavailable(smart_config_url, response.status_code, response.reason or "")

        try:
            smart_config = response.json()
        except ValueError as e:
            raise ConfigurationMalformed(f"SMART configuration from {smart_config_url} is not valid JSON") from e

        if not isinstance(smart_config, dict):
            raise ConfigurationMalformed(f"SMART configuration from {smart_config_url} is not a JSON object")

        missing = [field for field in REQUIRED_FIELDS if not smart_config.get(field)]
        if missing:
            logger.error(f"Missing required field in SMART configuration: {missing}")
            raise ConfigurationMalformed(f"Invalid SMART configuration: missing {', '.join(missing)}")

        logger.info("Discovered endpoints:")
        logger.info(f"  authorization_endpoint: {smart_config['authorization_endpoint']}")
        logger.info(f"  token_endpoint: {smart_config['token_endpoint']}")

        return IssuerConfiguration(
            authorization_endpoint=smart_config["authorization_endpoint"],
            token_endpoint=smart_config["token_endpoint"],
        )
