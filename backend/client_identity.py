import logging
from typing import Mapping, Optional
from urllib.parse import urlparse

import config

logger = logging.getLogger(__name__)


def select_client_id(params: Mapping[str, str], iss: str, client_ids_by_host: Optional[dict] = None,
                     default_client_id: Optional[str] = None) -> str:
    """
    Pick the OAuth client id for an issuer.

    An explicit client_id request parameter wins, then the issuer hostname
    allow-list, then the default client. Called with the same inputs at
    initiation and at token exchange; the result is never cached.
    """
    client_id = params.get("client_id")
    if client_id:
        return client_id

    table = config.CLIENT_IDS_BY_HOST if client_ids_by_host is None else client_ids_by_host
    hostname = (urlparse(iss).hostname or "").lower()
    if hostname in table:
        logger.info(f"Using registered client id for issuer host {hostname}")
        return table[hostname]

    return config.DEFAULT_CLIENT_ID if default_client_id is None else default_client_id
