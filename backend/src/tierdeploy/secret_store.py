"""
Remote secret store client.

Reads a KV v2 style HTTP API: GET {base}/v1/{mount}/data/{key} returns
{"data": {"data": {<property>: <value>}}}.
"""
import logging
import os
from typing import Any, Dict, Optional, Protocol

import requests

from tierdeploy.errors import SecretError, SecretNotFoundError, SecretStoreUnavailable

logger = logging.getLogger(__name__)


class SecretStore(Protocol):
    def fetch_secret(self, key: str, prop: str) -> str: ...


class HttpSecretStore:
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        mount: str = "secret",
        timeout: float = 10,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.mount = mount.strip("/")
        self.timeout = timeout
        self.token = token or os.getenv("SECRET_STORE_TOKEN")
        self.session = session or requests.Session()
        self.headers = {"Accept": "application/json"}
        if self.token:
            self.headers["X-Vault-Token"] = self.token

    def _read(self, key: str) -> Dict[str, Any]:
        url = f"{self.base_url}/v1/{self.mount}/data/{key.strip('/')}"
        try:
            response = self.session.get(url, headers=self.headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise SecretStoreUnavailable(f"GET {url} failed: {e}") from e

        if response.status_code == 404:
            return {}
        if response.status_code >= 500 or response.status_code == 429:
            raise SecretStoreUnavailable(f"GET {url} returned {response.status_code}")
        if response.status_code >= 400:
            raise SecretError(key, f"store refused read ({response.status_code})")
        payload = response.json()
        return (payload.get("data") or {}).get("data") or {}

    def fetch_secret(self, key: str, prop: str) -> str:
        """
        Fetch one property of a secret.

        Raises:
            SecretNotFoundError: key or property does not exist
            SecretStoreUnavailable: transport failure or server error
        """
        data = self._read(key)
        if prop not in data:
            logger.debug(f"Secret {key} has no property {prop}")
            raise SecretNotFoundError(key, prop)
        return str(data[prop])
