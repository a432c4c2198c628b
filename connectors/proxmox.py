"""
proxmox.py
----------
Minimal Proxmox VE API session, used to validate the API token up front.
"""

import httpx
from box import Box

from common.errors import DependencyError


class ProxmoxSession:
    """
    Proxmox VE API session authenticated with an API token.

    Args:
        api_URL (str): Base URL including the api2/json suffix,
            e.g. "https://pve.example.com:8006/api2/json".
        token (str): "user@realm!tokenid=secret".
        verify (bool): verify TLS certificates. Proxmox ships self-signed
            certificates, so this is off by default.
    """

    def __init__(self, api_URL: str, token: str, verify: bool = False, transport: httpx.BaseTransport | None = None):
        self.base_URL = api_URL.rstrip("/")
        self._client = httpx.Client(
            base_url=self.base_URL,
            headers={"Authorization": f"PVEAPIToken={token}"},
            verify=verify,
            timeout=10,
            transport=transport,
        )

    def request(self, method: str, endpoint: str, **kwargs) -> httpx.Response:
        response = self._client.request(method, endpoint, **kwargs)
        response.raise_for_status()
        return response

    def version(self) -> Box:
        """Return the ``data`` payload of GET /version."""
        return Box(self.request("GET", "/version").json().get("data") or {})

    def check_auth(self) -> None:
        try:
            info = self.version()
        except httpx.HTTPStatusError as e:
            raise DependencyError(
                f"Proxmox API rejected the token (HTTP {e.response.status_code}). Check PROXMOX_API_TOKEN."
            ) from e
        except httpx.RequestError as e:
            raise DependencyError(f"Failed to connect to Proxmox API at {self.base_URL}: {e}") from e
        if not info:
            raise DependencyError(f"Unexpected response from Proxmox API at {self.base_URL}/version")

    def close(self):
        self._client.close()
