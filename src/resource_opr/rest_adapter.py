"""REST binding for provider adapters.

Maps adapter operations onto a provisioning API:

    create  POST   {endpoint}/{collection}
    read    GET    {endpoint}/{collection}/{id}
    update  PATCH  {endpoint}/{collection}/{id}
    delete  DELETE {endpoint}/{collection}/{id}

Error bodies are JSON objects with a 'message' and, for refused deletions,
a 'precondition' naming what must happen first, e.g.:

    {"message": "final snapshot required", "precondition": "final_snapshot"}
"""

import logging
from typing import Any, Optional

import requests
import urllib3

from resource_opr.errors import (
    PermanentProviderError,
    PreconditionError,
    ResourceNotFoundError,
    TransientProviderError,
)
from resource_opr.providers import BUILTIN_KINDS, ProviderRegistry, ResourceKind

logger = logging.getLogger(__name__)

# Rate limiting and gateway/overload errors
TRANSIENT_STATUS = {429, 502, 503, 504}
PRECONDITION_STATUS = {409, 412}


def _error_message(resp: requests.Response) -> tuple[str, Optional[str]]:
    """Extract (message, precondition) from an error response."""
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        error = body.get('error')
        if isinstance(error, dict):
            body = error
        message = body.get('message') or (error if isinstance(error, str) else None)
        if message:
            return str(message), body.get('precondition')
    text = resp.text.strip()[:200]
    return text or f"HTTP {resp.status_code}", None


class RestProviderAdapter:
    """ProviderAdapter for one resource kind backed by a REST collection."""

    def __init__(
        self,
        kind: ResourceKind,
        endpoint: str,
        token: str = '',
        verify_tls: bool = True,
        timeout: float = 30.0,
    ):
        self.kind = kind.name
        self.immutable_attributes = kind.immutable
        self.base_url = f"{endpoint.rstrip('/')}/{kind.collection}"
        self.token = token
        self.verify_tls = verify_tls
        self.timeout = timeout

    def _request(self, method: str, url: str, payload: Optional[dict] = None,
                 not_found_ok: bool = False) -> Any:
        headers = {'Accept': 'application/json'}
        if self.token:
            headers['Authorization'] = f'Bearer {self.token}'

        try:
            resp = requests.request(
                method,
                url,
                json=payload,
                headers=headers,
                verify=self.verify_tls,
                timeout=self.timeout,
            )
        except requests.exceptions.ConnectionError as e:
            raise TransientProviderError(f"Cannot connect to {url}: {e}") from e
        except requests.exceptions.Timeout as e:
            raise TransientProviderError(f"Timeout calling {method} {url}") from e
        except (requests.exceptions.ChunkedEncodingError, requests.exceptions.ContentDecodingError) as e:
            # Connection broke mid-body
            raise TransientProviderError(f"Incomplete response from {method} {url}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise PermanentProviderError(f"Request {method} {url} failed: {e}") from e

        logger.debug(f"{method} {url} -> {resp.status_code}")
        if resp.ok:
            if resp.status_code == 204 or not resp.content:
                return {}
            try:
                return resp.json()
            except ValueError as e:
                raise PermanentProviderError(f"Invalid JSON from {method} {url}") from e

        message, precondition = _error_message(resp)
        if resp.status_code in TRANSIENT_STATUS:
            raise TransientProviderError(message)
        if resp.status_code == 404 and not_found_ok:
            raise ResourceNotFoundError(message)
        if resp.status_code in PRECONDITION_STATUS and precondition:
            raise PreconditionError(message, precondition)
        raise PermanentProviderError(message)

    def create(self, attributes: dict) -> dict:
        data = self._request('POST', self.base_url, payload=attributes)
        if not isinstance(data, dict) or 'id' not in data:
            raise PermanentProviderError(f"Provider did not return an id for new {self.kind}")
        return data

    def read(self, resource_id: str) -> dict:
        return self._request('GET', f'{self.base_url}/{resource_id}', not_found_ok=True)

    def update(self, resource_id: str, changed: dict) -> dict:
        return self._request('PATCH', f'{self.base_url}/{resource_id}', payload=changed)

    def delete(self, resource_id: str) -> None:
        self._request('DELETE', f'{self.base_url}/{resource_id}', not_found_ok=True)


def build_registry(config) -> ProviderRegistry:
    """Bind a RestProviderAdapter to every built-in kind.

    Args:
        config: EngineConfig with provider settings

    Raises:
        ConfigError: If no provider endpoint is configured
    """
    from config import ConfigError

    settings = config.provider
    if not settings.endpoint:
        raise ConfigError("provider.endpoint is not configured")
    if not settings.verify_tls:
        # Self-signed certs on private provisioning endpoints
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    token = settings.get_token()
    if not token:
        logger.warning(f"No provider token in ${settings.token_env}")

    registry = ProviderRegistry()
    for kind in BUILTIN_KINDS.values():
        registry.register(RestProviderAdapter(
            kind,
            settings.endpoint,
            token=token,
            verify_tls=settings.verify_tls,
            timeout=settings.request_timeout,
        ))
    return registry
