"""Adapter that speaks a small REST protocol to a provider endpoint.

    POST   {base_url}/{kind}        body {"context", "attributes"} -> {"id", "attributes"}
    GET    {base_url}/{kind}/{id}                                  -> {"attributes"}
    PUT    {base_url}/{kind}/{id}   body {"context", "attributes"} -> {"attributes"}
    DELETE {base_url}/{kind}/{id}

The provider context is sent in the body for writes and as X-Provider-*
headers for every request.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import quote

import requests

from providers.base import NotFoundError, ProviderContext, ProviderError

logger = logging.getLogger(__name__)

# Status codes treated as throttling or temporary unavailability
TRANSIENT_STATUS = {408, 429, 500, 502, 503, 504}


@dataclass
class HttpProvider:
    """REST client for one resource kind."""
    kind: str
    base_url: str
    timeout: int = 60
    headers: dict = field(default_factory=dict)
    session: Optional[requests.Session] = field(default=None, repr=False)

    def __post_init__(self):
        self.base_url = self.base_url.rstrip('/')
        if self.session is None:
            self.session = requests.Session()

    def _url(self, provider_id: Optional[str] = None) -> str:
        url = f"{self.base_url}/{quote(self.kind, safe='')}"
        if provider_id is not None:
            url += f"/{quote(provider_id, safe='')}"
        return url

    def _headers(self, context: ProviderContext) -> dict:
        headers = {'Accept': 'application/json'}
        headers.update(self.headers)
        if context.account:
            headers['X-Provider-Account'] = context.account
        if context.region:
            headers['X-Provider-Region'] = context.region
        if context.profile:
            headers['X-Provider-Profile'] = context.profile
        return headers

    def _request(self, method: str, context: ProviderContext,
                 provider_id: Optional[str] = None, body: Optional[dict] = None) -> dict:
        url = self._url(provider_id)
        logger.debug(f"{method} {url}")
        try:
            resp = self.session.request(
                method,
                url,
                json=body,
                headers=self._headers(context),
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout:
            raise ProviderError(f"Timeout calling {method} {url}", transient=True)
        except requests.exceptions.ConnectionError as e:
            raise ProviderError(f"Cannot connect to {url}: {e}", transient=True)
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"{method} {url} failed: {e}", transient=True)

        if resp.status_code == 404:
            raise NotFoundError(f"{self.kind} {provider_id} not found")
        if resp.status_code in TRANSIENT_STATUS:
            raise ProviderError(
                f"{method} {url} returned {resp.status_code}: {resp.text[:200]}",
                transient=True,
            )
        if resp.status_code >= 400:
            raise ProviderError(f"{method} {url} returned {resp.status_code}: {resp.text[:200]}")

        if resp.status_code == 204 or not resp.content:
            return {}
        try:
            data = resp.json()
        except ValueError as e:
            raise ProviderError(f"{method} {url} returned invalid JSON: {e}")
        if not isinstance(data, dict):
            raise ProviderError(f"{method} {url} must return a JSON object")
        return data

    def create(self, context: ProviderContext, attributes: dict) -> tuple[dict, str]:
        data = self._request('POST', context, body={
            'context': context.to_dict(),
            'attributes': attributes,
        })
        if 'id' not in data:
            raise ProviderError(f"{self.kind} create: response is missing 'id'")
        return data.get('attributes', {}), str(data['id'])

    def read(self, context: ProviderContext, provider_id: str) -> dict:
        return self._request('GET', context, provider_id).get('attributes', {})

    def update(self, context: ProviderContext, provider_id: str, attributes: dict) -> dict:
        data = self._request('PUT', context, provider_id, body={
            'context': context.to_dict(),
            'attributes': attributes,
        })
        return data.get('attributes', {})

    def delete(self, context: ProviderContext, provider_id: str) -> None:
        try:
            self._request('DELETE', context, provider_id)
        except NotFoundError:
            logger.info(f"{self.kind} {provider_id} already absent")
