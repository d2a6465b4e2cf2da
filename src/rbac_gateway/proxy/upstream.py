"""Direct forwarding of requests to the upstream API server."""

from __future__ import annotations

import logging
from typing import Iterator, Mapping, Optional, Tuple, Union

import requests
from kubernetes import client

from ..errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024

# Headers that describe one connection rather than the message; never relayed.
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
        "host",
    }
)


def filter_headers(headers: Mapping[str, str], drop: Tuple[str, ...] = ()) -> dict:
    excluded = HOP_BY_HOP_HEADERS.union(h.lower() for h in drop)
    return {k: v for k, v in headers.items() if k.lower() not in excluded}


class UpstreamProxy:
    """
    Relays requests to the API server with the gateway's own credentials.

    Inbound ``Authorization`` headers are replaced: every request reaches the
    API server as the tracked identity.
    """

    def __init__(
        self,
        host: str,
        verify: Union[bool, str] = True,
        cert: Optional[Tuple[str, str]] = None,
        configuration: Optional[client.Configuration] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.host = host.rstrip("/")
        self.configuration = configuration
        self.timeout = timeout
        self.session = session if session is not None else requests.Session()
        self.session.verify = verify
        if cert:
            self.session.cert = cert

    @classmethod
    def from_configuration(
        cls, configuration: client.Configuration, timeout: Optional[float] = None
    ) -> "UpstreamProxy":
        verify: Union[bool, str] = configuration.verify_ssl
        if configuration.verify_ssl and configuration.ssl_ca_cert:
            verify = configuration.ssl_ca_cert
        cert = None
        if configuration.cert_file and configuration.key_file:
            cert = (configuration.cert_file, configuration.key_file)
        return cls(
            host=configuration.host,
            verify=verify,
            cert=cert,
            configuration=configuration,
            timeout=timeout,
        )

    def _authorization(self) -> Optional[str]:
        if self.configuration is None:
            return None
        # Refreshes rotating in-cluster tokens through the configured hook.
        return self.configuration.get_api_key_with_prefix("authorization")

    def forward(
        self,
        method: str,
        path: str,
        query_string: str = "",
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[bytes] = None,
    ) -> requests.Response:
        """
        Send a request upstream and return the streamed response.

        Raises:
            UpstreamUnavailable: If the API server cannot be reached.
        """
        url = f"{self.host}/{path.lstrip('/')}"
        if query_string:
            url = f"{url}?{query_string}"

        outbound = filter_headers(headers or {}, drop=("authorization", "content-length"))
        token = self._authorization()
        if token:
            outbound["Authorization"] = token

        logger.debug(f"Forwarding {method} {url}")
        try:
            return self.session.request(
                method=method,
                url=url,
                headers=outbound,
                data=body or None,
                stream=True,
                timeout=self.timeout,
                allow_redirects=False,
            )
        except requests.RequestException as e:
            raise UpstreamUnavailable(f"Could not reach API server at {self.host}: {e}") from e


def iter_response(response: requests.Response) -> Iterator[bytes]:
    """Relay an upstream body without decoding it, closing it when done."""
    try:
        for chunk in response.raw.stream(CHUNK_SIZE, decode_content=False):
            yield chunk
    finally:
        response.close()
