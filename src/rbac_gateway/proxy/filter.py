"""Screening of inbound requests before they reach the dispatcher."""

from __future__ import annotations

import logging
import re
from typing import Iterable, List, Optional, Pattern

logger = logging.getLogger(__name__)


def _compile(patterns: Iterable[str]) -> List[Pattern[str]]:
    return [re.compile(pattern) for pattern in patterns]


def _matches(patterns: List[Pattern[str]], value: str) -> bool:
    return any(pattern.search(value) for pattern in patterns)


def strip_port(host: str) -> str:
    """Drop the port from a Host header value, keeping bracketed IPv6 hosts whole."""
    if host.startswith("["):
        end = host.find("]")
        return host[: end + 1] if end != -1 else host
    return host.split(":", 1)[0]


class RequestFilter:
    """
    Accept/reject rules over host, path and method.

    Everything the gateway forwards is sent with the tracked identity's
    credentials, so by default only local callers are served and pod
    ``exec``/``attach`` are refused. An empty accept list accepts everything.
    """

    def __init__(
        self,
        accept_hosts: Iterable[str] = (),
        accept_paths: Iterable[str] = (),
        reject_paths: Iterable[str] = (),
        reject_methods: Iterable[str] = (),
    ) -> None:
        self.accept_hosts = _compile(accept_hosts)
        self.accept_paths = _compile(accept_paths)
        self.reject_paths = _compile(reject_paths)
        self.reject_methods = _compile(reject_methods)

    @classmethod
    def from_config(cls, settings) -> "RequestFilter":
        return cls(
            accept_hosts=settings.accept_hosts,
            accept_paths=settings.accept_paths,
            reject_paths=settings.reject_paths,
            reject_methods=settings.reject_methods,
        )

    def rejection(self, method: str, path: str, host: str) -> Optional[str]:
        """Return why a request is refused, or None if it may proceed."""
        hostname = strip_port(host)
        if self.accept_hosts and not _matches(self.accept_hosts, hostname):
            return f"host '{hostname}' is not accepted"
        if self.accept_paths and not _matches(self.accept_paths, path):
            return f"path '{path}' is not accepted"
        if _matches(self.reject_paths, path):
            return f"path '{path}' is rejected"
        if _matches(self.reject_methods, method):
            return f"method '{method}' is rejected"
        return None
