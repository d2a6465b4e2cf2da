from .app import create_app
from .filter import RequestFilter
from .upstream import UpstreamProxy

__all__ = ["RequestFilter", "UpstreamProxy", "create_app"]
