"""
HTTP surface of the gateway.

Every inbound request is classified. Resource requests the API server can
authorize natively are forwarded unchanged; cluster-scope list and watch
requests the identity cannot perform cluster-wide are synthesized from
per-namespace calls.
"""
import json
import logging
from typing import Any, Dict, Iterator, Optional

from flask import Flask, Response, jsonify, request

from ..errors import MalformedPath, MalformedQuery, UpstreamUnavailable
from ..request_info import ResourceDescriptor, classify, is_resource_path
from ..scoped import ScopedListerWatcher, ScopedWatcher
from .filter import RequestFilter
from .upstream import UpstreamProxy, filter_headers, iter_response

logger = logging.getLogger(__name__)

METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

_STATUS_REASONS = {
    400: "BadRequest",
    403: "Forbidden",
    502: "InternalError",
    503: "ServiceUnavailable",
}


def status_response(code: int, message: str) -> Response:
    """Build an error response shaped like a Kubernetes ``Status`` object."""
    body = {
        "kind": "Status",
        "apiVersion": "v1",
        "metadata": {},
        "status": "Failure",
        "message": message,
        "reason": _STATUS_REASONS.get(code, "Unknown"),
        "code": code,
    }
    response = jsonify(body)
    response.status_code = code
    return response


def _stream_events(merger: ScopedWatcher) -> Iterator[str]:
    try:
        for event in merger:
            yield json.dumps(event) + "\n"
    finally:
        merger.stop()


def create_app(
    access: ScopedListerWatcher,
    upstream: UpstreamProxy,
    request_filter: Optional[RequestFilter] = None,
) -> Flask:
    app = Flask(__name__)
    app.json.sort_keys = False

    @app.before_request
    def screen() -> Optional[Response]:
        if request_filter is None:
            return None
        reason = request_filter.rejection(request.method, request.path, request.host)
        if reason:
            logger.warning(f"Refusing {request.method} {request.path}: {reason}")
            return status_response(403, reason)
        return None

    def forward(path: str) -> Response:
        try:
            upstream_response = upstream.forward(
                method=request.method,
                path=path,
                query_string=request.query_string.decode(),
                headers=dict(request.headers),
                body=request.get_data(),
            )
        except UpstreamUnavailable as e:
            logger.error(str(e))
            return status_response(502, str(e))

        return Response(
            iter_response(upstream_response),
            status=upstream_response.status_code,
            headers=filter_headers(upstream_response.headers),
            direct_passthrough=True,
        )

    def synthesize(descriptor: ResourceDescriptor) -> Response:
        if descriptor.is_watch:
            merger = access.watch(descriptor, request.args)
            return Response(_stream_events(merger), mimetype="application/json")

        body: Dict[str, Any] = access.list(descriptor, request.args)
        return jsonify(body)

    @app.route("/", defaults={"path": ""}, methods=METHODS)
    @app.route("/<path:path>", methods=METHODS)
    def dispatch(path: str) -> Response:
        if not is_resource_path(path):
            return forward(path)

        try:
            descriptor = classify(path, request.args, request.method)
        except MalformedPath as e:
            logger.info(f"Rejecting request: {e}")
            return status_response(400, str(e))

        try:
            if access.resolve(descriptor):
                return forward(path)
            logger.info(f"Synthesizing cluster-scope {descriptor.verb} for '{descriptor.resource}'")
            return synthesize(descriptor)
        except MalformedQuery as e:
            logger.info(f"Rejecting request: {e}")
            return status_response(400, str(e))
        except UpstreamUnavailable as e:
            logger.error(f"Cannot compute permissions for '{path}': {e}")
            return status_response(503, str(e))

    return app
