"""Cache-less permission resolver backed by SelfSubjectAccessReviews."""

from __future__ import annotations

import logging
from typing import List, Optional

from kubernetes import client
from kubernetes.client import ApiException
from urllib3.exceptions import HTTPError

from ..errors import UpstreamUnavailable

logger = logging.getLogger(__name__)


class ProbeResolver:
    """
    Answers permission questions by asking the API server every time.

    Probes run with the gateway's own credentials, which are the tracked
    identity's. Nothing is cached, so answers are never stale, but
    ``permitted_namespaces`` costs one round trip per namespace.
    """

    def __init__(
        self,
        authorization_api: Optional[client.AuthorizationV1Api] = None,
        core_v1_api: Optional[client.CoreV1Api] = None,
    ) -> None:
        self.authorization_api = (
            authorization_api if authorization_api is not None else client.AuthorizationV1Api()
        )
        self.core_v1_api = core_v1_api if core_v1_api is not None else client.CoreV1Api()

    def _probe(
        self,
        verb: str,
        group: str,
        version: str,
        resource: str,
        namespace: Optional[str] = None,
    ) -> bool:
        review = client.V1SelfSubjectAccessReview(
            spec=client.V1SelfSubjectAccessReviewSpec(
                resource_attributes=client.V1ResourceAttributes(
                    namespace=namespace,
                    verb=verb,
                    group=group,
                    version=version,
                    resource=resource,
                )
            )
        )
        try:
            result = self.authorization_api.create_self_subject_access_review(body=review)
        except (ApiException, HTTPError) as e:
            scope = f"namespace '{namespace}'" if namespace else "cluster"
            raise UpstreamUnavailable(
                f"Access review for {verb} {resource} at {scope} failed: {e}"
            ) from e
        return bool(result.status and result.status.allowed)

    def can_cluster_perform(self, verb: str, group: str, version: str, resource: str) -> bool:
        return self._probe(verb, group, version, resource)

    def permitted_namespaces(self, verb: str, group: str, version: str, resource: str) -> List[str]:
        """
        Return every namespace where ``verb`` on ``resource`` is allowed.

        Raises:
            UpstreamUnavailable: If listing namespaces or any probe fails.
                No partial result is returned.
        """
        try:
            namespaces = self.core_v1_api.list_namespace().items
        except (ApiException, HTTPError) as e:
            raise UpstreamUnavailable(f"Cannot list namespaces: {e}") from e

        permitted = []
        for ns in namespaces:
            name = ns.metadata.name
            if self._probe(verb, group, version, resource, namespace=name):
                permitted.append(name)
        logger.debug(f"Namespaces permitting {verb} on {resource}: {permitted}")
        return sorted(permitted)
