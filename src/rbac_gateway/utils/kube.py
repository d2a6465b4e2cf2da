import logging
from typing import Optional

from kubernetes import client, config

from ..errors import KubeConfigError

logger = logging.getLogger(__name__)


def load_kubernetes_configuration(context: Optional[str] = None) -> client.Configuration:
    """
    Load Kubernetes client configuration, preferring the in-cluster service
    account and falling back to the local kubeconfig.

    The loaded configuration becomes the default for every API client.

    Raises:
        KubeConfigError: If neither source is usable.
    """
    try:
        config.load_incluster_config()
        logger.info("Using in-cluster Kubernetes configuration.")
    except config.ConfigException:
        try:
            config.load_kube_config(context=context)
            logger.info("Using local kubeconfig.")
        except config.ConfigException as e:
            raise KubeConfigError(f"Could not configure Kubernetes client: {e}") from e
    return client.Configuration.get_default_copy()
