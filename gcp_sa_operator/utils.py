import logging
import random

logger = logging.getLogger("gcp-service-account-operator")


def apply_jitter(seconds):
    """Return seconds +/- 25%, so replicas and restarts don't act in lockstep."""
    deviation = int(0.25 * seconds)
    if deviation <= 0:
        return seconds
    return seconds - deviation + random.randrange(2 * deviation)


def get_k8s_api():
    """Initialize and return Kubernetes API client."""
    from kubernetes import client, config

    # Load kube config
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster kube config.")
    except config.ConfigException:
        logger.info(
            "Could not load in-cluster config. Falling back to local kube config.")
        config.load_kube_config()
    return client.CoreV1Api()
