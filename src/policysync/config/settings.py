"""
Controller settings using Pydantic.

Provides environment-based configuration loading with POLICYSYNC_ prefix.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Controller settings."""

    # Cluster identity
    cluster_name: str = ""
    cluster_namespace: str = ""
    cluster_namespace_on_hub: str = ""
    instance_name: str = ""

    # Own deployment (watched for the uninstall annotation)
    deployment_name: str = "governance-policy-framework-addon"
    deployment_namespace: str = "open-cluster-management-agent-addon"

    # Kubernetes access
    hub_kubeconfig: str | None = None
    managed_kubeconfig: str | None = None
    kube_context: str | None = None

    # Worker bounds per controller
    template_sync_concurrency: int = 1
    status_sync_concurrency: int = 1
    gatekeeper_sync_concurrency: int = 1

    # Feature switches
    disable_gatekeeper_sync: bool = False
    on_multicluster_hub: bool = False

    # Requeue behaviour (seconds)
    requeue_base_delay: float = 0.005
    requeue_max_delay: float = 1000.0
    uninstall_requeue_seconds: float = 300.0

    # Logging
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "POLICYSYNC_"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
