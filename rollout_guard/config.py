"""
Configuration settings for rollout guard.
"""
from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Optional


class Settings(BaseSettings):
    """Application settings from environment variables."""
    
    # Application
    APP_NAME: str = Field(default="rollout-guard", description="Application name")
    APP_ENV: str = Field(default="dev", description="Environment: dev|staging|prod")
    
    # HTTP Configuration
    HTTP_PORT: int = Field(default=8002, description="Service port")
    
    # Kubernetes Configuration
    K8S_NAMESPACE: str = Field(default="ingress-nginx", description="Kubernetes namespace")
    K8S_CONTEXT: Optional[str] = Field(default=None, description="Kubernetes context")
    K8S_IN_CLUSTER: bool = Field(default=False, description="Running in cluster")
    KUBECTL_BIN: str = Field(default="kubectl", description="kubectl executable")
    
    # Upgrade Configuration
    TARGET_SELECTOR: str = Field(
        default="app.kubernetes.io/name=ingress-nginx",
        description="Label selector of the managed workload family",
    )
    ROLLOUT_TIMEOUT_SECS: int = Field(default=600, ge=1, description="Rollout status timeout")
    BACKUP_DIR: str = Field(default=".", description="Directory for pre-upgrade manifests")
    
    # Health Verification
    HEALTH_PORT: int = Field(default=10254, description="In-pod health port")
    HEALTH_PRIMARY_PATH: str = Field(default="/healthz", description="Primary liveness path")
    HEALTH_SECONDARY_PATH: str = Field(default="/health", description="Legacy liveness path")
    HEALTH_SETTLE_SECS: float = Field(default=5, ge=0, description="Delay before the first probe")
    
    # Service Configuration
    REQUEST_TIMEOUT_SECS: int = Field(default=30, description="Request timeout")
    LOG_LEVEL: str = Field(default="info", description="Log level: info|debug|warning")
    
    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


# Global settings instance
settings = Settings()
