import os
import sys
from pathlib import Path
from typing import List

from pydantic_settings import BaseSettings
from functools import lru_cache

APP_NAME = "rancher-desktop"


class Settings(BaseSettings):
    # Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_level: str = "INFO"

    # ==========================================================================
    # Minikube Configuration
    # ==========================================================================
    # Profile name used for the minikube VM and the kubeconfig context.
    # Both must match; the cluster access client pins its context to it.
    minikube_profile: str = "rancher-desktop"

    # Executable name; resolved inside resources_dir first, then PATH
    minikube_binary: str = "minikube"

    # Dedicated MINIKUBE_HOME so a system-wide minikube install does not conflict.
    # Empty means the per-platform user data directory (see data_path).
    data_dir: str = ""

    # Bundled binaries (docker-machine drivers etc.) prepended to PATH.
    # Empty means <package>/resources/<platform>
    resources_dir: str = ""

    # Empty means the kubernetes client default (~/.kube/config or KUBECONFIG)
    kubeconfig_path: str = ""

    # ==========================================================================
    # Cluster Access Settings
    # ==========================================================================
    pod_poll_interval: float = 1.0  # Seconds between endpoint lookups
    pod_ready_timeout: float = 0  # 0 waits until the client shuts down
    forward_bind_host: str = "127.0.0.1"

    # Comma-separated list of installable Kubernetes versions, newest first
    kubernetes_versions: str = "v1.21.1,v1.20.7,v1.19.11,v1.18.19"

    @property
    def data_path(self) -> Path:
        """Get the profile-data home used as MINIKUBE_HOME."""
        if self.data_dir:
            return Path(self.data_dir)
        if sys.platform == "darwin":
            return Path.home() / "Library" / "Application Support" / APP_NAME
        if sys.platform == "win32":
            base = os.environ.get("LOCALAPPDATA") or str(Path.home() / "AppData" / "Local")
            return Path(base) / APP_NAME
        base = os.environ.get("XDG_DATA_HOME") or str(Path.home() / ".local" / "share")
        return Path(base) / APP_NAME

    @property
    def resources_path(self) -> Path:
        """Get the bundled resources directory for this platform."""
        if self.resources_dir:
            return Path(self.resources_dir)
        return Path(__file__).parent / "resources" / sys.platform

    @property
    def available_versions(self) -> List[str]:
        return [v.strip() for v in self.kubernetes_versions.split(",") if v.strip()]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra fields from .env file
        case_sensitive = False  # Allow lowercase env vars to match uppercase field names

@lru_cache()
def get_settings():
    return Settings()
