"""
Backend Factory

Picks the lifecycle controller for the host platform so callers never
branch on sys.platform themselves.
"""

import logging
import sys
from enum import Enum
from typing import Optional

from ...config import Settings
from ...schemas import BackendConfig
from .base import KubernetesBackend

logger = logging.getLogger(__name__)


class Platform(str, Enum):
    """Host platforms the factory knows about."""

    DARWIN = "darwin"
    LINUX = "linux"
    WINDOWS = "win32"
    OTHER = "other"

    @classmethod
    def from_string(cls, value: str) -> "Platform":
        """
        Normalize a sys.platform value.

        Args:
            value: e.g. "darwin", "linux", "linux2", "win32"
        """
        value = (value or "").lower()
        if value.startswith("linux"):
            return cls.LINUX
        for platform in cls:
            if platform.value == value:
                return platform
        return cls.OTHER

    def __str__(self) -> str:
        return self.value


class BackendFactory:
    """
    Factory for creating lifecycle controllers based on the host platform.

    Each call returns a fresh backend; a backend owns its child process and
    its cluster client, so instances are never shared.
    """

    @staticmethod
    def get_platform(platform: Optional[str] = None) -> Platform:
        return Platform.from_string(platform if platform is not None else sys.platform)

    @staticmethod
    def create_backend(
        cfg: BackendConfig,
        platform: Optional[str] = None,
        settings: Optional[Settings] = None
    ) -> KubernetesBackend:
        """
        Create the backend for a platform.

        Args:
            cfg: Desired cluster configuration
            platform: sys.platform-style name (default: the host)
            settings: Application settings (default: get_settings())

        Returns:
            Backend implementing KubernetesBackend; NotImplementedBackend
            for unsupported platforms
        """
        resolved = BackendFactory.get_platform(platform)
        backend: KubernetesBackend

        if resolved == Platform.DARWIN:
            from .minikube import HyperkitBackend
            backend = HyperkitBackend(cfg, settings=settings)

        elif resolved == Platform.LINUX:
            from .minikube import LinuxMinikubeBackend
            backend = LinuxMinikubeBackend(cfg, settings=settings)

        else:
            from .not_implemented import NotImplementedBackend
            backend = NotImplementedBackend(cfg)
            logger.warning(f"[ENGINE] No Kubernetes backend for platform {platform or sys.platform}")
            return backend

        logger.info(f"[ENGINE] Created {type(backend).__name__} for {resolved}")
        return backend


def get_backend(
    cfg: BackendConfig,
    platform: Optional[str] = None,
    settings: Optional[Settings] = None
) -> KubernetesBackend:
    """
    Get a lifecycle controller for the current platform.

    This is the main entry point for obtaining a backend.

    Example:
        backend = get_backend(BackendConfig(version="v1.21.1"))
        await backend.start()
    """
    return BackendFactory.create_backend(cfg, platform=platform, settings=settings)
