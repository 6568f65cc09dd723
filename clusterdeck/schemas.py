from pydantic import BaseModel, field_validator
from typing import Optional, Dict, Any


class BackendConfig(BaseModel):
    """Desired cluster configuration, supplied by the settings layer."""
    version: str
    memory_in_gb: int = 2
    number_cpus: int = 2
    disk_size_gb: Optional[int] = None
    container_runtime: str = "containerd"
    bootstrapper: str = "k3s"

    @field_validator('memory_in_gb', 'number_cpus')
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError('Must be at least 1')
        return v


class ServiceEntry(BaseModel):
    """A single port in a service, as returned by list_services()."""
    namespace: Optional[str] = None
    name: str
    port_name: Optional[str] = None
    port: Optional[int] = None  # Internal port number of the service
    listen_port: Optional[int] = None  # Forwarded port on localhost, if any

    class Config:
        frozen = True

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the camelCase shape consumed by the front end."""
        return {
            "namespace": self.namespace,
            "name": self.name,
            "portName": self.port_name,
            "port": self.port,
            "listenPort": self.listen_port,
        }
