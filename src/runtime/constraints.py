# =============================================================================
# Constraint Profiles - Host Execution Limits
# =============================================================================
# Static description of what each host allows: execution time, background
# work after the response, persistent connections, file system access and
# concurrency. One profile is selected at process start and never changes.
# =============================================================================

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Union

logger = logging.getLogger(__name__)


class HostType(str, Enum):
    """Hosts the dispatch core knows how to run on."""
    CPYTHON = "cpython"                            # plain long-running process
    AWS_LAMBDA = "aws-lambda"
    GOOGLE_CLOUD_FUNCTIONS = "google-cloud-functions"
    AZURE_FUNCTIONS = "azure-functions"
    VERCEL = "vercel"
    CLOUDFLARE_WORKERS = "cloudflare-workers"      # Python workers (Pyodide)


@dataclass(frozen=True)
class ConstraintProfile:
    """
    Execution limits of a host.

    Attributes:
        max_execution_time: Seconds a single invocation may run (math.inf = unlimited)
        supports_background_execution: Work may continue after the response is returned
        supports_persistent_connection: Long-lived sockets (push channel) are allowed
        supports_file_system: Writable local file system is available
        max_concurrent_operations: Concurrency ceiling (None = unbounded)
        max_memory_usage: Memory ceiling in bytes, if the host publishes one
        request_timeout: Default outbound request timeout in seconds
        host: Host this profile describes
    """
    max_execution_time: float = math.inf
    supports_background_execution: bool = True
    supports_persistent_connection: bool = True
    supports_file_system: bool = True
    max_concurrent_operations: Optional[int] = None
    max_memory_usage: Optional[int] = None
    request_timeout: Optional[float] = 30.0
    host: str = HostType.CPYTHON.value

    @property
    def is_time_limited(self) -> bool:
        return not math.isinf(self.max_execution_time)

    @property
    def is_unbounded(self) -> bool:
        """True when requests never need to queue for a concurrency slot."""
        return self.max_concurrent_operations is None

    def to_dict(self) -> Dict[str, object]:
        return {
            "host": self.host,
            "maxExecutionTime": None if math.isinf(self.max_execution_time) else self.max_execution_time,
            "supportsBackgroundExecution": self.supports_background_execution,
            "supportsPersistentConnection": self.supports_persistent_connection,
            "supportsFileSystem": self.supports_file_system,
            "maxConcurrentOperations": self.max_concurrent_operations,
            "maxMemoryUsage": self.max_memory_usage,
            "requestTimeout": self.request_timeout,
        }


PERMISSIVE_PROFILE = ConstraintProfile()

_MB = 1024 * 1024

# =============================================================================
# HOST PROFILES
# =============================================================================
_PROFILES: Dict[HostType, ConstraintProfile] = {
    HostType.CPYTHON: PERMISSIVE_PROFILE,
    # Lambda freezes the sandbox once the handler returns
    HostType.AWS_LAMBDA: ConstraintProfile(
        max_execution_time=900.0,
        supports_background_execution=False,
        supports_persistent_connection=False,
        supports_file_system=True,
        max_concurrent_operations=1,
        max_memory_usage=10240 * _MB,
        request_timeout=30.0,
        host=HostType.AWS_LAMBDA.value,
    ),
    HostType.GOOGLE_CLOUD_FUNCTIONS: ConstraintProfile(
        max_execution_time=540.0,
        supports_background_execution=False,
        supports_persistent_connection=False,
        supports_file_system=True,
        max_concurrent_operations=1,
        max_memory_usage=8192 * _MB,
        request_timeout=60.0,
        host=HostType.GOOGLE_CLOUD_FUNCTIONS.value,
    ),
    HostType.AZURE_FUNCTIONS: ConstraintProfile(
        max_execution_time=600.0,
        supports_background_execution=False,
        supports_persistent_connection=False,
        supports_file_system=True,
        max_concurrent_operations=None,
        max_memory_usage=1536 * _MB,
        request_timeout=230.0,
        host=HostType.AZURE_FUNCTIONS.value,
    ),
    HostType.VERCEL: ConstraintProfile(
        max_execution_time=60.0,
        supports_background_execution=False,
        supports_persistent_connection=False,
        supports_file_system=False,
        max_concurrent_operations=None,
        max_memory_usage=1024 * _MB,
        request_timeout=60.0,
        host=HostType.VERCEL.value,
    ),
    HostType.CLOUDFLARE_WORKERS: ConstraintProfile(
        max_execution_time=10.0,
        supports_background_execution=False,
        supports_persistent_connection=False,
        supports_file_system=False,
        max_concurrent_operations=6,
        max_memory_usage=128 * _MB,
        request_timeout=10.0,
        host=HostType.CLOUDFLARE_WORKERS.value,
    ),
}


def _coerce_host(host: Union[HostType, str, None]) -> Optional[HostType]:
    if isinstance(host, HostType):
        return host
    if not host:
        return None
    try:
        return HostType(str(host).strip().lower())
    except ValueError:
        return None


def get_constraint_profile(host: Union[HostType, str, None]) -> ConstraintProfile:
    """
    Get the constraint profile for a host.

    Unknown hosts fall back to the permissive profile so the process can
    still attempt to operate.
    """
    host_type = _coerce_host(host)
    if host_type is None:
        logger.warning(f"Unknown host '{host}', using permissive constraint profile")
        return PERMISSIVE_PROFILE
    return _PROFILES[host_type]


def list_known_hosts() -> Dict[str, ConstraintProfile]:
    """All known hosts with their profiles."""
    return {host.value: profile for host, profile in _PROFILES.items()}
