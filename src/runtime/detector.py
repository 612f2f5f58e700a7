# =============================================================================
# Host Detection
# =============================================================================
# Works out which host the process runs on from environment markers and
# reports its version, features and constraint profile. The result is
# cached for the process lifetime.
# =============================================================================

import logging
import os
import platform
import sys
from dataclasses import dataclass
from typing import Dict, Optional

from src.runtime.constraints import ConstraintProfile, HostType, get_constraint_profile

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HostFeatures:
    """Capabilities of a host beyond its execution limits."""
    supports_file_system: bool = True
    supports_websocket: bool = True
    supports_streams: bool = True
    supports_long_running: bool = True


@dataclass(frozen=True)
class RuntimeInfo:
    """Detected host with its version, features and constraints."""
    host: HostType
    version: Optional[str]
    features: HostFeatures
    constraints: ConstraintProfile

    def to_dict(self) -> Dict[str, object]:
        return {
            "host": self.host.value,
            "version": self.version,
            "features": {
                "supportsFileSystem": self.features.supports_file_system,
                "supportsWebSocket": self.features.supports_websocket,
                "supportsStreams": self.features.supports_streams,
                "supportsLongRunning": self.features.supports_long_running,
            },
            "constraints": self.constraints.to_dict(),
        }


_SERVERLESS_FEATURES = HostFeatures(
    supports_file_system=True,
    supports_websocket=False,
    supports_streams=True,
    supports_long_running=False,
)

_FEATURES: Dict[HostType, HostFeatures] = {
    HostType.CPYTHON: HostFeatures(),
    HostType.AWS_LAMBDA: _SERVERLESS_FEATURES,
    HostType.GOOGLE_CLOUD_FUNCTIONS: _SERVERLESS_FEATURES,
    HostType.AZURE_FUNCTIONS: _SERVERLESS_FEATURES,
    HostType.VERCEL: HostFeatures(
        supports_file_system=False,
        supports_websocket=False,
        supports_streams=True,
        supports_long_running=False,
    ),
    HostType.CLOUDFLARE_WORKERS: HostFeatures(
        supports_file_system=False,
        supports_websocket=True,
        supports_streams=True,
        supports_long_running=False,
    ),
}


def get_host_features(host: HostType) -> HostFeatures:
    """Get feature flags for a host (unknown hosts get the full set)."""
    return _FEATURES.get(host, HostFeatures())


def detect_host(environ: Dict[str, str] = None) -> HostType:
    """
    Detect the current host from environment markers.

    Falls back to a plain CPython process when nothing matches.
    """
    env = os.environ if environ is None else environ

    if env.get("AWS_LAMBDA_FUNCTION_NAME"):
        return HostType.AWS_LAMBDA

    # Gen1 sets FUNCTION_NAME, gen2 sets FUNCTION_TARGET
    if env.get("FUNCTION_TARGET") or (env.get("FUNCTION_NAME") and env.get("GCP_PROJECT")):
        return HostType.GOOGLE_CLOUD_FUNCTIONS

    if env.get("FUNCTIONS_WORKER_RUNTIME"):
        return HostType.AZURE_FUNCTIONS

    if env.get("VERCEL"):
        return HostType.VERCEL

    if sys.platform == "emscripten" or "pyodide" in sys.modules:
        return HostType.CLOUDFLARE_WORKERS

    return HostType.CPYTHON


def _detect_version(host: HostType, env: Dict[str, str]) -> Optional[str]:
    if host == HostType.AWS_LAMBDA:
        # e.g. AWS_Lambda_python3.12
        return env.get("AWS_EXECUTION_ENV") or platform.python_version()
    if host == HostType.CLOUDFLARE_WORKERS:
        return None
    return platform.python_version()


_detected: Optional[RuntimeInfo] = None


def get_runtime_info() -> RuntimeInfo:
    """Get (and cache) runtime information for the current process."""
    global _detected
    if _detected is not None:
        return _detected

    host = detect_host()
    _detected = RuntimeInfo(
        host=host,
        version=_detect_version(host, os.environ),
        features=get_host_features(host),
        constraints=get_constraint_profile(host),
    )
    logger.info(f"Detected host={host.value} version={_detected.version}")
    return _detected


def reset_runtime_info() -> None:
    """Forget the cached detection result."""
    global _detected
    _detected = None
