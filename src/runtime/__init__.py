# =============================================================================
# Runtime Package - Host Constraints & Settings
# =============================================================================
# Describes the host the dispatch core runs on:
# - Constraint profiles (execution time, background work, connections)
# - Host detection from environment markers
# - Settings and lazily created clients
# =============================================================================

from src.runtime.constraints import (
    ConstraintProfile,
    HostType,
    PERMISSIVE_PROFILE,
    get_constraint_profile,
    list_known_hosts,
)
from src.runtime.detector import (
    HostFeatures,
    RuntimeInfo,
    detect_host,
    get_host_features,
    get_runtime_info,
    reset_runtime_info,
)
from src.runtime.deps import Deps, Settings, create_deps, resolve_constraint_profile

__all__ = [
    "ConstraintProfile",
    "HostType",
    "PERMISSIVE_PROFILE",
    "get_constraint_profile",
    "list_known_hosts",
    "HostFeatures",
    "RuntimeInfo",
    "detect_host",
    "get_host_features",
    "get_runtime_info",
    "reset_runtime_info",
    "Deps",
    "Settings",
    "create_deps",
    "resolve_constraint_profile",
]
