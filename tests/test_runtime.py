#!/usr/bin/env python3
"""
Test suite for the runtime layer.

Tests:
- Constraint profiles per host
- Host detection and runtime info caching
- Settings and dependency container

Run with: pytest tests/test_runtime.py -v
Or: python tests/test_runtime.py
"""
import math
import os
import sys
from unittest.mock import MagicMock, patch

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Set required environment variables BEFORE imports
os.environ.setdefault("AWS_REGION", "us-east-1")


# =============================================================================
# TEST: Constraint Profiles
# =============================================================================

class TestConstraintProfiles:
    """Tests for host constraint profiles."""

    def test_permissive_profile_is_unbounded(self):
        """Plain CPython processes have no limits."""
        from src.runtime.constraints import HostType, get_constraint_profile

        profile = get_constraint_profile(HostType.CPYTHON)
        assert math.isinf(profile.max_execution_time)
        assert profile.supports_background_execution == True
        assert profile.supports_persistent_connection == True
        assert profile.is_time_limited == False
        assert profile.is_unbounded == True
        print("✓ CPython profile is permissive")

    def test_lambda_profile(self):
        """Lambda freezes after responding and allows no sockets."""
        from src.runtime.constraints import get_constraint_profile

        profile = get_constraint_profile("aws-lambda")
        assert profile.max_execution_time == 900.0
        assert profile.supports_background_execution == False
        assert profile.supports_persistent_connection == False
        assert profile.max_concurrent_operations == 1
        assert profile.is_time_limited == True
        print("✓ Lambda profile is constrained")

    def test_host_name_is_case_insensitive(self):
        """Host names are matched case-insensitively."""
        from src.runtime.constraints import get_constraint_profile

        assert get_constraint_profile(" Cloudflare-Workers ").max_execution_time == 10.0
        print("✓ Host names normalized")

    def test_unknown_host_falls_back_to_permissive(self):
        """Unknown hosts get the permissive profile."""
        from src.runtime.constraints import PERMISSIVE_PROFILE, get_constraint_profile

        assert get_constraint_profile("mainframe") is PERMISSIVE_PROFILE
        assert get_constraint_profile(None) is PERMISSIVE_PROFILE
        print("✓ Unknown host falls back to permissive profile")

    def test_to_dict_hides_infinity(self):
        """Unlimited execution time serializes as None."""
        from src.runtime.constraints import PERMISSIVE_PROFILE

        data = PERMISSIVE_PROFILE.to_dict()
        assert data["maxExecutionTime"] is None
        assert data["host"] == "cpython"
        print("✓ Profile serializes")

    def test_list_known_hosts(self):
        """Every host type has a profile."""
        from src.runtime.constraints import HostType, list_known_hosts

        hosts = list_known_hosts()
        assert set(hosts) == {h.value for h in HostType}
        print(f"✓ {len(hosts)} hosts known")


# =============================================================================
# TEST: Host Detection
# =============================================================================

class TestDetector:
    """Tests for host detection."""

    def test_detect_lambda(self):
        from src.runtime.constraints import HostType
        from src.runtime.detector import detect_host

        assert detect_host({"AWS_LAMBDA_FUNCTION_NAME": "bot"}) == HostType.AWS_LAMBDA
        print("✓ Lambda detected")

    def test_detect_cloud_functions(self):
        from src.runtime.constraints import HostType
        from src.runtime.detector import detect_host

        assert detect_host({"FUNCTION_TARGET": "main"}) == HostType.GOOGLE_CLOUD_FUNCTIONS
        assert detect_host({"FUNCTION_NAME": "main", "GCP_PROJECT": "p"}) == HostType.GOOGLE_CLOUD_FUNCTIONS
        # FUNCTION_NAME alone is not enough
        assert detect_host({"FUNCTION_NAME": "main"}) != HostType.GOOGLE_CLOUD_FUNCTIONS
        print("✓ Cloud Functions detected")

    def test_detect_azure_and_vercel(self):
        from src.runtime.constraints import HostType
        from src.runtime.detector import detect_host

        assert detect_host({"FUNCTIONS_WORKER_RUNTIME": "python"}) == HostType.AZURE_FUNCTIONS
        assert detect_host({"VERCEL": "1"}) == HostType.VERCEL
        print("✓ Azure and Vercel detected")

    def test_default_is_cpython(self):
        from src.runtime.constraints import HostType
        from src.runtime.detector import detect_host

        assert detect_host({}) == HostType.CPYTHON
        print("✓ Default host is CPython")

    def test_runtime_info_cached(self):
        """get_runtime_info() caches until reset."""
        from src.runtime.constraints import HostType
        from src.runtime.detector import get_runtime_info, reset_runtime_info

        reset_runtime_info()
        try:
            with patch.dict(os.environ, {"AWS_LAMBDA_FUNCTION_NAME": "bot",
                                         "AWS_EXECUTION_ENV": "AWS_Lambda_python3.12"}):
                info = get_runtime_info()
                assert info.host == HostType.AWS_LAMBDA
                assert info.version == "AWS_Lambda_python3.12"
                assert info.features.supports_websocket == False
                assert info.constraints.supports_background_execution == False
            # Cached even though the environment changed
            assert get_runtime_info() is info
        finally:
            reset_runtime_info()

        data = info.to_dict()
        assert data["host"] == "aws-lambda"
        assert data["constraints"]["maxExecutionTime"] == 900.0
        print("✓ Runtime info cached and serializable")


# =============================================================================
# TEST: Settings & Deps
# =============================================================================

class TestDeps:
    """Tests for settings and dependency container."""

    def test_settings_from_env(self):
        from src.runtime.deps import Settings

        env = {
            "INTERACTIONS_HOST": "vercel",
            "SESSION_TTL_SECONDS": "120",
            "SESSION_TABLE_NAME": "sessions",
            "REQUIRE_SIGNATURE": "false",
            "APPLICATION_ID": "app-1",
        }
        with patch.dict(os.environ, env):
            settings = Settings.from_env()

        assert settings.host == "vercel"
        assert settings.session_ttl == 120.0
        assert settings.session_table_name == "sessions"
        assert settings.require_signature == False
        assert settings.application_id == "app-1"
        print("✓ Settings loaded from environment")

    def test_invalid_float_uses_default(self):
        from src.runtime.deps import Settings

        with patch.dict(os.environ, {"SESSION_TTL_SECONDS": "soon"}):
            settings = Settings.from_env()
        assert settings.session_ttl == 900.0
        print("✓ Invalid number falls back to default")

    def test_settings_to_dict_omits_token(self):
        from src.runtime.deps import Settings

        data = Settings(bot_token="secret").to_dict()
        assert "secret" not in data.values()
        assert data["sessionTtl"] == 900.0
        print("✓ Bot token not serialized")

    def test_resolve_profile_order(self):
        """Override beats configured host, which beats detection."""
        from src.runtime.constraints import ConstraintProfile
        from src.runtime.deps import Settings, resolve_constraint_profile

        override = ConstraintProfile(max_execution_time=1.0, host="custom")
        assert resolve_constraint_profile(Settings(host="vercel"), override) is override
        assert resolve_constraint_profile(Settings(host="vercel")).host == "vercel"
        print("✓ Constraint profile resolution order")

    def test_deps_lazy_clients(self):
        """Clients are created on first access only."""
        from src.runtime.deps import Settings, create_deps

        deps = create_deps(Settings(session_table_name="sessions", region="eu-west-1"))
        assert "dynamodb" not in deps.__dict__

        with patch("src.runtime.deps.boto3.resource") as mock_resource:
            resource = MagicMock()
            mock_resource.return_value = resource
            table = deps.session_table
            mock_resource.assert_called_once_with("dynamodb", region_name="eu-west-1")
            resource.Table.assert_called_once_with("sessions")
            assert table is resource.Table.return_value
        print("✓ DynamoDB table created lazily")

    def test_deps_rest_client(self):
        from src.delivery.rest import RestClient
        from src.runtime.deps import Settings, create_deps

        deps = create_deps(Settings(api_base_url="https://api.example.com/", application_id="app-9"))
        rest = deps.rest
        assert isinstance(rest, RestClient)
        assert rest.config.base_url == "https://api.example.com"
        assert rest.config.application_id == "app-9"
        assert deps.rest is rest
        print("✓ REST client created from settings")


# =============================================================================
# MAIN TEST RUNNER
# =============================================================================

def run_all_tests():
    """Run all test classes."""
    print("\n" + "=" * 70)
    print("RUNTIME TEST SUITE")
    print("=" * 70 + "\n")

    test_classes = [
        ("Constraint Profile Tests", TestConstraintProfiles),
        ("Detector Tests", TestDetector),
        ("Deps Tests", TestDeps),
    ]

    passed = 0
    failed = 0

    for name, test_class in test_classes:
        print(f"\n{'=' * 60}")
        print(f"Running: {name}")
        print("=" * 60)

        instance = test_class()
        for method_name in dir(instance):
            if method_name.startswith("test_"):
                try:
                    getattr(instance, method_name)()
                    passed += 1
                except Exception as e:
                    print(f"✗ {method_name}: {e}")
                    failed += 1

    print("\n" + "=" * 70)
    print(f"RESULTS: {passed} passed, {failed} failed")
    print("=" * 70)

    return failed == 0


if __name__ == "__main__":
    success = run_all_tests()
    sys.exit(0 if success else 1)
