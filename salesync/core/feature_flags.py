"""
Feature flags for the sync engine.

Behaviour that departs from the plain "user-triggered retry" model is
kept behind a flag with default=OFF.

Usage:
    from salesync.core.feature_flags import is_enabled

    if is_enabled("TRANSPORT_BACKOFF"):
        # retry transport failures with bounded backoff
"""

import os
from typing import Dict, Optional


class FeatureFlags:
    """
    Feature flag management with environment-based configuration.

    Flags default to OFF (False) unless explicitly enabled.
    Enable via environment variables: FEATURE_<FLAG_NAME>=true
    """

    REGISTRY: Dict[str, str] = {
        "TRANSPORT_BACKOFF": "Retry transport failures with bounded exponential backoff",
        "CORRELATION_IDS_ENABLED": "Tag every log line of a sync cycle with a cycle id",
    }

    def __init__(self):
        self._cache: Dict[str, bool] = {}
        self._load_from_environment()

    def _load_from_environment(self) -> None:
        """Load flag values from environment variables."""
        for flag_name in self.REGISTRY:
            env_key = f"FEATURE_{flag_name}"
            env_value = os.environ.get(env_key, "").lower()
            self._cache[flag_name] = env_value in ("true", "1", "yes")

    def is_enabled(self, flag_name: str) -> bool:
        """
        Check if a feature flag is enabled.

        Unknown flags are always disabled.
        """
        if flag_name not in self.REGISTRY:
            return False
        return self._cache.get(flag_name, False)

    def override(self, flag_name: str, value: bool) -> None:
        """Override a flag value (for testing only)."""
        if flag_name in self.REGISTRY:
            self._cache[flag_name] = value

    def reset(self) -> None:
        """Reset all flags to environment values (for testing)."""
        self._load_from_environment()

    def __repr__(self) -> str:
        enabled = [f for f in self.REGISTRY if self.is_enabled(f)]
        return f"<FeatureFlags enabled={enabled}>"


_flags_instance: Optional[FeatureFlags] = None


def get_flags() -> FeatureFlags:
    """Get the global FeatureFlags instance."""
    global _flags_instance
    if _flags_instance is None:
        _flags_instance = FeatureFlags()
    return _flags_instance


def is_enabled(flag_name: str) -> bool:
    """Convenience function to check if a flag is enabled."""
    return get_flags().is_enabled(flag_name)
