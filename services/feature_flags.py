"""
Feature Flags & Kill Switches
In-process flags seeded from the environment, with per-shop overrides and
emergency kill switches that win over everything else.
"""
from typing import Dict, Any, Optional
import logging
import os
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class FeatureFlagsManager:
    """Manages feature flags and kill switches for the sync pipeline"""

    def __init__(self):
        self.default_flags: Dict[str, bool] = {
            "generation.llm_enabled": _env_bool("LLM_RECOMMENDATIONS_ENABLED", True),
            "sync.enabled": True,
            "api.recommendations": True,
        }
        self._flag_cache: Dict[str, bool] = dict(self.default_flags)
        self._shop_overrides: Dict[str, Dict[str, bool]] = {}

        self.kill_switches: Dict[str, bool] = {
            # Every run uses the deterministic fallback picker
            "emergency.force_fallback": _env_bool("FORCE_FALLBACK_GENERATION", False),
            # Reject every sync with SYNC_DISABLED
            "emergency.disable_all_syncs": False,
        }
        self.change_history = []

    def get_flag(self, flag_key: str, shop_id: Optional[str] = None, default: bool = False) -> bool:
        """Get feature flag value with shop-specific overrides"""
        if self._is_killed_by_emergency_switch(flag_key):
            return False
        if shop_id and flag_key in self._shop_overrides.get(shop_id, {}):
            return self._shop_overrides[shop_id][flag_key]
        return self._flag_cache.get(flag_key, default)

    def set_flag(self, flag_key: str, value: bool, shop_id: Optional[str] = None,
                 updated_by: str = "system") -> bool:
        if flag_key not in self.default_flags:
            logger.warning(f"Unknown flag key: {flag_key}")
            return False
        if shop_id:
            self._shop_overrides.setdefault(shop_id, {})[flag_key] = value
        else:
            self._flag_cache[flag_key] = value
        self._record_flag_change(flag_key, value, shop_id, updated_by)
        logger.info(f"Set flag {flag_key}={value} for shop={shop_id} by {updated_by}")
        return True

    def set_kill_switch(self, kill_switch: str, active: bool, changed_by: str = "system") -> bool:
        if kill_switch not in self.kill_switches:
            logger.warning(f"Unknown kill switch: {kill_switch}")
            return False
        self.kill_switches[kill_switch] = active
        if active:
            logger.critical(f"KILL SWITCH ACTIVATED: {kill_switch} by {changed_by}")
        else:
            logger.warning(f"Kill switch deactivated: {kill_switch} by {changed_by}")
        self._record_flag_change(kill_switch, active, None, changed_by)
        return True

    def llm_generation_enabled(self, shop_id: Optional[str] = None) -> bool:
        return self.get_flag("generation.llm_enabled", shop_id, default=True)

    def sync_enabled(self, shop_id: Optional[str] = None) -> bool:
        return self.get_flag("sync.enabled", shop_id, default=True)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "flags": dict(self._flag_cache),
            "shop_overrides": {k: dict(v) for k, v in self._shop_overrides.items()},
            "kill_switches": dict(self.kill_switches),
            "recent_changes": self.change_history[-10:],
        }

    def reset(self) -> None:
        """Restore defaults (used by tests and the admin reset)."""
        self._flag_cache = dict(self.default_flags)
        self._shop_overrides.clear()
        for key in self.kill_switches:
            self.kill_switches[key] = False
        self.change_history.clear()

    def _is_killed_by_emergency_switch(self, flag_key: str) -> bool:
        if self.kill_switches.get("emergency.force_fallback") and flag_key == "generation.llm_enabled":
            return True
        if self.kill_switches.get("emergency.disable_all_syncs") and flag_key == "sync.enabled":
            return True
        return False

    def _record_flag_change(self, flag_key: str, value: bool, shop_id: Optional[str], updated_by: str):
        self.change_history.append({
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "flag_key": flag_key,
            "new_value": value,
            "shop_id": shop_id,
            "updated_by": updated_by,
        })
        # Keep only last 100 changes
        if len(self.change_history) > 100:
            self.change_history = self.change_history[-100:]


# Global feature flags manager instance
feature_flags = FeatureFlagsManager()
