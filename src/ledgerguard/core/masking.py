"""
Redaction of sensitive values in audit details and log fields.

Runs before audit details are encrypted, so secrets never reach storage
even in encrypted form, and provides the masked forms used in log lines.
"""

from typing import Any, Dict, Optional, Set

import structlog

from ..config import MaskingSettings, get_settings

logger = structlog.get_logger(__name__)

SENSITIVE_PATTERNS = (
    'card', 'ssn', 'pass', 'pwd', 'token', 'auth', 'secret', 'private', 'csrf',
)


def mask_email(email: Optional[str]) -> str:
    """
    Mask email addresses in format: e*****e@email.com for example@email.com
    """
    if not email or "@" not in email:
        return "****"

    local_part, domain = email.split("@", 1)
    if not local_part or not domain:
        return "****"

    if len(local_part) <= 2:
        masked_local = "****"
    else:
        middle_stars = "*" * min(5, len(local_part) - 2)
        masked_local = f"{local_part[0]}{middle_stars}{local_part[-1]}"

    return f"{masked_local}@{domain}"


def mask_token(token: Optional[str]) -> str:
    """Short prefix of a token, safe for log lines."""
    if not token or len(token) < 8:
        return "invalid"
    return token[:8] + "..."


class MaskingEngine:
    """
    Masks sensitive values in nested audit detail structures.

    Features:
    - Baseline keys from configuration
    - Partial masking (keep prefixes, email format)
    - Deep object traversal for nested data
    """

    def __init__(self, settings: Optional[MaskingSettings] = None) -> None:
        self.settings = settings or get_settings().masking

    def mask_details(self, details: Dict[str, Any]) -> Dict[str, Any]:
        """Return a masked deep copy of an audit details mapping."""
        mask_keys = {key.lower() for key in self.settings.baseline_keys}
        masked: Dict[str, Any] = self._deep_copy_and_mask(details, mask_keys)
        return masked

    def _deep_copy_and_mask(self, obj: Any, mask_keys: Set[str], path: str = "") -> Any:
        if isinstance(obj, dict):
            masked_dict = {}
            for key, value in obj.items():
                current_path = f"{path}.{key}" if path else str(key)

                if self._should_mask_key(str(key), mask_keys):
                    masked_dict[key] = self._mask_value(str(key), value)
                    logger.debug("Masked sensitive field", path=current_path)
                else:
                    masked_dict[key] = self._deep_copy_and_mask(value, mask_keys, current_path)

            return masked_dict

        elif isinstance(obj, (list, tuple)):
            return [
                self._deep_copy_and_mask(item, mask_keys, f"{path}[{i}]")
                for i, item in enumerate(obj)
            ]

        return obj

    def _should_mask_key(self, key: str, mask_keys: Set[str]) -> bool:
        """Case-insensitive exact or partial match against configured keys and heuristics."""
        key_lower = key.lower()

        if any(rule_key in key_lower for rule_key in self._partial_rule_keys()):
            return True

        for mask_key in mask_keys:
            if mask_key in key_lower:
                return True

        return any(pattern in key_lower for pattern in SENSITIVE_PATTERNS)

    def _partial_rule_keys(self) -> Set[str]:
        return {rule_key.lower() for rule_key in self.settings.partial_rules}

    def _mask_value(self, key: str, value: Any) -> str:
        str_value = str(value) if value is not None else ""
        key_lower = key.lower()

        for rule_key, rule_config in self.settings.partial_rules.items():
            if rule_key.lower() in key_lower:
                return self._apply_partial_masking(str_value, rule_config)

        return self._apply_full_masking(str_value)

    def _apply_partial_masking(self, value: str, rule_config: Dict[str, Any]) -> str:
        if not value:
            return "****"

        if rule_config.get("mask_email"):
            return mask_email(value)

        if "keep_prefix" in rule_config:
            prefix_len = rule_config["keep_prefix"]
            if len(value) <= prefix_len:
                return "****"
            return f"{value[:prefix_len]}****"

        if "keep_suffix" in rule_config:
            suffix_len = rule_config["keep_suffix"]
            if len(value) <= suffix_len:
                return "****"
            return f"****{value[-suffix_len:]}"

        return self._apply_full_masking(value)

    def _apply_full_masking(self, value: str) -> str:
        if len(value) <= 16:
            return "****"
        return f"****[{len(value)} chars]"


# Global masking engine instance
_masking_engine: Optional[MaskingEngine] = None


def get_masking_engine() -> MaskingEngine:
    """Get or create the global masking engine instance."""
    global _masking_engine

    if _masking_engine is None:
        _masking_engine = MaskingEngine()

    return _masking_engine
