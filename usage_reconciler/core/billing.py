"""
Billing mode resolution.

Picks the billing mode for an agent from overrides, credentials or defaults.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from .pricing import BillingMode

logger = logging.getLogger(__name__)

DEFAULT_CREDENTIALS_PATH = Path.home() / ".claude" / ".credentials.json"


@dataclass(frozen=True)
class DetectedAuth:
    """Billing mode derived from a credentials file."""
    billing_mode: BillingMode
    source: str  # "oauth", "api_key" or "default"
    subscription_type: Optional[str] = None


def detect_from_credentials(credentials: Dict) -> DetectedAuth:
    """Derive the billing mode from parsed credentials.

    An OAuth login with a ``max`` subscription bills as ``max``. Any
    other OAuth login or an API key bills as ``api``.
    """
    oauth = credentials.get("claudeAiOauth")
    if isinstance(oauth, dict):
        subscription = oauth.get("subscriptionType")
        if subscription == "max":
            return DetectedAuth(BillingMode.MAX, "oauth", subscription)
        return DetectedAuth(BillingMode.API, "oauth", subscription)
    if credentials.get("apiKey"):
        return DetectedAuth(BillingMode.API, "api_key")
    return DetectedAuth(BillingMode.API, "default")


def detect_billing_mode(credentials_path: Optional[Path] = None) -> Optional[DetectedAuth]:
    """Read the local Claude credentials file and detect its billing mode.

    Args:
        credentials_path: Credentials file, ``~/.claude/.credentials.json`` by default

    Returns:
        The detected auth, or None when the file is missing or unparseable
    """
    path = Path(credentials_path) if credentials_path else DEFAULT_CREDENTIALS_PATH
    try:
        with open(path, "r", encoding="utf-8") as f:
            parsed = json.load(f)
    except FileNotFoundError:
        logger.debug("No credentials file at %s", path)
        return None
    except (OSError, ValueError) as e:
        logger.warning("Could not read credentials file %s: %s", path, e)
        return None
    if not isinstance(parsed, dict):
        logger.warning("Credentials file %s is not a JSON object", path)
        return None
    return detect_from_credentials(parsed)


class BillingResolver:
    """Resolves the billing mode for an agent type.

    Precedence: explicit per-agent override, then the mode detected from
    local credentials, then the configured default.
    """

    def __init__(
        self,
        overrides: Optional[Dict[str, BillingMode]] = None,
        credentials_path: Optional[Path] = None,
        default: BillingMode = BillingMode.API,
        detect: bool = True,
    ):
        self.overrides = dict(overrides or {})
        self.credentials_path = credentials_path
        self.default = default
        self._detect = detect
        self._detected: Optional[DetectedAuth] = None
        self._detection_done = False

    def detected(self) -> Optional[DetectedAuth]:
        if not self._detection_done:
            self._detection_done = True
            if self._detect:
                self._detected = detect_billing_mode(self.credentials_path)
                if self._detected is not None:
                    logger.info(
                        "Detected billing mode %s from %s credentials",
                        self._detected.billing_mode.value,
                        self._detected.source,
                    )
        return self._detected

    def resolve(self, agent_type: Optional[str] = None) -> BillingMode:
        if agent_type and agent_type in self.overrides:
            return self.overrides[agent_type]
        detected = self.detected()
        if detected is not None and detected.source != "default":
            return detected.billing_mode
        return self.default
