"""
Request heuristics that flag likely automated or proxied traffic.

Flags are recorded in the audit log; they never block a request.
"""

import re
from typing import List, Optional

from ..config import AuditSettings, get_settings
from .sessions import SecurityContext

AUTOMATED_AGENT_PATTERN = re.compile(r"bot|crawler|spider", re.IGNORECASE)


def detect_suspicious_activity(ctx: SecurityContext, settings: Optional[AuditSettings] = None) -> List[str]:
    """Reasons the request looks suspicious; empty when it does not."""
    settings = settings or get_settings().audit
    reasons: List[str] = []

    user_agent = ctx.user_agent or ""
    if len(user_agent) < settings.min_user_agent_length:
        reasons.append("missing_or_short_user_agent")
    if AUTOMATED_AGENT_PATTERN.search(user_agent):
        reasons.append("automated_user_agent")

    if len(ctx.forwarded_for) > settings.max_proxy_hops:
        reasons.append("multiple_proxies")

    return reasons
