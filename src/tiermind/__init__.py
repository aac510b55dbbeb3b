"""tiermind: tiered identity resolution + profile memory engine."""

from tiermind.models import Identity, Pattern, Tier, Trace, TrustLink
from tiermind.config import EngineConfig
from tiermind.errors import (
    CacheFault, MalformedRecord, NotFound, PermissionDenied, StorageFault, TiermindError,
)
from tiermind.engine import IdentityPatch, ProfileEngine
from tiermind.resolver import Resolution, ResolveState
from tiermind.rules import RuleTable
from tiermind.sessions import SessionContext

__version__ = "0.1.0"
__all__ = [
    "ProfileEngine", "IdentityPatch", "EngineConfig", "RuleTable",
    "Identity", "Pattern", "Tier", "Trace", "TrustLink",
    "Resolution", "ResolveState", "SessionContext",
    "TiermindError", "NotFound", "PermissionDenied", "StorageFault",
    "CacheFault", "MalformedRecord",
]
