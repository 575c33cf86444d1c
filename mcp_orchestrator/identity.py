"""Who the orchestrator says it is during the handshake, and how it recognises itself."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

ORCHESTRATOR_NAME = "code-mode-toon"
ORCHESTRATOR_VENDOR = "code-mode-toon"
ORCHESTRATOR_SIGNATURE = "code-mode-toon-orchestrator-v1"
ORCHESTRATOR_VERSION = "2.1.0"
PROTOCOL_VERSION = "2024-11-05"


@dataclass(frozen=True)
class Identity:
    name: str = ORCHESTRATOR_NAME
    vendor: str = ORCHESTRATOR_VENDOR
    signature: str = ORCHESTRATOR_SIGNATURE
    version: str = ORCHESTRATOR_VERSION

    def client_info(self) -> dict[str, str]:
        return {
            "name": self.name,
            "version": self.version,
            "vendor": self.vendor,
            "signature": self.signature,
        }


DEFAULT_IDENTITY = Identity()


def is_self_reference(info: dict[str, Any] | None, identity: Identity = DEFAULT_IDENTITY) -> bool:
    """
    True if `info` (a downstream serverInfo) describes this orchestrator.

    Vendor plus signature is the strong match. A name match combined with
    either tag also counts, and so does a bare name match: older builds
    report only a name. The bare name rule can misfire if an unrelated
    server happens to use the same name.
    """
    if not isinstance(info, dict):
        return False

    name_match = info.get("name") == identity.name
    vendor_match = info.get("vendor") == identity.vendor
    signature_match = info.get("signature") == identity.signature

    if vendor_match and signature_match:
        return True
    if name_match and (vendor_match or signature_match):
        return True
    return name_match
