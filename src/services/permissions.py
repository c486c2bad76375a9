"""
Origin Permissions - Which browser origins may use the wallet.

An origin is granted access when the user approves eth_requestAccounts for
it. Grants are kept in memory and, when a path is given, persisted as JSON.
"""

import json
import logging
from pathlib import Path
from typing import Optional

from utils import now_ms
from wallet.crypto import set_secure_permissions

logger = logging.getLogger(__name__)

# Request types any origin may send without a grant
CONNECT_TYPES = frozenset({"eth_requestAccounts", "get_status", "ping", "wallet_getStatus"})


class OriginPermissions:
    """Per-origin access grants consulted by the validation pipeline."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path is not None else None
        self._grants: dict[str, int] = {}  # origin -> granted at (epoch ms)
        self._load()

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
            self._grants = {str(k): int(v) for k, v in data.items()}
        except (json.JSONDecodeError, AttributeError, TypeError, ValueError) as e:
            logger.warning(f"Failed to load origin permissions: {e}")

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_suffix('.tmp')
        with open(temp_path, "w") as f:
            json.dump(self._grants, f, indent=2)
        temp_path.replace(self.path)
        set_secure_permissions(self.path)

    def check_permission(self, origin: str, request_type: Optional[str]) -> bool:
        if request_type in CONNECT_TYPES:
            return True
        return origin in self._grants

    def is_granted(self, origin: str) -> bool:
        return origin in self._grants

    def grant(self, origin: str) -> None:
        if origin in self._grants:
            return
        self._grants[origin] = now_ms()
        self._save()
        logger.info(f"Granted account access to {origin}")

    def revoke(self, origin: str) -> bool:
        if self._grants.pop(origin, None) is None:
            return False
        self._save()
        logger.info(f"Revoked account access for {origin}")
        return True

    def origins(self) -> list[str]:
        return sorted(self._grants)
