"""
On-disk persistence of wallet state as a JSON snapshot.
"""

from __future__ import annotations

import os
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from spvwallet.wallet.models import WalletSnapshot


class StorageError(Exception):
    pass


class JsonWalletStorage:
    """Atomic, owner-only JSON file holding one WalletSnapshot."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> WalletSnapshot | None:
        if not self.path.exists():
            return None
        try:
            snapshot = WalletSnapshot.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            raise StorageError(f"Failed to load wallet state from {self.path}: {e}") from e
        logger.debug(
            f"Loaded wallet state from {self.path} "
            f"(tip {snapshot.tip_height}, {len(snapshot.utxos)} utxos)"
        )
        return snapshot

    def save(self, snapshot: WalletSnapshot) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(snapshot.model_dump_json(indent=2))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
            os.chmod(self.path, 0o600)  # Restrict permissions
        except OSError as e:
            raise StorageError(f"Failed to save wallet state to {self.path}: {e}") from e
