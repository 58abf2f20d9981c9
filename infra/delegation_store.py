"""
Delegation and portfolio state backed by a JSON file.

Layout of the state file:

    {
      "delegations": {"0xabc...": {delegate, daily_limit_usd, spent_24h_usd, ...}},
      "portfolios":  {"0xabc...": {total_value_usd, net_apy, positions: [...]}}
    }

Writes are atomic (temp file + rename). Spend is tracked over a rolling 24h
window that starts at window_started_at; reads of a delegation whose window
has elapsed return it with spent_24h_usd reset to zero.
"""

import copy
import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from core.exceptions import ValidationError
from core.models import Delegation, PortfolioSnapshot

logger = logging.getLogger(__name__)

SPEND_WINDOW = timedelta(hours=24)

DEFAULT_STATE = {
    "delegations": {},  # account -> delegation fields
    "portfolios": {},  # account -> portfolio snapshot
}


class JsonDelegationStore:
    """
    Delegation store over a JSON state file.

    Thread-safe: every read-modify-write holds one lock, and the orchestrator
    additionally serializes spend updates per account.
    """

    def __init__(self, state_file: Optional[str] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        """
        Args:
            state_file: Path to state JSON file (default: $STATE_FILE or data/state.json)
            clock: Returns the current aware UTC time
        """
        self.state_file = Path(state_file or os.getenv("STATE_FILE", "data/state.json"))
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        logger.info(f"Initialized JsonDelegationStore at {self.state_file}")

    def load(self) -> Dict[str, Any]:
        """
        Load state from file.

        Returns:
            State dict with defaults merged; defaults if the file is missing

        Raises:
            ValidationError: If the file exists but is not a JSON object
        """
        if not self.state_file.exists():
            logger.debug("No state file found, using defaults")
            return copy.deepcopy(DEFAULT_STATE)

        try:
            with open(self.state_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValidationError(f"State file {self.state_file} is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise ValidationError(f"State file {self.state_file} must contain a JSON object")
        state = copy.deepcopy(DEFAULT_STATE)
        state.update(data)
        return state

    def save(self, state: Dict[str, Any]) -> None:
        """
        Save state to file atomically.

        Errors propagate: a failed save means a failed spend update.
        """
        temp_fd, temp_path = tempfile.mkstemp(
            dir=self.state_file.parent,
            prefix=".state_",
            suffix=".json.tmp",
        )
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(state, f, indent=2)
            os.replace(temp_path, self.state_file)
        except OSError as e:
            logger.error(f"Failed to save state: {e}")
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise
        logger.debug("Saved state to file")

    def get(self, account: str) -> Optional[Delegation]:
        """Delegation for account with the spend window applied, or None."""
        key = account.lower()
        with self._lock:
            raw = self.load()["delegations"].get(key)
        if raw is None:
            return None
        return self._apply_window(Delegation.from_dict(key, raw))

    def update(self, account: str, patch: Dict[str, Any]) -> Delegation:
        """
        Merge patch into the stored delegation and persist.

        Raises:
            ValidationError: Unknown account or patch produces an invalid delegation
            OSError: State file could not be written
        """
        key = account.lower()
        with self._lock:
            state = self.load()
            raw = state["delegations"].get(key)
            if raw is None:
                raise ValidationError(f"No delegation stored for account {key}")

            current = self._apply_window(Delegation.from_dict(key, raw))
            merged = current.to_dict()
            merged.update(patch)
            updated = Delegation.from_dict(key, merged)

            state["delegations"][key] = updated.to_dict()
            self.save(state)

        logger.debug(f"Updated delegation {key}: {sorted(patch)}")
        return updated

    def put(self, delegation: Delegation) -> None:
        """Insert or replace a delegation."""
        with self._lock:
            state = self.load()
            state["delegations"][delegation.account.lower()] = delegation.to_dict()
            self.save(state)

    def list_accounts(self) -> List[str]:
        with self._lock:
            return sorted(self.load()["delegations"].keys())

    def list_delegations(self) -> List[Delegation]:
        """All stored delegations, windowed. Malformed entries are logged and skipped."""
        with self._lock:
            raw_delegations = self.load()["delegations"]
        delegations = []
        for key, raw in sorted(raw_delegations.items()):
            try:
                delegations.append(self._apply_window(Delegation.from_dict(key, raw)))
            except ValidationError as e:
                logger.warning(f"Skipping malformed delegation {key}: {e}")
        return delegations

    def _apply_window(self, delegation: Delegation) -> Delegation:
        now = self._clock()
        started = delegation.window_started_at
        if started is None:
            delegation.window_started_at = now
        elif now - started >= SPEND_WINDOW:
            logger.info(
                f"Spend window for {delegation.account} elapsed "
                f"(started {started.isoformat()}), resetting spent_24h_usd"
            )
            delegation.spent_24h_usd = 0.0
            delegation.window_started_at = now
        return delegation


class JsonPortfolioSource:
    """Reads portfolio snapshots from the "portfolios" section of the state file."""

    def __init__(self, store: JsonDelegationStore):
        self._store = store

    def get_snapshot(self, account: str) -> PortfolioSnapshot:
        raw = self._store.load()["portfolios"].get(account.lower())
        if raw is None:
            logger.warning(f"No portfolio snapshot for {account}; assuming zero capital")
            return PortfolioSnapshot(total_value_usd=0.0)
        return PortfolioSnapshot.from_dict(raw)


__all__ = ["JsonDelegationStore", "JsonPortfolioSource", "SPEND_WINDOW"]
