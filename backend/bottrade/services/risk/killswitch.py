"""Trading suspension switch, persisted to a small JSON file.

While enabled, no new bot trades can be opened. Trades that are already
running keep settling. The file is shared by the API and the engine, so the
flag is re-read on every check.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional

from bottrade.infrastructure.logging.logging import get_logger
from bottrade.infrastructure.utils.timeutils import utc_now


@dataclass
class KillSwitchState:
    enabled: bool = False
    reason: str = ""
    since_iso: Optional[str] = None


class KillSwitch:
    def __init__(self, state_path: Path) -> None:
        self._path = state_path
        self._state = KillSwitchState()
        self.log = get_logger("killswitch")
        self.load()

    @property
    def state(self) -> KillSwitchState:
        return self._state

    @property
    def enabled(self) -> bool:
        self.load()
        return self._state.enabled

    def load(self) -> KillSwitchState:
        raw = self._read()
        if raw is not None:
            self._state = KillSwitchState(
                enabled=bool(raw.get("enabled", False)),
                reason=str(raw.get("reason", "")),
                since_iso=raw.get("since_iso"),
            )
        return self._state

    def _read(self) -> Optional[dict]:
        if not self._path.exists():
            return None
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            # a half-written file keeps the last known state
            self.log.warning("killswitch_state_unreadable", path=str(self._path), error=str(e))
            return None
        return raw if isinstance(raw, dict) else None

    def _write(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(".tmp")
        tmp.write_text(json.dumps(asdict(self._state), indent=2, sort_keys=True), encoding="utf-8")
        tmp.replace(self._path)

    def enable(self, reason: Optional[str] = None) -> KillSwitchState:
        self.load()
        if not self._state.enabled:
            self._state = KillSwitchState(True, reason or "maintenance", utc_now().isoformat())
            self._write()
            self.log.warning("trading_suspended", reason=self._state.reason)
        return self._state

    def disable(self, reason: Optional[str] = None) -> KillSwitchState:
        self._state = KillSwitchState(False, reason or "manual_reset", None)
        self._write()
        self.log.info("trading_resumed", reason=self._state.reason)
        return self._state
