"""In-memory lifecycle metrics snapshot for the API + metrics file."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional

from bottrade.infrastructure.utils.timeutils import utc_now
from bottrade.models.trade_models import SweepReport


@dataclass
class MetricsSnapshot:
    environment: str = ""
    active_trades_by_owner: Dict[str, int] = field(default_factory=dict)
    settled_total: int = 0
    already_settled_total: int = 0
    failed_total: int = 0
    sweeps: int = 0
    last_sweep_at: Optional[str] = None

    @property
    def active_trades(self) -> int:
        return sum(self.active_trades_by_owner.values())

    def record_sweep(self, owner_id: str, report: SweepReport, active_after: int) -> None:
        self.sweeps += 1
        self.settled_total += len(report.settled)
        self.already_settled_total += len(report.already_settled)
        self.failed_total += len(report.failed)
        self.last_sweep_at = utc_now().isoformat()
        if active_after:
            self.active_trades_by_owner[owner_id] = active_after
        else:
            self.active_trades_by_owner.pop(owner_id, None)

    def to_dict(self) -> Dict[str, object]:
        return {
            "environment": self.environment,
            "owners_with_active_trades": len(self.active_trades_by_owner),
            "active_trades": self.active_trades,
            "settled_total": self.settled_total,
            "already_settled_total": self.already_settled_total,
            "failed_total": self.failed_total,
            "sweeps": self.sweeps,
            "last_sweep_at": self.last_sweep_at,
        }
