"""Simulated account - the trading engine collaborator.

Holds USDC collateral, account value and per-instrument exposure in memory.
Execution debits margin from collateral; closing credits margin plus realized
PnL back. Nothing here talks to a real venue.
"""
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Optional

from copilot.agents.schemas import PositionDraft
from copilot.core.logging import get_logger
from copilot.core.markets import COLLATERAL_SYMBOL, InstrumentClass
from copilot.orchestrator.state_machine import DraftStatus
from copilot.services.sizing import SizingResult, compute_sizing

logger = get_logger(__name__)

# Statuses whose margin is committed to the venue
_COMMITTED_STATUSES = (DraftStatus.EXECUTING, DraftStatus.EXECUTED)


@dataclass
class Exposure:
    """Open exposure by instrument class."""
    perp_notional_usd: float = 0.0
    event_stake_usd: float = 0.0
    defi_deposits_usd: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


class SimulatedAccount:
    """In-memory account used for sizing, funding checks and settlement."""

    def __init__(self, account_value_usd: float, usdc_balance: float):
        self._account_value = float(account_value_usd)
        self._balances: Dict[str, float] = {COLLATERAL_SYMBOL: float(usdc_balance)}
        self.exposure = Exposure()

    @classmethod
    def from_settings(cls, settings) -> "SimulatedAccount":
        return cls(settings.account_value_usd, settings.initial_usdc_balance)

    def get_account_value(self) -> float:
        return self._account_value

    def get_balances(self) -> List[Dict[str, Any]]:
        """Balances as [{"symbol", "balance_usd"}]."""
        return [{"symbol": symbol, "balance_usd": amount} for symbol, amount in self._balances.items()]

    def available_collateral(self) -> float:
        return self._balances.get(COLLATERAL_SYMBOL, 0.0)

    def compute_sizing_from_risk(
        self,
        account_value: Optional[float],
        risk_percent: float,
        leverage: float,
    ) -> SizingResult:
        """Margin/notional for a risk percent of account value."""
        value = self._account_value if account_value is None else account_value
        return compute_sizing(value, risk_percent=risk_percent, leverage=leverage)

    def has_collateral_for(self, margin_usd: float) -> bool:
        return self.available_collateral() + 1e-9 >= margin_usd

    def apply_execution(self, draft: PositionDraft) -> None:
        """Debit the draft's margin from collateral."""
        self._balances[COLLATERAL_SYMBOL] = round(self.available_collateral() - draft.margin_usd, 2)
        logger.info(
            "Applied execution: -%.2f %s for %s",
            draft.margin_usd, COLLATERAL_SYMBOL, draft.market,
            extra={"draft_id": draft.draft_id, "event": "account_debit"},
        )

    def adjust_margin(self, draft: PositionDraft, delta_usd: float) -> None:
        """Move collateral when an executed position's margin is edited."""
        self._balances[COLLATERAL_SYMBOL] = round(self.available_collateral() - delta_usd, 2)
        logger.info(
            "Adjusted margin by %.2f for %s", delta_usd, draft.market,
            extra={"draft_id": draft.draft_id, "event": "account_adjust"},
        )

    def apply_close(self, draft: PositionDraft) -> None:
        """Credit margin and realized PnL back; PnL also moves account value."""
        pnl = draft.realized_pnl_usd or 0.0
        self._balances[COLLATERAL_SYMBOL] = round(self.available_collateral() + draft.margin_usd + pnl, 2)
        self._account_value = round(self._account_value + pnl, 2)
        logger.info(
            "Applied close: +%.2f margin, pnl %.2f for %s", draft.margin_usd, pnl, draft.market,
            extra={"draft_id": draft.draft_id, "event": "account_credit"},
        )

    def fund(self, amount_usd: float) -> float:
        """Deposit USDC. Returns the new collateral balance."""
        if amount_usd <= 0:
            raise ValueError("Funding amount must be positive")
        self._balances[COLLATERAL_SYMBOL] = round(self.available_collateral() + amount_usd, 2)
        self._account_value = round(self._account_value + amount_usd, 2)
        logger.info("Funded account with %.2f %s", amount_usd, COLLATERAL_SYMBOL, extra={"event": "account_fund"})
        return self.available_collateral()

    def recompute_exposure(self, drafts: Iterable[PositionDraft]) -> Exposure:
        """Rebuild exposure from the committed drafts."""
        exposure = Exposure()
        for draft in drafts:
            if draft.status not in _COMMITTED_STATUSES:
                continue
            if draft.instrument == InstrumentClass.PERP:
                exposure.perp_notional_usd += draft.notional_usd
            elif draft.instrument == InstrumentClass.EVENT:
                exposure.event_stake_usd += draft.margin_usd
            elif draft.instrument == InstrumentClass.DEFI:
                exposure.defi_deposits_usd += draft.margin_usd
        exposure.perp_notional_usd = round(exposure.perp_notional_usd, 2)
        exposure.event_stake_usd = round(exposure.event_stake_usd, 2)
        exposure.defi_deposits_usd = round(exposure.defi_deposits_usd, 2)
        self.exposure = exposure
        return exposure

    def snapshot(self) -> Dict:
        return {
            "account_value_usd": self._account_value,
            "balances": self.get_balances(),
            "exposure": self.exposure.to_dict(),
        }
