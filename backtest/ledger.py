"""Portfolio ledger: balances, open positions and the trade log."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Dict, List, Mapping, Optional

import pandas as pd

from backtest.config import Config
from backtest.errors import InsufficientBalance, LedgerError, MissingPosition

logger = logging.getLogger(__name__)

POSITION_KINDS = ('supply', 'borrow', 'liquidity', 'staking')


@dataclass
class Position:
    """An open protocol position. ``amount`` is mutated in place by the ledger."""

    id: str
    kind: str
    asset: str
    amount: float
    entry_price: float
    entry_timestamp: pd.Timestamp
    protocol: str
    apy: float = 0.0  # annual rate as a fraction

    @property
    def is_liability(self) -> bool:
        return self.kind == 'borrow'


@dataclass(frozen=True)
class Trade:
    id: str
    timestamp: pd.Timestamp
    kind: str
    input_token: str
    input_amount: float
    price: float
    fees_usd: float = 0.0
    gas_cost_usd: float = 0.0
    output_token: Optional[str] = None
    output_amount: Optional[float] = None
    slippage_pct: Optional[float] = None

    def to_dict(self) -> Dict[str, object]:
        payload = asdict(self)
        payload['timestamp'] = self.timestamp.isoformat()
        return payload


class Ledger:
    """
    Mutable account for a single simulation run.

    The ledger is the only mutator of simulation state. Debits never clamp: a
    request larger than the available balance raises ``InsufficientBalance``
    and leaves the balance untouched.
    """

    def __init__(
        self,
        initial_capital: float,
        base_currency: str = Config.BASE_CURRENCY,
        initial_holdings: Optional[Mapping[str, float]] = None,
    ) -> None:
        if initial_capital <= 0:
            raise ValueError("initial_capital must be positive")
        self.base_currency = base_currency
        self.initial_capital = float(initial_capital)
        self._balances: Dict[str, float] = {base_currency: float(initial_capital)}
        for token, amount in (initial_holdings or {}).items():
            self.add_balance(token, float(amount))
        self._positions: Dict[str, Position] = {}
        self._trades: List[Trade] = []
        self._next_trade_id = 1
        self._next_position_id = 1

    # ---------------------------- balances
    @property
    def balances(self) -> Dict[str, float]:
        return dict(self._balances)

    def get_balance(self, token: str) -> float:
        return self._balances.get(token, 0.0)

    def add_balance(self, token: str, amount: float) -> float:
        if amount < 0:
            raise ValueError(f"Cannot credit a negative amount of {token}: {amount}")
        self._balances[token] = self.get_balance(token) + amount
        return self._balances[token]

    def subtract_balance(self, token: str, amount: float) -> float:
        if amount < 0:
            raise ValueError(f"Cannot debit a negative amount of {token}: {amount}")
        available = self.get_balance(token)
        if amount > available:
            raise InsufficientBalance(token, available, amount)
        self._balances[token] = available - amount
        return self._balances[token]

    # ---------------------------- positions
    def add_position(
        self,
        *,
        kind: str,
        asset: str,
        amount: float,
        entry_price: float,
        entry_timestamp: pd.Timestamp,
        protocol: str,
        apy: float = 0.0,
    ) -> Position:
        if kind not in POSITION_KINDS:
            raise ValueError(f"Unknown position kind: {kind}")
        position = Position(
            id=f"position-{self._next_position_id}",
            kind=kind,
            asset=asset,
            amount=float(amount),
            entry_price=float(entry_price),
            entry_timestamp=entry_timestamp,
            protocol=protocol,
            apy=float(apy),
        )
        self._next_position_id += 1
        self._positions[position.id] = position
        return position

    def remove_position(self, position_id: str) -> Position:
        try:
            return self._positions.pop(position_id)
        except KeyError:
            raise MissingPosition(f"Unknown position: {position_id}") from None

    def reduce_position(self, position_id: str, amount: float) -> Position:
        """Shrink a position in place, removing it once it reaches zero."""
        position = self._positions.get(position_id)
        if position is None:
            raise MissingPosition(f"Unknown position: {position_id}")
        if amount > position.amount:
            raise LedgerError(
                f"Cannot reduce {position.kind} position in {position.asset} by {amount}; only {position.amount} open"
            )
        position.amount -= amount
        if position.amount <= 0:
            del self._positions[position_id]
        return position

    def get_positions(
        self,
        kind: Optional[str] = None,
        protocol: Optional[str] = None,
        asset: Optional[str] = None,
    ) -> List[Position]:
        positions = list(self._positions.values())
        if kind is not None:
            positions = [p for p in positions if p.kind == kind]
        if protocol is not None:
            positions = [p for p in positions if p.protocol == protocol]
        if asset is not None:
            positions = [p for p in positions if p.asset == asset]
        return positions

    def accrue_interest(self, days: float) -> float:
        """Grow interest-bearing positions by ``amount * apy / 365 * days``."""
        if days <= 0:
            return 0.0
        accrued = 0.0
        for position in self._positions.values():
            if position.apy <= 0:
                continue
            interest = position.amount * (position.apy / 365.0) * days
            position.amount += interest
            accrued += interest
        return accrued

    # ---------------------------- trades
    def record_trade(
        self,
        *,
        timestamp: pd.Timestamp,
        kind: str,
        input_token: str,
        input_amount: float,
        price: float,
        fees_usd: float = 0.0,
        gas_cost_usd: float = 0.0,
        output_token: Optional[str] = None,
        output_amount: Optional[float] = None,
        slippage_pct: Optional[float] = None,
    ) -> Trade:
        trade = Trade(
            id=f"trade-{self._next_trade_id}",
            timestamp=timestamp,
            kind=kind,
            input_token=input_token,
            input_amount=float(input_amount),
            price=float(price),
            fees_usd=float(fees_usd),
            gas_cost_usd=float(gas_cost_usd),
            output_token=output_token,
            output_amount=None if output_amount is None else float(output_amount),
            slippage_pct=slippage_pct,
        )
        self._next_trade_id += 1
        self._trades.append(trade)
        return trade

    @property
    def trades(self) -> List[Trade]:
        return list(self._trades)

    def total_gas_spent(self) -> float:
        return sum(trade.gas_cost_usd for trade in self._trades)

    def total_fees_spent(self) -> float:
        return sum(trade.fees_usd for trade in self._trades)

    # ---------------------------- valuation
    def calculate_equity(self, prices: Mapping[str, float]) -> float:
        """
        Value the account in USD.

        Balances and asset positions count positively; borrow positions are
        debt and count negatively. Tokens without a price contribute nothing.
        """
        equity = 0.0
        for token, balance in self._balances.items():
            equity += balance * prices.get(token, 0.0)
        for position in self._positions.values():
            value = position.amount * prices.get(position.asset, 0.0)
            equity += -value if position.is_liability else value
        return equity
