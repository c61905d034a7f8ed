"""
Stablecoin token model: balances and allowances in 6-decimal units.
"""

from typing import Dict, Tuple

from shared.errors import PaymentError, ValidationError


class StablecoinToken:
    """Minimal fungible token with allowance-based pulls.

    ``transfer_from`` either moves the whole amount or raises
    ``PaymentError`` without touching any balance or allowance.
    """

    def __init__(self, symbol: str = "USDC"):
        self.symbol = symbol
        self._balances: Dict[str, int] = {}
        self._allowances: Dict[Tuple[str, str], int] = {}

    def balance_of(self, holder: str) -> int:
        return self._balances.get(holder, 0)

    def allowance(self, holder: str, spender: str) -> int:
        return self._allowances.get((holder, spender), 0)

    def mint(self, holder: str, amount: int) -> None:
        """Credit ``holder``; used to fund wallets."""
        if amount <= 0:
            raise ValidationError("Mint amount must be positive")
        self._balances[holder] = self.balance_of(holder) + amount

    def approve(self, holder: str, spender: str, amount: int) -> None:
        if amount < 0:
            raise ValidationError("Allowance cannot be negative")
        self._allowances[(holder, spender)] = amount

    def transfer_from(self, spender: str, holder: str, recipient: str, amount: int) -> None:
        if amount <= 0:
            raise ValidationError("Transfer amount must be positive")

        allowed = self.allowance(holder, spender)
        if allowed < amount:
            raise PaymentError(
                "Insufficient allowance",
                {"holder": holder, "required": amount, "allowance": allowed}
            )
        balance = self.balance_of(holder)
        if balance < amount:
            raise PaymentError(
                "Insufficient balance",
                {"holder": holder, "required": amount, "balance": balance}
            )

        self._allowances[(holder, spender)] = allowed - amount
        self._balances[holder] = balance - amount
        self._balances[recipient] = self.balance_of(recipient) + amount
