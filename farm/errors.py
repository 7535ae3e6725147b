from __future__ import annotations
from typing import Optional


class FarmError(Exception):
    """Base for every failure raised by the ledger, its vaults and tokens.

    ``reason`` is a short snake_case code, the same vocabulary the event log
    and the simulation use when recording failed actions.
    """
    reason: str = "farm_error"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.reason)


# input validation
class ZeroAmount(FarmError):
    reason = "zero_amount"

class InvalidAmount(FarmError):
    reason = "invalid_amount"

class ZeroAddress(FarmError):
    reason = "zero_address"

class InvalidPool(FarmError):
    reason = "invalid_pool"

class FeeTooHigh(FarmError):
    reason = "fee_too_high"

class DuplicatePool(FarmError):
    reason = "duplicate_pool"

class VaultMismatch(FarmError):
    reason = "vault_mismatch"

class NothingToWithdraw(FarmError):
    reason = "nothing_to_withdraw"

class EmptyPool(FarmError):
    reason = "empty_pool"

class ProtectedAsset(FarmError):
    reason = "protected_asset"


# authorization
class Unauthorized(FarmError):
    reason = "unauthorized"

class NotVaultOwner(FarmError):
    reason = "not_vault_owner"

class Paused(FarmError):
    reason = "paused"


# transfers / funding
class InsufficientBalance(FarmError):
    reason = "insufficient_balance"

class InsufficientAllowance(FarmError):
    reason = "insufficient_allowance"


class ReentrantCall(FarmError):
    reason = "reentrant_call"
