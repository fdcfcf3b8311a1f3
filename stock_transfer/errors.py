from __future__ import annotations


class StockTransferError(ValueError):
    """Base for every error the transfer core raises.

    ``details`` carries the structured context (ids, expected vs actual
    quantities, counter names) a caller needs to render a precise message.
    """

    def __init__(self, message: str, **details) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(StockTransferError):
    pass


class NotFoundError(StockTransferError):
    pass


class InsufficientStockError(StockTransferError):
    pass


class InsufficientAvailableStockError(StockTransferError):
    pass


class InsufficientBatchStockError(StockTransferError):
    pass


class InvalidStateError(StockTransferError):
    pass


class ConcurrentModificationError(StockTransferError):
    pass


class LockTimeoutError(StockTransferError):
    pass
