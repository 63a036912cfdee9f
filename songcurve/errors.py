class SongCurveError(Exception):
    """Base class for every error raised by songcurve."""


class RPCError(SongCurveError):
    """JSON-RPC transport failure or node-side error."""


class LogFetchError(SongCurveError):
    """Event logs or block headers could not be read for a range."""


class DecodeError(SongCurveError):
    """A raw log did not match any known trade event shape."""


class ReceiptNotFound(SongCurveError):
    def __init__(self, tx_hash: str):
        super().__init__(f"transaction receipt not found: {tx_hash}")
        self.tx_hash = tx_hash


class EventNotFound(SongCurveError):
    def __init__(self, tx_hash: str, token_address: str, reason: str = ""):
        msg = f"no Bought/Sold event for token {token_address} in {tx_hash}"
        if reason:
            msg = f"{msg} ({reason})"
        super().__init__(msg)
        self.tx_hash = tx_hash
        self.token_address = token_address


class IndexConflict(SongCurveError):
    """A trade record with the same tx hash already exists."""

    def __init__(self, tx_hash: str):
        super().__init__(f"trade already indexed: {tx_hash}")
        self.tx_hash = tx_hash


class NoTradesInWindow(SongCurveError):
    """No correlated trades were found in the requested window."""
