"""
Error taxonomy of the ticket ledger and draw engine.

Each error carries the HTTP status the API layer answers with.
"""
from rest_framework import status


class LotteryError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'Lottery operation failed'

    def __init__(self, detail=None, status_code=None):
        self.detail = detail or self.default_detail
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.detail)


class AuthenticationError(LotteryError):
    """Bad or missing postback hash"""
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = 'Invalid authentication hash'


class InvalidPostbackError(LotteryError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'Missing or malformed postback parameters'


class UnknownUserError(LotteryError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = 'User not found'


class DuplicateEventError(LotteryError):
    """Event was already credited. Callers treat this as success."""
    status_code = status.HTTP_200_OK
    default_detail = 'Event already processed'


class InvalidAwardError(LotteryError):
    """Bad count/source combination. Indicates an upstream bug."""
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'Invalid ticket award'


class InsufficientBalanceError(LotteryError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'Not enough available tickets'


class TransactionTimeoutError(LotteryError):
    """Retryable: nothing was written."""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = 'Ledger is busy, please retry'


class NoOpenDrawError(LotteryError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = 'No open draw'


class DrawNotOpenError(LotteryError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'Draw is not open'


class InvalidWinnerError(LotteryError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'Selected user has no tickets in this draw'


class BonusClaimError(LotteryError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'Bonus cannot be claimed'


class ReferralPropagationError(LotteryError):
    default_detail = 'Referral credit failed'


class EmailDeliveryError(LotteryError):
    default_detail = 'Email delivery failed'
