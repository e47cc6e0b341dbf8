class MedChainError(Exception):
    """Base class for domain errors raised by state mutations"""


class NotFoundError(MedChainError, LookupError):
    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f'{kind} {key} not found')


class InvalidTransitionError(MedChainError):
    pass


class InsufficientStockError(MedChainError):
    def __init__(self, medicine_id: str, needed: int, available: int):
        self.medicine_id = medicine_id
        self.needed = needed
        self.available = available
        super().__init__(
            f'Insufficient stock for {medicine_id}: needed {needed}, available {available}'
        )
